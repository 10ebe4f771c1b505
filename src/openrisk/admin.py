"""
Account Disable Action - the trade stop side effect

When a trade-stop parameter breaches, every account holding a position in
the breaching group gets disabled through the admin endpoint:

    ["admin", "sub accounts", "disable", <acc>, <reason>]

Retries live here, in the collaborator. The risk engine calls disable()
exactly once per account per pass and moves on.

Set OPENRISK_ADMIN_URL (and optionally OPENRISK_ADMIN_TOKEN) in .env.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import requests
from dotenv import load_dotenv
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

load_dotenv()

logger = logging.getLogger(__name__)

ADMIN_URL = os.getenv("OPENRISK_ADMIN_URL", "")
ADMIN_TOKEN = os.getenv("OPENRISK_ADMIN_TOKEN", "")


class AdminRequestError(Exception):
    """Raised when the admin endpoint rejects a request."""
    pass


class AccountDisabler(ABC):
    """Anything that can switch off trading for an account."""

    @abstractmethod
    def disable(self, acc: int, reason: str) -> None:
        """Disable trading on acc. May raise; the engine logs and continues."""


class LoggingDisabler(AccountDisabler):
    """Dry run: records and logs disable actions, touches nothing."""

    def __init__(self):
        self.disabled: List[Tuple[int, str]] = []

    def disable(self, acc: int, reason: str) -> None:
        logger.warning(f"[DRY RUN] would disable account {acc}: {reason}")
        self.disabled.append((acc, reason))


class AdminClient(AccountDisabler):
    """Posts disable requests to the admin endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url or ADMIN_URL
        self.token = token or ADMIN_TOKEN
        self.timeout = timeout
        if not self.url:
            raise ValueError(
                "AdminClient requires an admin URL. "
                "Set OPENRISK_ADMIN_URL or pass url=..."
            )

    def disable(self, acc: int, reason: str) -> None:
        self.request(["admin", "sub accounts", "disable", acc, reason])
        logger.info(f"Account {acc} disabled")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(requests.RequestException),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def request(self, payload: list) -> object:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        if response.status_code >= 400:
            raise AdminRequestError(
                f"Admin request {payload[:3]} failed {response.status_code}: {response.text}"
            )
        if not response.content:
            return None
        return response.json()
