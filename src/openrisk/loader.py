"""
Position Loader - snapshots from CSV / DataFrames

Position acquisition is someone else's job; this is the thin adapter the
CLI and tests use to turn a table into Position objects.

Expected columns (only symbol and acc are required):
    symbol, acc, acc_name, qty, avg_px, market_price, realized_pnl,
    commission, sector, industry, sub_industry, market, type, currency,
    multiplier, close

Any other column ends up in Position.extra (reachable as extra.<name>).
"""

import logging
import math
from pathlib import Path
from typing import Any, List

import pandas as pd

from .schema import Position, Security

logger = logging.getLogger(__name__)


REQUIRED_COLUMNS = ("symbol", "acc")
POSITION_COLUMNS = ("acc_name", "qty", "avg_px", "market_price", "realized_pnl", "commission")
SECURITY_TEXT_COLUMNS = ("sector", "industry", "sub_industry", "market", "type", "currency")
SECURITY_NUMBER_COLUMNS = ("multiplier", "close")


def _text(value: Any) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return ""
    return str(value)


def _number(row: dict, key: str, default: float) -> float:
    value = row.get(key)
    if value is None or pd.isna(value):
        return default
    return float(value)


def positions_from_frame(df: pd.DataFrame) -> List[Position]:
    """Build one Position per row."""
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Position data missing required columns: {missing}")

    known = set(REQUIRED_COLUMNS + POSITION_COLUMNS + SECURITY_TEXT_COLUMNS + SECURITY_NUMBER_COLUMNS)
    extra_columns = [c for c in df.columns if c not in known]

    positions = []
    for row in df.to_dict(orient="records"):
        security = Security(
            symbol=_text(row["symbol"]),
            multiplier=_number(row, "multiplier", 1.0),
            close=_number(row, "close", math.nan),
            **{c: _text(row.get(c)) for c in SECURITY_TEXT_COLUMNS},
        )
        positions.append(
            Position(
                security=security,
                acc=int(row["acc"]),
                acc_name=_text(row.get("acc_name")),
                qty=_number(row, "qty", 0.0),
                avg_px=_number(row, "avg_px", 0.0),
                market_price=_number(row, "market_price", math.nan),
                realized_pnl=_number(row, "realized_pnl", 0.0),
                commission=_number(row, "commission", 0.0),
                extra={c: row[c] for c in extra_columns},
            )
        )
    return positions


def load_positions(path: str) -> List[Position]:
    """Read a positions CSV."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Position file not found: {path}")

    df = pd.read_csv(csv_path)
    positions = positions_from_frame(df)
    logger.info(f"Loaded {len(positions)} positions from {path}")
    return positions
