#!/usr/bin/env python3
"""
Run every risk definition in a YAML file over a positions CSV and print
the grouped results as JSON.

Trade stops go to the admin endpoint (OPENRISK_ADMIN_URL) unless
--dry-run is given, in which case they are only logged.

Run: python scripts/run_risk_report.py --config config/risk.yaml --positions positions.csv --dry-run
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.openrisk import (
    AdminClient,
    LoggingDisabler,
    RiskDefinitionError,
    load_positions,
    load_risk_definitions,
    to_payload,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="OpenRisk - grouped risk report")
    parser.add_argument("--config", type=str, required=True, help="Risk definition YAML")
    parser.add_argument("--positions", type=str, required=True, help="Positions CSV")
    parser.add_argument("--portfolio", type=str, default="", help="Portfolio name for trade stop reasons")
    parser.add_argument("--user-id", type=int, default=0, help="User id for trade stop reasons")
    parser.add_argument("--module-path", type=str, default=None, help="Where call() formulas find modules")
    parser.add_argument("--dry-run", action="store_true", help="Log trade stops instead of disabling accounts")
    parser.add_argument("--verbose", action="store_true", help="Debug logging (shows degraded evaluations)")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        disabler = LoggingDisabler() if args.dry_run else AdminClient()
    except ValueError as e:
        logger.error(f"{e} (or use --dry-run)")
        sys.exit(1)

    try:
        definitions = load_risk_definitions(args.config, args.module_path, disabler)
    except RiskDefinitionError as e:
        logger.error(f"Cannot load risk definitions: {e}")
        sys.exit(1)

    try:
        positions = load_positions(args.positions)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot load positions: {e}")
        sys.exit(1)

    report = {}
    for risk in definitions:
        result = risk.run(positions, portfolio_name=args.portfolio, user_id=args.user_id)
        report[risk.display_name] = to_payload(result)
        logger.info(f"{risk.display_name}: {risk.last_diagnostics.to_dict()}")

    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
