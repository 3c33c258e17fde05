#!/usr/bin/env python3
"""Run one reconciliation pass and exit non-zero when the ledger drifted.

Meant for cron or CI checks against a deployed database:

    python scripts/reconcile.py --strict
"""

from __future__ import annotations

import argparse
import logging
import sys

from custody.core.database import SessionLocal
from custody.core.errors import ReconciliationMismatch
from custody.core.logging import configure_logging
from custody.services.chain import ChainGatewayError, RestChainGateway
from custody.services.ledger import LedgerStore
from custody.services.precision import format_amount
from custody.services.reconciler import Reconciler


logger = logging.getLogger("custody.reconcile")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--strict", action="store_true", help="exit 1 when the difference exceeds the alert threshold")
    args = parser.parse_args(argv)

    configure_logging()
    reconciler = Reconciler(LedgerStore(SessionLocal), RestChainGateway())
    try:
        report = reconciler.reconcile_and_alert(strict=args.strict)
    except ReconciliationMismatch as exc:
        print(f"MISMATCH: {exc.message}")
        return 1
    except ChainGatewayError as exc:
        print(f"ERROR: chain node unavailable: {exc.message}")
        return 2

    print(
        f"internal={format_amount(report.internal_total)} on_chain={format_amount(report.on_chain_total)} "
        f"difference={format_amount(report.difference)} matched={report.matched} alert={report.alert}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
