"""
Daily job: bill due recurring invoices, then promote overdue ones.

    python -m billing.cron [--as-of YYYY-MM-DD] [--data-dir DIR]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from typing import List, Optional

from billing.config import load_settings
from billing.wiring import Services

logger = logging.getLogger("billing.cron")


def run(services: Services, as_of: Optional[date] = None) -> dict:
    report = services.recurring.run_due_recurrences(as_of)
    promoted = services.invoices.promote_overdue(as_of)
    out = report.summary()
    out["promoted_overdue"] = [i.invoice_number for i in promoted]
    return out


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="billing.cron", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="sweep date (default: today)")
    parser.add_argument("--data-dir", default=None, help="directory holding the JSON tables")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(args.data_dir)
    result = run(Services(settings), args.as_of)
    json.dump(result, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    if result["fail_count"]:
        logger.warning("%d recurring invoice(s) failed", result["fail_count"])
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
