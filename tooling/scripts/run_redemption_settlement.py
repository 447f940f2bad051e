"""Run one redemption settlement pass outside the API process.

Useful for operator catch-up runs or when settlement is driven by system
cron instead of the in-process scheduler.

Example:
    python tooling/scripts/run_redemption_settlement.py --trigger cron --limit 50
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a redemption settlement pass once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the settlement run.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of pending redemptions attempted in this pass.",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Override the number of payouts submitted in parallel.",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before running (local databases only).",
    )
    parser.add_argument(
        "--verify-credentials",
        action="store_true",
        help="Only probe the Razorpay credentials and exit.",
    )
    return parser.parse_args()


def _ensure_src_on_path() -> None:
    src = Path(__file__).resolve().parents[2] / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


async def _verify() -> bool:
    from rewards_api.core.settings import settings  # type: ignore import-position
    from rewards_api.services.payouts import RazorpayPayoutGateway  # type: ignore import-position

    return await RazorpayPayoutGateway.from_settings(settings).verify_credentials()


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    from rewards_api.db.session import async_session, create_all  # type: ignore import-position
    from rewards_api.jobs.settlement import run_redemption_settlement  # type: ignore import-position

    if args.init_db:
        await create_all()
    return await run_redemption_settlement(
        session_factory=async_session,
        triggered_by=args.trigger,
        limit=args.limit,
        max_concurrency=args.max_concurrency,
    )


def main() -> int:
    args = parse_args()
    _ensure_src_on_path()

    if args.verify_credentials:
        ok = asyncio.run(_verify())
        if not ok:
            logger.error("Razorpay credentials rejected")
            return 1
        logger.success("Razorpay credentials accepted")
        return 0

    summary = asyncio.run(_run(args))
    logger.success(
        "Redemption settlement run completed",
        run_id=summary.get("run_id"),
        pending=summary.get("pending", 0),
        processed=summary.get("processed", 0),
        failed=summary.get("failed", 0),
        skipped=summary.get("skipped", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
