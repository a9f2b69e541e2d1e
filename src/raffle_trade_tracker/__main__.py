"""Command-line entry point: run the tracker or verify a sell by digest."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from raffle_trade_tracker.config import get_settings
from raffle_trade_tracker.pipeline import Pipeline, verify_sell

logger = logging.getLogger("raffle_trade_tracker")


async def _run(dry_run: bool | None) -> None:
    pipeline = Pipeline(dry_run=dry_run)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops)
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="raffle-trade-tracker",
        description="Track raffle token trades on Sui and reconcile raffle tickets.",
    )
    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="Run the buy/sell detectors and ledger worker (default)")
    run_parser.add_argument("--dry-run", action="store_true", default=None, help="Detect trades without recording them")

    verify_parser = sub.add_parser("verify-sell", help="Re-check a sell transaction and reconcile its tickets")
    verify_parser.add_argument("digest", help="Transaction digest of the sell")

    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "verify-sell":
        result = asyncio.run(verify_sell(args.digest, settings))
        print(result.message)
        return 0 if result.success else 1

    try:
        asyncio.run(_run(getattr(args, "dry_run", None)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
