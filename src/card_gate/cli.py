#!/usr/bin/env python3
"""Command-line interface for inspecting card payments.

Reads the gateway settings from the environment (PAYMENT_PROJECT_ID,
PAYMENT_SECRET_KEY, PAYMENT_API_URL, PUBLIC_APP_URL).

Usage:
    card-gate status payment_42_1700000000000
    card-gate poll payment_42_1700000000000 --interval 2 --timeout 120
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from .config import GatewayConfig
from .connectors.base import PaymentResponse, PaymentStatus
from .connectors.gate_connector import GateConnector
from .exceptions import ConfigurationError
from .polling import PollOutcome, StatusPoller

logger = logging.getLogger(__name__)

EXIT_CODES = {
    PollOutcome.SUCCESS: 0,
    PollOutcome.DECLINE: 1,
    PollOutcome.CHALLENGE: 3,
    PollOutcome.ERROR: 2,
    PollOutcome.TIMEOUT: 4,
    PollOutcome.CANCELLED: 4,
}


def _response_dict(response: Optional[PaymentResponse]) -> Optional[Dict[str, Any]]:
    if response is None:
        return None
    return response.model_dump(mode="json", exclude={"raw_provider_response"}, exclude_none=True)


async def run_status(connector: GateConnector, payment_id: str) -> int:
    """Print one status read.

    Returns:
        Exit code (0 for success, non-zero otherwise).
    """
    response = await connector.check_status(payment_id)
    print(json.dumps(_response_dict(response), indent=2))
    if response.status == PaymentStatus.SUCCESS:
        return 0
    if response.status == PaymentStatus.ERROR:
        return 2
    return 1


async def run_poll(connector: GateConnector, payment_id: str, interval: float, timeout: float) -> int:
    """Poll until the payment settles and print the result.

    Returns:
        Exit code from EXIT_CODES.
    """
    poller = StatusPoller(connector, interval=interval, max_duration=timeout)
    result = await poller.poll(payment_id)
    print(json.dumps({
        "payment_id": result.payment_id,
        "outcome": result.outcome.value,
        "attempts": result.attempts,
        "response": _response_dict(result.response),
    }, indent=2))
    return EXIT_CODES.get(result.outcome, 1)


async def run_command(args: argparse.Namespace, config: GatewayConfig) -> int:
    async with GateConnector(config) as connector:
        if args.command == "status":
            return await run_status(connector, args.payment_id)
        return await run_poll(
            connector,
            args.payment_id,
            interval=args.interval if args.interval is not None else config.poll_interval_seconds,
            timeout=args.timeout if args.timeout is not None else config.poll_timeout_seconds,
        )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="card-gate",
        description="Inspect card payments at the processor.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Read the current status once")
    status_parser.add_argument("payment_id", help="PaymentId of the attempt")

    poll_parser = subparsers.add_parser("poll", help="Poll until the payment settles")
    poll_parser.add_argument("payment_id", help="PaymentId of the attempt")
    poll_parser.add_argument(
        "--interval", "-i",
        type=float,
        help="Seconds between status reads (default: PAYMENT_POLL_INTERVAL or 2)",
    )
    poll_parser.add_argument(
        "--timeout", "-t",
        type=float,
        help="Give up after this many seconds (default: PAYMENT_POLL_TIMEOUT or 300)",
    )

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "poll":
        for name in ("interval", "timeout"):
            value = getattr(args, name)
            if value is not None and value <= 0:
                parser.error(f"--{name} must be positive")

    try:
        config = GatewayConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    return asyncio.run(run_command(args, config))


if __name__ == "__main__":
    sys.exit(main())
