#!/usr/bin/env python3
"""Command-line interface for payment reconciliation.

Operators use it to settle payments whose callback never arrived.

Usage:
    stkpay-reconcile verify --correlation-id 7f3c1b2a-...
    stkpay-reconcile verify --reference INV-1042
    stkpay-reconcile sweep-pending --older-than 10 --limit 50 --output sweep.json
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import Optional

from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..errors import StkPayError
from ..services import PaymentEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_verify_async(
    correlation_id: Optional[str] = None,
    reference: Optional[str] = None,
    database_url: Optional[str] = None,
) -> int:
    """Verify one payment against the provider.

    Returns:
        0 if the payment is now completed, 1 if it failed or is still
        pending, 2 on error.
    """
    engine = create_async_engine(database_url=database_url or get_database_url())
    try:
        payments = PaymentEngine(get_async_session_factory(engine))
        try:
            outcome = await payments.verify_now(correlation_id=correlation_id, reference=reference)
        except StkPayError as e:
            logger.error(f"Verification failed: {e.kind.value}: {e.message}")
            return 2

        print(json.dumps(outcome.model_dump(), indent=2))
        if outcome.succeeded:
            return 0
        if not outcome.is_terminal:
            logger.warning(f"Transaction {outcome.transaction_id} is still pending at the provider")
        return 1
    finally:
        await engine.dispose()


async def run_sweep_async(
    older_than_minutes: int = 5,
    limit: int = 100,
    output_file: Optional[str] = None,
    include_details: bool = True,
    database_url: Optional[str] = None,
) -> int:
    """Verify every stale pending aggregator payment.

    Returns:
        0 if the sweep ran without errors, 1 otherwise.
    """
    engine = create_async_engine(database_url=database_url or get_database_url())

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        payments = PaymentEngine(get_async_session_factory(engine))
        report = await payments.sweep_pending(
            older_than=timedelta(minutes=older_than_minutes),
            limit=limit,
        )
        data = report.to_full_dict() if include_details else report.to_summary_dict()
        output = json.dumps(data, indent=2, default=str)

        if output_file:
            with open(output_file, "w") as f:
                f.write(output)
            logger.info(f"Report written to {output_file}")
        else:
            print(output)

        if report.total_errors > 0:
            logger.warning(f"Sweep completed with {report.total_errors} errors")
            return 1
        return 0
    finally:
        await engine.dispose()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="stkpay-reconcile",
        description="Settle M-Pesa payments whose outcome was never recorded.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    verify_parser = subparsers.add_parser(
        "verify",
        help="Ask the provider for one payment's status",
    )
    target = verify_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--correlation-id", "-c", help="Provider request id")
    target.add_argument("--reference", "-r", help="Application reference, e.g. INV-1042")

    sweep_parser = subparsers.add_parser(
        "sweep-pending",
        help="Verify every aggregator payment left pending",
    )
    sweep_parser.add_argument(
        "--older-than",
        type=int,
        default=5,
        help="Only payments pending for at least this many minutes (default: 5)",
    )
    sweep_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=100,
        help="Maximum payments to verify (default: 100)",
    )
    sweep_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    sweep_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include totals, not per-payment records",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "verify":
        return asyncio.run(run_verify_async(
            correlation_id=parsed_args.correlation_id,
            reference=parsed_args.reference,
        ))

    if parsed_args.command == "sweep-pending":
        if parsed_args.older_than < 0 or parsed_args.limit < 1:
            logger.error("--older-than must be >= 0 and --limit must be >= 1")
            return 1
        return asyncio.run(run_sweep_async(
            older_than_minutes=parsed_args.older_than,
            limit=parsed_args.limit,
            output_file=parsed_args.output,
            include_details=not parsed_args.summary_only,
        ))

    return 0


if __name__ == "__main__":
    sys.exit(main())
