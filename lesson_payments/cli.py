"""
Command line entry point.

    lesson-payments serve            run the API under uvicorn
    lesson-payments reconcile        replay escalated ledger writes once
"""
import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from lesson_payments.api.dependencies import get_escalation_queue, get_gateway
from lesson_payments.config import get_settings
from lesson_payments.core.catalog import ProductCatalog
from lesson_payments.core.ledger import PurchaseLedger
from lesson_payments.core.reconciliation import PurchaseReconciliationService
from lesson_payments.database.connection import close_db, get_session_factory
from lesson_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(limit: int) -> int:
    """
    Replay queued escalations once.

    Returns:
        int: Number of escalations still unresolved
    """
    settings = get_settings()
    session_factory = get_session_factory()
    gateway = get_gateway()
    escalations = get_escalation_queue()
    service = PurchaseReconciliationService(
        gateway=gateway,
        ledger=PurchaseLedger(session_factory),
        catalog=ProductCatalog(session_factory),
        escalations=escalations,
        settings=settings,
    )

    try:
        report = await service.replay_escalations(limit=limit)
    finally:
        await gateway.close()
        await escalations.close()
        await close_db()

    for escalation in report.unresolved:
        logger.warning(
            "escalation_needs_operator",
            kind=escalation.kind,
            order_token=escalation.order_token,
            capture_id=escalation.capture_id,
            attempts=escalation.attempts,
        )
    return len(report.unresolved)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="lesson-payments", description="Lesson purchase reconciliation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the HTTP API")

    reconcile = subparsers.add_parser("reconcile", help="Replay escalated ledger writes")
    reconcile.add_argument("--limit", type=int, default=100, help="Maximum escalations to replay")

    args = parser.parse_args(argv)

    if args.command == "serve":
        import uvicorn

        settings = get_settings()
        uvicorn.run(
            "lesson_payments.api.main:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=settings.debug,
            workers=settings.api_workers if not settings.debug else 1,
            log_level=settings.log_level.lower(),
        )
        return 0

    setup_logging()
    unresolved = asyncio.run(run_reconciliation(args.limit))
    return 1 if unresolved else 0


if __name__ == "__main__":
    sys.exit(main())
