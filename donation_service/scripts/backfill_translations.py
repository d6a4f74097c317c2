"""
Translate missing languages of bilingual project content.

Run with: yip-backfill-translations [--dry-run] [--delay-ms 100]
"""
import argparse
import asyncio
import sys

import structlog

from donation_service.core.config import get_settings
from donation_service.core.logging import configure_logging
from donation_service.database.database import SessionLocal
from donation_service.services.translation_backfill import backfill_projects
from donation_service.services.translator import TranslatorClient

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fill missing en/ms translations of project content")
    parser.add_argument("--dry-run", action="store_true", help="Translate but do not save")
    parser.add_argument("--delay-ms", type=int, default=100, help="Pause after each translation call")
    return parser


async def run(dry_run: bool, delay_ms: int) -> int:
    translator = TranslatorClient()
    if not translator.is_configured():
        logger.error("AZURE_TRANSLATOR_KEY is not configured")
        return 1

    db = SessionLocal()
    try:
        summary = await backfill_projects(db, translator, delay=delay_ms / 1000, dry_run=dry_run)
    finally:
        db.close()

    print(f"Projects scanned:   {summary.scanned}")
    print(f"Projects updated:   {summary.updated}")
    print(f"Fields translated:  {summary.fields_translated}")
    print(f"Errors:             {summary.errors}")
    for name in summary.failed_fields:
        print(f"  failed: {name}")
    return 0 if summary.errors == 0 else 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().debug)
    return asyncio.run(run(args.dry_run, args.delay_ms))


if __name__ == "__main__":
    sys.exit(main())
