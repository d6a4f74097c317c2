"""
Fill the missing language of bilingual project fields.

Each project field holds ``{"en": ..., "ms": ...}``. Fields with exactly one
language are translated into the other; legacy plain strings are treated as
English.
"""
import asyncio
from dataclasses import dataclass, field
from typing import List

from sqlalchemy.orm import Session
import structlog

from donation_service.core.errors import TranslationError
from donation_service.models.project import Project
from donation_service.schemas.localized import LocalizedText
from donation_service.services.translator import TranslatorClient

logger = structlog.get_logger(__name__)

PROJECT_FIELDS = ("title", "subtitle", "description", "content")
TRANSLATION_DELAY_SECONDS = 0.1


@dataclass
class BackfillSummary:
    scanned: int = 0
    updated: int = 0
    fields_translated: int = 0
    errors: int = 0
    failed_fields: List[str] = field(default_factory=list)


async def backfill_projects(
    db: Session,
    translator: TranslatorClient,
    delay: float = TRANSLATION_DELAY_SECONDS,
    dry_run: bool = False,
) -> BackfillSummary:
    summary = BackfillSummary()

    for project in db.query(Project).order_by(Project.slug).all():
        summary.scanned += 1
        updates = {}

        for name in PROJECT_FIELDS:
            raw = getattr(project, name)
            value = LocalizedText.coerce(raw)
            if value is None:
                continue
            target = value.missing_language()
            if target is None:
                if isinstance(raw, str):
                    # Already bilingual in content, stored in the legacy shape
                    updates[name] = value.model_dump()
                continue

            source = value.source_language()
            try:
                translated = await translator.translate(value.get(source), to=target, from_=source)
            except TranslationError as e:
                summary.errors += 1
                summary.failed_fields.append(f"{project.slug}.{name}")
                logger.warning("Translation failed", project=project.slug, field=name, error=str(e))
                continue
            finally:
                await asyncio.sleep(delay)

            updates[name] = value.with_translation(target, translated).model_dump()
            summary.fields_translated += 1
            logger.info("Field translated", project=project.slug, field=name, source=source, target=target)

        if not updates:
            continue
        summary.updated += 1
        if dry_run:
            logger.info("Dry run, not saving", project=project.slug, fields=sorted(updates))
            continue

        try:
            for name, value in updates.items():
                setattr(project, name, value)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to save translations", project=project.slug, error=str(e))
            raise

    logger.info(
        "Translation backfill finished",
        scanned=summary.scanned,
        updated=summary.updated,
        fields_translated=summary.fields_translated,
        errors=summary.errors,
        dry_run=dry_run
    )
    return summary
