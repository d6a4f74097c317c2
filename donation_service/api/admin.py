from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
import structlog

from donation_service.api.deps import request_meta, require_admin
from donation_service.database.database import get_db
from donation_service.kafka.producer import KafkaProducer, get_kafka_producer
from donation_service.schemas.donation import (
    DonationListResponse,
    DonationLogResponse,
    DonationSettings,
    DonationStatsResponse,
    MarkExpiredRequest,
    ReferenceRequest,
    StatusChangeResponse,
)
from donation_service.services.audit import DonationAuditLog, RequestMeta
from donation_service.services.donation import DonationFilters, DonationService
from donation_service.services.email_client import ResendEmailClient, get_email_client
from donation_service.services.export import export_donations_csv, export_filename
from donation_service.services.payment_gateway import PaymentGateway
from donation_service.services.reconciliation import ReconciliationSource, reconcile
from donation_service.services.repository import DonationRepository
from donation_service.services.toyyibpay import get_payment_gateway

router = APIRouter(
    prefix="/admin/donations",
    tags=["admin"],
    dependencies=[Depends(require_admin)]
)
logger = structlog.get_logger(__name__)


def donation_filters(
    status: Optional[str] = Query(None, description="pending, completed, failed, expired, refunded or all"),
    environment: Optional[str] = Query("production", description="production, sandbox or all"),
    project: Optional[str] = Query(None, description="Project id or all"),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
) -> DonationFilters:
    return DonationFilters(
        status=status,
        environment=environment,
        project=project,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("", response_model=DonationListResponse)
async def list_donations(
    filters: DonationFilters = Depends(donation_filters),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """List donations, newest first. Stale pending donations are flagged."""
    return DonationService.list_donations(db, filters, skip=skip, limit=limit)


@router.get("/stats", response_model=DonationStatsResponse)
async def donation_stats(
    filters: DonationFilters = Depends(donation_filters),
    db: Session = Depends(get_db),
):
    return DonationService.get_stats(db, filters)


@router.get("/export")
async def export_donations(
    filters: DonationFilters = Depends(donation_filters),
    db: Session = Depends(get_db),
):
    """Download donations as CSV"""
    content = export_donations_csv(db, filters)
    logger.info("Donations exported", environment=filters.environment, status=filters.status)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename()}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
        },
    )


@router.get("/settings", response_model=DonationSettings)
async def get_donation_settings(db: Session = Depends(get_db)):
    return DonationSettings(donations_closed=DonationService.donations_closed(db))


@router.put("/settings", response_model=DonationSettings)
async def update_donation_settings(body: DonationSettings, db: Session = Depends(get_db)):
    """Open or close donation intake"""
    return DonationSettings(donations_closed=DonationService.set_donations_closed(db, body.donations_closed))


@router.get("/{reference}/logs", response_model=List[DonationLogResponse])
async def donation_logs(reference: str, db: Session = Depends(get_db)):
    """Audit trail for one donation, oldest first"""
    donation = DonationRepository.get_by_reference(db, reference)
    return DonationAuditLog.list_for_donation(db, donation.id)


@router.post("/refresh-status", response_model=StatusChangeResponse)
async def refresh_status(
    body: ReferenceRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    email_client: ResendEmailClient = Depends(get_email_client),
    kafka_producer: KafkaProducer = Depends(get_kafka_producer),
    meta: RequestMeta = Depends(request_meta),
):
    """Re-query the gateway for one donation"""
    result = await reconcile(
        db, gateway, body.reference, ReconciliationSource.ADMIN,
        email_client=email_client, producer=kafka_producer, meta=meta
    )
    return StatusChangeResponse(
        message="Status updated" if result.changed else "No status change",
        status=result.status,
        previous_status=result.previous_status,
        no_change=not result.changed,
        receipt_number=result.receipt_number,
        transaction_id=result.transaction_id,
    )


@router.post("/mark-expired", response_model=StatusChangeResponse)
async def mark_expired(
    body: MarkExpiredRequest,
    db: Session = Depends(get_db),
    meta: RequestMeta = Depends(request_meta),
):
    return DonationService.mark_expired(db, body.reference, body.reason, meta)
