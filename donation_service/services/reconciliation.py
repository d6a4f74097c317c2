"""
Gateway-driven status reconciliation.

Webhook callbacks, the admin refresh action and the donor-facing verify
endpoint all go through ``reconcile``: the gateway is re-queried and its
answer is applied through the state machine with a guarded update.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from donation_service.core.errors import StateError
from donation_service.kafka.producer import KafkaProducer
from donation_service.middleware.metrics import donation_transitions_total
from donation_service.middleware.tracing import get_tracer
from donation_service.models.donation import Donation, DonationEventType, DonationStatus
from donation_service.services import state_machine
from donation_service.services.audit import DonationAuditLog, RequestMeta
from donation_service.services.email_client import ResendEmailClient
from donation_service.services.payment_gateway import GatewayPaymentStatus, GatewayStatusReport, PaymentGateway
from donation_service.services.receipt import ReceiptService, next_receipt_number
from donation_service.services.repository import DonationRepository
from donation_service.services.toyyibpay import failure_reason

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class ReconciliationSource(str, Enum):
    CALLBACK = "callback"
    ADMIN = "admin"
    VERIFY = "verify"


@dataclass
class ReconciliationResult:
    changed: bool
    previous_status: DonationStatus
    status: DonationStatus
    receipt_number: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_status: Optional[GatewayPaymentStatus] = None
    receipt_sent: bool = False


def _no_change(donation: Donation, gateway_status: Optional[GatewayPaymentStatus] = None) -> ReconciliationResult:
    return ReconciliationResult(
        changed=False,
        previous_status=donation.payment_status,
        status=donation.payment_status,
        receipt_number=donation.receipt_number,
        transaction_id=donation.gateway_transaction_id,
        gateway_status=gateway_status,
    )


def _complete(
    db: Session,
    donation: Donation,
    report: GatewayStatusReport,
    source: ReconciliationSource,
    meta: Optional[RequestMeta],
) -> DonationStatus:
    """Move the donation to completed, assign its receipt number and credit the project.

    All three writes share one transaction.
    """
    previous = donation.payment_status
    target = state_machine.next_status(previous, state_machine.DonationEvent.GATEWAY_SUCCESS)
    project_id = donation.project_id
    amount = donation.amount

    try:
        receipt_number = next_receipt_number(db)
        DonationRepository.compare_and_set(db, donation, previous, {
            "payment_status": target,
            "completed_at": datetime.now(timezone.utc),
            "receipt_number": receipt_number,
            "gateway_transaction_id": report.transaction_id or donation.gateway_transaction_id,
            "failure_reason": None,
        })
        if project_id:
            DonationRepository.add_to_project_raised(db, project_id, amount)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to complete donation", payment_reference=donation.payment_reference, error=str(e))
        raise

    db.refresh(donation)
    DonationAuditLog.record(db, donation.id, DonationEventType.STATUS_UPDATED, {
        "previous_status": previous.value,
        "new_status": target.value,
        "source": source.value,
        "gateway_status": report.gateway_status,
        "transaction_id": donation.gateway_transaction_id,
        "receipt_number": receipt_number,
    }, meta)
    return previous


def _fail(
    db: Session,
    donation: Donation,
    report: GatewayStatusReport,
    source: ReconciliationSource,
    meta: Optional[RequestMeta],
) -> DonationStatus:
    previous = donation.payment_status
    target = state_machine.next_status(previous, state_machine.DonationEvent.GATEWAY_FAILURE)
    reason = failure_reason(report.reason)

    try:
        DonationRepository.compare_and_set(db, donation, previous, {
            "payment_status": target,
            "failure_reason": reason,
            "gateway_transaction_id": report.transaction_id or donation.gateway_transaction_id,
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to mark donation failed", payment_reference=donation.payment_reference, error=str(e))
        raise

    db.refresh(donation)
    DonationAuditLog.record(db, donation.id, DonationEventType.STATUS_UPDATED, {
        "previous_status": previous.value,
        "new_status": target.value,
        "source": source.value,
        "gateway_status": report.gateway_status,
        "reason": reason,
    }, meta)
    return previous


async def reconcile(
    db: Session,
    gateway: PaymentGateway,
    reference: str,
    source: ReconciliationSource,
    email_client: Optional[ResendEmailClient] = None,
    producer: Optional[KafkaProducer] = None,
    meta: Optional[RequestMeta] = None,
) -> ReconciliationResult:
    """Resolve a donation's true status from the gateway.

    Returns a "no change" result without touching the row or the audit log
    when the donation is terminal, the gateway still reports pending, or the
    gateway agrees with the stored status. Raises NotFoundError, StateError
    (no bill yet, or a lost race) and GatewayError.
    """
    donation = DonationRepository.get_by_reference(db, reference)

    if state_machine.is_terminal(donation.payment_status):
        logger.info(
            "Donation already terminal, nothing to reconcile",
            payment_reference=reference,
            status=donation.payment_status.value,
            source=source.value
        )
        return _no_change(donation)

    if not donation.gateway_bill_code:
        raise StateError("Donation has no gateway bill to check", code="NO_BILL")

    with tracer.start_as_current_span("gateway.query_status") as span:
        span.set_attribute("donation.payment_reference", reference)
        span.set_attribute("donation.reconcile_source", source.value)
        report = await gateway.query_status(reference, donation.gateway_bill_code)
        span.set_attribute("gateway.status", report.status.value)
    logger.info(
        "Gateway status queried",
        payment_reference=reference,
        source=source.value,
        stored_status=donation.payment_status.value,
        gateway_status=report.status.value
    )

    if report.status == GatewayPaymentStatus.PENDING or report.status.value == donation.payment_status.value:
        return _no_change(donation, report.status)

    if report.status == GatewayPaymentStatus.COMPLETED:
        previous = _complete(db, donation, report, source, meta)
    else:
        previous = _fail(db, donation, report, source, meta)

    donation_transitions_total.labels(
        from_status=previous.value,
        to_status=donation.payment_status.value
    ).inc()
    logger.info(
        "Donation status updated",
        payment_reference=reference,
        previous_status=previous.value,
        status=donation.payment_status.value,
        source=source.value
    )

    result = ReconciliationResult(
        changed=True,
        previous_status=previous,
        status=donation.payment_status,
        receipt_number=donation.receipt_number,
        transaction_id=donation.gateway_transaction_id,
        gateway_status=report.status,
    )

    if donation.payment_status == DonationStatus.COMPLETED:
        if email_client is not None:
            result.receipt_sent = await ReceiptService.send_receipt(db, donation, email_client, meta)
        if producer is not None:
            await producer.publish_donation_completed(donation)

    return result


def extract_reference(payload: Dict[str, Any]) -> Optional[str]:
    """Payment reference from a gateway callback body"""
    for key in ("order_id", "refno", "payment_reference", "reference", "billExternalReferenceNo"):
        value = payload.get(key)
        if value:
            return str(value).strip()
    return None


def record_callback(
    db: Session,
    reference: str,
    payload: Dict[str, Any],
    meta: Optional[RequestMeta] = None,
) -> Donation:
    """Store the raw callback on the audit trail before reconciling"""
    donation = DonationRepository.get_by_reference(db, reference)
    DonationAuditLog.record(db, donation.id, DonationEventType.CALLBACK_RECEIVED, {
        "payload": {k: str(v) for k, v in payload.items()},
        "stored_status": donation.payment_status.value,
    }, meta)
    return donation
