import json
import secrets
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import structlog

from donation_service.api.deps import request_meta
from donation_service.core.config import get_settings
from donation_service.core.errors import ConcurrentUpdateError, GatewayError, ValidationError
from donation_service.database.database import get_db
from donation_service.kafka.producer import KafkaProducer, get_kafka_producer
from donation_service.models.donation import DonationStatus
from donation_service.schemas.donation import (
    CreateDonationRequest,
    CreateDonationResponse,
    PublicDonationResponse,
    ReceiptData,
    ReferenceRequest,
    ResendReceiptResponse,
    RetryPaymentResponse,
    VerifyDonationResponse,
    WebhookAck,
)
from donation_service.services.audit import RequestMeta
from donation_service.services.donation import DonationService
from donation_service.services.email_client import ResendEmailClient, get_email_client
from donation_service.services.payment_gateway import PaymentGateway
from donation_service.services.receipt import ReceiptService, get_receipt_data
from donation_service.services.reconciliation import (
    ReconciliationSource,
    extract_reference,
    reconcile,
    record_callback,
)
from donation_service.services.repository import DonationRepository
from donation_service.services.toyyibpay import get_payment_gateway

router = APIRouter(prefix="/donations", tags=["donations"])
logger = structlog.get_logger(__name__)


@router.post("", response_model=CreateDonationResponse, status_code=201)
async def create_donation(
    donation_data: CreateDonationRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    meta: RequestMeta = Depends(request_meta),
):
    """
    Start a donation
    Flow:
    1. Validate amount, donor details and target project
    2. Create donation in database with PENDING status
    3. Create a gateway bill and return its payment URL
    """
    logger.info(
        "Creating donation",
        amount=str(donation_data.amount),
        project_id=donation_data.project_id,
        is_anonymous=donation_data.is_anonymous
    )
    return await DonationService.create_donation(db, gateway, donation_data, meta)


@router.post("/retry", response_model=RetryPaymentResponse)
async def retry_payment(
    body: ReferenceRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    meta: RequestMeta = Depends(request_meta),
):
    """Create a new bill for a pending or failed donation"""
    return await DonationService.retry_payment(db, gateway, body.reference, meta)


@router.get("/verify", response_model=VerifyDonationResponse)
async def verify_donation(
    reference: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    email_client: ResendEmailClient = Depends(get_email_client),
    kafka_producer: KafkaProducer = Depends(get_kafka_producer),
    meta: RequestMeta = Depends(request_meta),
):
    """
    Confirm payment status for the donor success page

    Non-completed donations with a bill are reconciled against the gateway,
    which recovers completions whose webhook never arrived.
    """
    donation = DonationRepository.get_by_reference(db, reference)
    verified = donation.payment_status == DonationStatus.COMPLETED

    if not verified and donation.gateway_bill_code:
        try:
            await reconcile(
                db, gateway, reference, ReconciliationSource.VERIFY,
                email_client=email_client, producer=kafka_producer, meta=meta
            )
            verified = True
        except GatewayError as e:
            # Fall back to the stored status
            logger.warning("Gateway verification failed", payment_reference=reference, error=e.message)
        except ConcurrentUpdateError:
            logger.info("Donation updated concurrently during verify", payment_reference=reference)
            verified = True
        db.expire_all()
        donation = DonationRepository.get_by_reference(db, reference)

    return VerifyDonationResponse(
        status=donation.payment_status,
        verified=verified,
        donation=DonationService.to_public(db, donation),
    )


async def _callback_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    if "application/json" in request.headers.get("content-type", ""):
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Invalid JSON body")
        return payload if isinstance(payload, dict) else {}
    # ToyyibPay posts application/x-www-form-urlencoded
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    email_client: ResendEmailClient = Depends(get_email_client),
    kafka_producer: KafkaProducer = Depends(get_kafka_producer),
    meta: RequestMeta = Depends(request_meta),
):
    """
    Gateway callback

    The callback body is only used to find the donation; the status itself is
    re-queried from the gateway.
    """
    secret = get_settings().toyyibpay_webhook_secret
    if secret and not secrets.compare_digest(token or "", secret):
        logger.warning("Webhook rejected: invalid token", client_ip=meta.ip_address)
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    payload = await _callback_payload(request)
    reference = extract_reference(payload)
    if not reference:
        logger.error("Missing payment reference in webhook", keys=sorted(payload))
        raise ValidationError("Missing payment reference")

    logger.info("Donation webhook received", payment_reference=reference, gateway_status=payload.get("status"))
    record_callback(db, reference, payload, meta)

    try:
        result = await reconcile(
            db, gateway, reference, ReconciliationSource.CALLBACK,
            email_client=email_client, producer=kafka_producer, meta=meta
        )
        status = result.status
    except ConcurrentUpdateError:
        # Another request (usually verify) applied the same transition first
        db.expire_all()
        status = DonationRepository.get_by_reference(db, reference).payment_status

    return WebhookAck(message="Webhook processed successfully", status=status)


@router.get("/webhook")
async def webhook_health():
    """Gateway URL check"""
    return {"success": True, "message": "Donation webhook endpoint is active"}


@router.get("/receipt/{reference}", response_model=ReceiptData)
async def get_receipt(reference: str, db: Session = Depends(get_db)):
    """Receipt details for a completed donation"""
    return get_receipt_data(db, DonationRepository.get_by_reference(db, reference))


@router.post("/receipt/{reference}/resend", response_model=ResendReceiptResponse)
async def resend_receipt(
    reference: str,
    db: Session = Depends(get_db),
    email_client: ResendEmailClient = Depends(get_email_client),
    meta: RequestMeta = Depends(request_meta),
):
    """Email the existing receipt again"""
    donation = await ReceiptService.resend_receipt(db, reference, email_client, meta)
    return ResendReceiptResponse(email=donation.donor_email)


@router.get("/{reference}", response_model=PublicDonationResponse)
async def get_donation(reference: str, db: Session = Depends(get_db)):
    """Get a donation by payment reference"""
    return DonationService.get_public(db, reference)
