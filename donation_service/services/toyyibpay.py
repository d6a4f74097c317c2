"""
ToyyibPay payment gateway client.

API reference: https://toyyibpay.com/apireference/
Sandbox host: https://dev.toyyibpay.com
All endpoints take form-encoded POSTs and answer with a JSON array.
"""
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import structlog

from donation_service.core.config import get_settings
from donation_service.core.errors import GatewayError
from donation_service.middleware.metrics import gateway_requests_total
from donation_service.services.payment_gateway import (
    BillRequest,
    BillResult,
    GatewayPaymentStatus,
    GatewayStatusReport,
    PaymentGateway,
)

logger = structlog.get_logger(__name__)

STATUS_SUCCESS = "1"
STATUS_PENDING = "2"
STATUS_FAILED = "3"

CHANNEL_FPX = "0"

SANDBOX_HOST = "dev.toyyibpay.com"
MIN_BILL_AMOUNT = 100  # RM 1.00

FAILURE_REASONS = {
    "Cancelled": "Payment was cancelled by user",
    "Transaction timeout": "Payment session expired",
    "Insufficient funds": "Insufficient funds in account",
    "Bank error": "Bank processing error",
    "Invalid card": "Invalid card details",
}


def map_payment_status(gateway_status: Optional[str]) -> GatewayPaymentStatus:
    """Map a ToyyibPay status code or word to our gateway status"""
    value = (gateway_status or "").strip().lower()
    if value in (STATUS_SUCCESS, "success", "paid"):
        return GatewayPaymentStatus.COMPLETED
    if value in (STATUS_FAILED, "failed", "cancelled"):
        return GatewayPaymentStatus.FAILED
    return GatewayPaymentStatus.PENDING


def failure_reason(reason: Optional[str]) -> str:
    if not reason:
        return "Payment was not completed"
    return FAILURE_REASONS.get(reason, reason)


class ToyyibPayGateway(PaymentGateway):
    """ToyyibPay implementation of the payment gateway contract"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.toyyibpay_url).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.toyyibpay_secret_key
        self.timeout = httpx.Timeout(10.0, connect=5.0)
        # Injected in tests to avoid real network calls
        self._transport = transport

    @property
    def environment(self) -> str:
        host = urlparse(self.base_url).hostname or ""
        return "sandbox" if host == SANDBOX_HOST else "production"

    def is_configured(self) -> bool:
        return bool(self.base_url and self.secret_key)

    def payment_url(self, bill_code: str) -> str:
        return f"{self.base_url}/{bill_code}"

    async def _post(self, operation: str, path: str, data: Dict[str, str]) -> Any:
        if not self.is_configured():
            raise GatewayError("ToyyibPay is not configured", code="NOT_CONFIGURED")

        payload = {"userSecretKey": self.secret_key, **data}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/index.php/api/{path}", data=payload)
            result = response.json()
        except httpx.TimeoutException:
            gateway_requests_total.labels(operation=operation, status="timeout").inc()
            logger.error("ToyyibPay request timed out", operation=operation)
            raise GatewayError("ToyyibPay request timed out", code="CONNECTION_ERROR")
        except httpx.HTTPError as e:
            gateway_requests_total.labels(operation=operation, status="connection_error").inc()
            logger.error("Failed to connect to ToyyibPay", operation=operation, error=str(e))
            raise GatewayError("Failed to connect to ToyyibPay", code="CONNECTION_ERROR")
        except ValueError:
            gateway_requests_total.labels(operation=operation, status="invalid_response").inc()
            logger.error(
                "ToyyibPay returned a non-JSON response",
                operation=operation,
                status_code=response.status_code
            )
            raise GatewayError(
                "Unexpected response from ToyyibPay",
                code="UNEXPECTED_RESPONSE",
                details=response.text[:500]
            )

        gateway_requests_total.labels(operation=operation, status="ok").inc()
        return result

    async def create_category(self, name: str, description: str) -> str:
        result = await self._post(
            "create_category",
            "createCategory",
            {"catname": name, "catdescription": description},
        )
        record = _first_record(result, "create_category")
        if record and record.get("CategoryCode"):
            category_code = record["CategoryCode"]
            logger.info("ToyyibPay category created", category_code=category_code, name=name)
            return category_code

        raise GatewayError(
            _error_message(result, "Failed to create category"),
            code="CATEGORY_CREATE_FAILED",
            details=result
        )

    async def create_bill(self, request: BillRequest) -> BillResult:
        if request.amount < MIN_BILL_AMOUNT:
            raise GatewayError("Bill amount must be at least RM 1.00", code="INVALID_PARAMS")

        category_code = request.category_code
        if not category_code:
            category_code = await self.create_category(
                "General Fund",
                "General donations to Yayasan Insan Prihatin"
            )

        data = {
            "categoryCode": category_code,
            "billName": request.bill_name[:30],
            "billDescription": request.bill_description[:100],
            "billPriceSetting": "1",  # fixed amount
            "billPayorInfo": "0" if request.is_anonymous else "1",
            "billAmount": str(request.amount),
            "billReturnUrl": request.return_url,
            "billCallbackUrl": request.callback_url,
            "billExternalReferenceNo": request.payment_reference,
            "billTo": ("Penderma" if request.is_anonymous else request.donor_name)[:100],
            "billEmail": request.donor_email,
            "billPhone": request.donor_phone or "0123456789",
            "billContentEmail": request.receipt_note,
            "billPaymentChannel": CHANNEL_FPX,
            "billChargeToCustomer": "1",  # FPX fee paid by donor
        }
        result = await self._post("create_bill", "createBill", data)

        record = _first_record(result, "create_bill")
        if record and record.get("BillCode"):
            bill_code = record["BillCode"]
            logger.info(
                "ToyyibPay bill created",
                payment_reference=request.payment_reference,
                bill_code=bill_code
            )
            return BillResult(
                bill_code=bill_code,
                payment_url=self.payment_url(bill_code),
                category_code=category_code,
                raw={"response": result},
            )

        logger.error(
            "ToyyibPay bill creation failed",
            payment_reference=request.payment_reference,
            response=result
        )
        raise GatewayError(
            _error_message(result, "Failed to create bill"),
            code="BILL_CREATE_FAILED",
            details=result
        )

    async def get_bill_transactions(self, bill_code: str) -> List[Dict[str, Any]]:
        result = await self._post(
            "get_bill_transactions",
            "getBillTransactions",
            {"billCode": bill_code},
        )
        if not isinstance(result, list):
            # An unpaid bill answers with a status object instead of a list
            return []
        transactions = [t for t in result if isinstance(t, dict)]
        if result and not transactions:
            logger.error("Unexpected ToyyibPay payload", operation="get_bill_transactions", response=result)
            raise GatewayError(
                _error_message(result, "Unexpected response from ToyyibPay"),
                code="UNEXPECTED_RESPONSE",
                details=result
            )
        return transactions

    async def query_status(self, payment_reference: str, bill_code: str) -> GatewayStatusReport:
        transactions = await self.get_bill_transactions(bill_code)
        if not transactions:
            return GatewayStatusReport(status=GatewayPaymentStatus.PENDING, raw={"transactions": []})

        # A successful attempt anywhere on the bill wins over later failures
        chosen = next(
            (t for t in transactions if map_payment_status(t.get("billpaymentStatus")) == GatewayPaymentStatus.COMPLETED),
            transactions[0]
        )
        gateway_status = chosen.get("billpaymentStatus")
        status = map_payment_status(gateway_status)
        return GatewayStatusReport(
            status=status,
            transaction_id=chosen.get("transactionId") or chosen.get("billpaymentInvoiceNo"),
            reason=f"ToyyibPay status: {gateway_status}" if status == GatewayPaymentStatus.FAILED else None,
            gateway_status=gateway_status,
            raw={"transaction": chosen},
        )


def _first_record(result: Any, operation: str) -> Optional[Dict[str, Any]]:
    """First record of a list payload, None for an empty list or a status object"""
    if not isinstance(result, list) or not result:
        return None
    if not isinstance(result[0], dict):
        # Key and parameter errors come back as a list of strings
        logger.error("Unexpected ToyyibPay payload", operation=operation, response=result)
        raise GatewayError(
            _error_message(result, "Unexpected response from ToyyibPay"),
            code="UNEXPECTED_RESPONSE",
            details=result
        )
    return result[0]


def _error_message(result: Any, default: str) -> str:
    if isinstance(result, dict):
        return result.get("msg") or result.get("error") or default
    if isinstance(result, list) and result and isinstance(result[0], str):
        return result[0]
    return default


def get_payment_gateway() -> PaymentGateway:
    """Dependency to get the configured payment gateway"""
    return ToyyibPayGateway()
