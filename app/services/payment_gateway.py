"""
Payment gateway adapter.

Talks to a Stripe-compatible REST API over httpx (form-encoded requests,
bearer secret key, Idempotency-Key header). Every outcome, including network
errors, timeouts, non-2xx responses and malformed bodies, is normalized into
a GatewayResult; nothing here raises into the billing flow. The adapter never
retries internally: retries are a policy decision of the retry scheduler.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional
import enum
import logging
import httpx

from app.core.config import settings
from app.utils.money import to_minor_units

logger = logging.getLogger(__name__)


class GatewayStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ChargeRequest:
    conversation_id: str  # also sent as the idempotency key
    amount: Decimal
    currency: str
    payment_method_token: str
    customer_reference: str
    description: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayResult:
    status: GatewayStatus
    provider_payment_id: Optional[str] = None
    provider_status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == GatewayStatus.SUCCESS

    @classmethod
    def failure(cls, message: str, code: Optional[str] = None, raw: Optional[dict] = None) -> "GatewayResult":
        return cls(status=GatewayStatus.FAILURE, error_code=code, error_message=message, raw=raw)


# Refunds and cancellations share the charge result shape
RefundResult = GatewayResult


class PaymentGateway:
    """Interface every gateway adapter implements."""

    provider = "gateway"

    def charge(self, request: ChargeRequest) -> GatewayResult:
        raise NotImplementedError

    def refund(
        self,
        provider_payment_id: str,
        amount: Decimal,
        currency: str,
        conversation_id: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        raise NotImplementedError

    def cancel(self, provider_payment_id: str, conversation_id: str) -> GatewayResult:
        raise NotImplementedError

    def retrieve(self, provider_payment_id: str) -> GatewayResult:
        raise NotImplementedError


class HttpPaymentGateway(PaymentGateway):
    CHARGE_SUCCESS_STATES = ("succeeded",)
    REFUND_SUCCESS_STATES = ("succeeded", "pending")
    CANCEL_SUCCESS_STATES = ("canceled",)

    def __init__(
        self,
        base_url: str,
        secret_key: Optional[str],
        timeout: float = 15.0,
        provider: str = "stripe",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.provider = provider
        headers = {"Accept": "application/json"}
        if secret_key:
            headers["Authorization"] = f"Bearer {secret_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def charge(self, request: ChargeRequest) -> GatewayResult:
        data = {
            "amount": str(to_minor_units(request.amount)),
            "currency": request.currency.lower(),
            "payment_method": request.payment_method_token,
            "confirm": "true",
            "off_session": "true",
            "metadata[customer_reference]": request.customer_reference,
            "metadata[conversation_id]": request.conversation_id,
        }
        if request.description:
            data["description"] = request.description
        if request.buyer_email:
            data["receipt_email"] = request.buyer_email
        for key, value in request.metadata.items():
            data[f"metadata[{key}]"] = str(value)

        result = self._request(
            "POST", "/payment_intents",
            data=data,
            idempotency_key=request.conversation_id,
            success_states=self.CHARGE_SUCCESS_STATES,
        )
        logger.info(
            "[GATEWAY] Charge %s %s %s -> %s%s",
            request.conversation_id, request.amount, request.currency, result.status.value,
            f" ({result.error_message})" if result.error_message else "",
        )
        return result

    def refund(self, provider_payment_id, amount, currency, conversation_id, reason=None):
        data = {
            "payment_intent": provider_payment_id,
            "amount": str(to_minor_units(amount)),
            "metadata[conversation_id]": conversation_id,
        }
        if reason:
            data["metadata[reason]"] = reason
        result = self._request(
            "POST", "/refunds",
            data=data,
            idempotency_key=conversation_id,
            success_states=self.REFUND_SUCCESS_STATES,
        )
        logger.info("[GATEWAY] Refund %s of %s %s -> %s", provider_payment_id, amount, currency, result.status.value)
        return result

    def cancel(self, provider_payment_id, conversation_id):
        return self._request(
            "POST", f"/payment_intents/{provider_payment_id}/cancel",
            data={},
            idempotency_key=conversation_id,
            success_states=self.CANCEL_SUCCESS_STATES,
        )

    def retrieve(self, provider_payment_id):
        return self._request("GET", f"/payment_intents/{provider_payment_id}")

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        success_states: Optional[Iterable[str]] = None,
    ) -> GatewayResult:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = self._client.request(method, path, data=data, headers=headers)
        except httpx.TimeoutException:
            logger.warning("[GATEWAY] %s %s timed out", method, path)
            return GatewayResult.failure("Payment gateway timed out", code="timeout")
        except httpx.HTTPError as e:
            logger.warning("[GATEWAY] %s %s failed: %s", method, path, e)
            return GatewayResult.failure(f"Payment gateway unreachable: {e}", code="network_error")

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            error = body.get("error") if isinstance(body, dict) else None
            error = error if isinstance(error, dict) else {}
            return GatewayResult.failure(
                error.get("message") or f"Payment gateway returned HTTP {response.status_code}",
                code=error.get("decline_code") or error.get("code") or f"http_{response.status_code}",
                raw=body if isinstance(body, dict) else None,
            )

        if not isinstance(body, dict):
            return GatewayResult.failure("Malformed payment gateway response", code="malformed_response")

        provider_status = body.get("status")
        if success_states is not None and provider_status not in success_states:
            last_error = body.get("last_payment_error") or {}
            return GatewayResult(
                status=GatewayStatus.FAILURE,
                provider_payment_id=body.get("id"),
                provider_status=provider_status,
                error_code=last_error.get("code") or "unexpected_status",
                error_message=last_error.get("message") or f"Unexpected payment status: {provider_status}",
                raw=body,
            )

        return GatewayResult(
            status=GatewayStatus.SUCCESS,
            provider_payment_id=body.get("id"),
            provider_status=provider_status,
            raw=body,
        )


def build_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway(
        base_url=settings.GATEWAY_BASE_URL,
        secret_key=settings.GATEWAY_SECRET_KEY,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        provider=settings.GATEWAY_PROVIDER,
    )
