import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..cards import expand_expiry_year, mask_card_number, normalize_card_number
from ..config import GatewayConfig
from ..exceptions import GatewayTransportError
from ..signature import SIGNATURE_FIELD, SignatureEngine
from .base import (
    AcsChallenge,
    ConnectorBase,
    ErrorSource,
    FingerprintChallenge,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
    ProcessorErrorDetail,
    RedirectChallenge,
)

logger = logging.getLogger(__name__)

SALE_PATH = "/v2/payment/card/sale"
THREE_DS_RESULT_PATH = "/v2/payment/card/3ds_result"
THREE_DS_CHECK_PATH = "/v2/payment/card/3ds_check_iframe"
STATUS_PATH = "/v2/payment/status"

RETURN_PATH = "/api/payments/gate/3ds-return"
NOTIFY_PATH = "/api/payments/gate/3ds-notify"

# processor error code for a transaction it has not indexed yet
TRANSACTION_NOT_FOUND_CODE = "3061"

# Fields that must never be kept in a stored provider response
SENSITIVE_FIELDS = frozenset([
    "card",
    "pan",
    "cvv",
    "card_holder",
])

SUCCESS_PAYMENT_STATUSES = ("success", "completed")
DECLINE_PAYMENT_STATUSES = ("decline", "declined", "failed", "error")
PENDING_PAYMENT_STATUSES = ("pending", "processing", "awaiting 3ds result")


def _sanitize(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _sanitize(v) for k, v in data.items() if k not in SENSITIVE_FIELDS}
    if isinstance(data, list):
        return [_sanitize(item) for item in data]
    return data


def _statuses(data: Dict[str, Any]) -> Tuple[str, str]:
    """Lower-cased (operation status, payment status) pair of a reply."""
    operation = data.get("operation") or {}
    payment = data.get("payment") or {}
    return (
        str(operation.get("status") or "").lower(),
        str(payment.get("status") or "").lower(),
    )


def _operation_message(data: Dict[str, Any]) -> Optional[str]:
    return (data.get("operation") or {}).get("message")


def _error_details(data: Dict[str, Any]) -> List[ProcessorErrorDetail]:
    errors = data.get("errors") or []
    if not isinstance(errors, list):
        return []
    return [
        ProcessorErrorDetail(code=e.get("code"), message=e.get("message"))
        for e in errors if isinstance(e, dict)
    ]


def _is_not_found(data: Dict[str, Any]) -> bool:
    for error in _error_details(data):
        if error.code == TRANSACTION_NOT_FOUND_CODE:
            return True
        if error.message and "not found" in error.message.lower():
            return True
    return False


def _fingerprint_challenge(data: Dict[str, Any]) -> Optional[FingerprintChallenge]:
    iframe = (data.get("threeds2") or {}).get("iframe") or data.get("iframe")
    if not iframe or not iframe.get("url"):
        return None
    params = iframe.get("params") or {}
    return FingerprintChallenge(
        iframe_url=iframe["url"],
        threeds_method_data=params.get("threeDSMethodData") or params.get("3DSMethodData"),
    )


def _acs_challenge(data: Dict[str, Any]) -> Optional[AcsChallenge]:
    acs = data.get("acs")
    if not acs or not acs.get("acs_url"):
        return None
    return AcsChallenge(
        acs_url=acs["acs_url"],
        pa_req=acs.get("pa_req"),
        md=acs.get("md"),
        term_url=acs.get("term_url"),
    )


def _redirect_challenge(data: Dict[str, Any]) -> Optional[RedirectChallenge]:
    redirect = (data.get("threeds2") or {}).get("redirect")
    if not redirect or not redirect.get("url"):
        return None
    params = redirect.get("params") or {}
    return RedirectChallenge(
        redirect_url=redirect["url"],
        creq=params.get("creq"),
        threeds_session_data=params.get("threeDSSessionData"),
    )


def challenge_from_document(data: Dict[str, Any]):
    """Any 3DS challenge carried by a processor document, reply or callback."""
    return _acs_challenge(data) or _redirect_challenge(data) or _fingerprint_challenge(data)


class GateConnector(ConnectorBase):
    """
    Connector for the card processor's JSON-over-HTTPS API.

    Every request body is signed with the project secret and every reply is
    classified into a PaymentResponse. Transport failures come back as an
    ``error`` response; this class never retries on its own.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        signature_engine: Optional[SignatureEngine] = None,
    ):
        self.config = config or GatewayConfig.from_env()
        self.signer = signature_engine or SignatureEngine(self.config.secret_key)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.config.api_url,
            timeout=self.config.timeout_seconds,
            headers={"Content-Type": "application/json"},
        )
        logger.info(f"GateConnector initialized for project {self.config.project_id}")

    async def aclose(self) -> None:
        """Close the HTTP client connection pool if this connector created it."""
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "GateConnector":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # Request building

    def _general(self, payment_id: str) -> Dict[str, Any]:
        return {
            "project_id": self.config.project_id,
            "payment_id": payment_id,
        }

    def return_urls(self, payment_id: str) -> Dict[str, Dict[str, str]]:
        """Return/notification URLs embedded in the sale request."""
        base = self.config.public_base_url
        return_url = f"{base}{RETURN_PATH}?payment_id={payment_id}"
        return {
            "return_url": {
                "success": f"{return_url}&status=success",
                "decline": f"{return_url}&status=decline",
            },
            "acs_return_url": {
                "return_url": return_url,
                "3ds_notification_url": f"{base}{NOTIFY_PATH}?payment_id={payment_id}",
            },
        }

    def build_sale_request(self, request: PaymentRequest, payment_id: str) -> Dict[str, Any]:
        """Build the signed body for the sale endpoint.

        The returned dict contains raw card data and must not outlive the
        initiation call.
        """
        card = request.card
        customer: Dict[str, Any] = {
            "id": request.user_id,
            "ip_address": request.customer_ip,
        }
        if request.customer_email:
            customer["email"] = request.customer_email

        body: Dict[str, Any] = {
            "general": self._general(payment_id),
            "customer": customer,
            "payment": {
                "amount": request.amount,
                "currency": request.currency,
                "description": f"Credits Purchase - {request.credits} credits",
                "extra_param": "3ds",
            },
            "card": {
                "pan": normalize_card_number(card.pan.get_secret_value()),
                "year": expand_expiry_year(card.expiry_year),
                "month": int(card.expiry_month),
                "card_holder": card.card_holder.upper(),
                "cvv": card.cvv.get_secret_value(),
            },
            "custom_fields": {
                "payment_id": payment_id,
                "user_id": request.user_id,
                "credits": str(request.credits),
            },
        }
        body.update(self.return_urls(payment_id))

        billing = request.billing
        if billing and (billing.postal_code or billing.address):
            avs: Dict[str, Any] = {}
            if billing.postal_code:
                avs["avs_post_code"] = billing.postal_code
            if billing.address:
                avs["avs_street_address"] = billing.address
            body["avs_data"] = avs

        return self.signer.attach(body)

    # Transport

    async def _post(self, path: str, body: Dict[str, Any], payment_id: str) -> Tuple[int, Dict[str, Any]]:
        """POST a signed body and decode the JSON reply.

        Raises:
            GatewayTransportError: On network failure or a non-JSON reply.
        """
        try:
            response = await self.http_client.post(path, json=body)
        except httpx.HTTPError as e:
            raise GatewayTransportError(f"{type(e).__name__}: {e}", payment_id=payment_id) from e

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayTransportError(
                f"Malformed processor response (HTTP {response.status_code})",
                payment_id=payment_id,
            ) from e
        if not isinstance(data, dict):
            raise GatewayTransportError(
                f"Unexpected processor response type {type(data).__name__}",
                payment_id=payment_id,
            )
        return response.status_code, data

    async def _call(self, path: str, body: Dict[str, Any], payment_id: str):
        """Send a request; returns (status code, reply) or an error response."""
        try:
            status_code, data = await self._post(path, body, payment_id)
        except GatewayTransportError as e:
            logger.error(f"Transport error for payment {payment_id} on {path}: {e}")
            return None, self._transport_error(payment_id, str(e))

        signature = data.get(SIGNATURE_FIELD)
        if signature is not None and not self.signer.verify(data, signature):
            logger.warning(f"Discarding processor reply with invalid signature for payment {payment_id}")
            return None, PaymentResponse(
                payment_id=payment_id,
                status=PaymentStatus.ERROR,
                message="Invalid response signature",
                error_source=ErrorSource.SIGNATURE,
            )
        return status_code, data

    # Classification

    def _transport_error(self, payment_id: str, message: str) -> PaymentResponse:
        return PaymentResponse(
            payment_id=payment_id,
            status=PaymentStatus.ERROR,
            message=message,
            error_source=ErrorSource.TRANSPORT,
        )

    def _processor_error(self, payment_id: str, data: Dict[str, Any], status_code: int) -> Optional[PaymentResponse]:
        if 200 <= status_code < 300 and str(data.get("status") or "").lower() != "error":
            return None
        logger.error(f"Processor error for payment {payment_id}: HTTP {status_code} {data.get('errors')}")
        return PaymentResponse(
            payment_id=payment_id,
            status=PaymentStatus.ERROR,
            message=data.get("message") or "Payment request failed",
            errors=_error_details(data),
            error_source=ErrorSource.PROCESSOR,
            raw_provider_response=_sanitize(data),
        )

    def _respond(self, payment_id: str, status: PaymentStatus, data: Dict[str, Any], **kwargs) -> PaymentResponse:
        return PaymentResponse(
            payment_id=payment_id,
            status=status,
            raw_provider_response=_sanitize(data),
            **kwargs,
        )

    def _decline(self, payment_id: str, data: Dict[str, Any]) -> PaymentResponse:
        return self._respond(
            payment_id, PaymentStatus.DECLINE, data,
            message=_operation_message(data) or "Payment declined",
        )

    def classify_sale_response(self, payment_id: str, status_code: int, data: Dict[str, Any]) -> PaymentResponse:
        error = self._processor_error(payment_id, data, status_code)
        if error:
            return error

        operation_status, payment_status = _statuses(data)
        if "success" in (operation_status, payment_status):
            return self._respond(payment_id, PaymentStatus.SUCCESS, data, message="Payment successful")

        fingerprint = _fingerprint_challenge(data)
        if fingerprint:
            logger.info(f"Payment {payment_id} requires extended 3DS fingerprinting")
            return self._respond(payment_id, PaymentStatus.THREE_DS_REQUIRED, data, challenge=fingerprint)

        acs = _acs_challenge(data)
        if acs:
            logger.info(f"Payment {payment_id} requires basic 3DS (ACS redirect)")
            return self._respond(payment_id, PaymentStatus.THREE_DS_REQUIRED, data, challenge=acs)

        if "decline" in (operation_status, payment_status):
            return self._decline(payment_id, data)

        return self._respond(payment_id, PaymentStatus.PENDING, data, message="Payment is being processed")

    def classify_completion(self, payment_id: str, status_code: int, data: Dict[str, Any]) -> PaymentResponse:
        """Classify replies to 3ds_result and 3ds_check_iframe."""
        error = self._processor_error(payment_id, data, status_code)
        if error:
            return error

        operation_status, payment_status = _statuses(data)
        if "success" in (operation_status, payment_status):
            return self._respond(payment_id, PaymentStatus.SUCCESS, data)

        redirect = _redirect_challenge(data)
        if redirect:
            logger.info(f"Payment {payment_id} requires a 3DS2 challenge")
            return self._respond(payment_id, PaymentStatus.THREE_DS_REQUIRED, data, challenge=redirect)

        if "decline" in (operation_status, payment_status):
            return self._decline(payment_id, data)

        return self._respond(payment_id, PaymentStatus.PENDING, data)

    def classify_status_response(self, payment_id: str, status_code: int, data: Dict[str, Any]) -> PaymentResponse:
        # the processor may not have indexed a fresh transaction yet
        if _is_not_found(data):
            return self._respond(payment_id, PaymentStatus.PENDING, data, message="Payment is being processed")

        error = self._processor_error(payment_id, data, status_code)
        if error:
            return error

        challenge = _acs_challenge(data) or _redirect_challenge(data)
        if challenge:
            return self._respond(
                payment_id, PaymentStatus.THREE_DS_REQUIRED, data,
                message="3DS authentication required", challenge=challenge,
            )

        operation_status, payment_status = _statuses(data)
        if payment_status in SUCCESS_PAYMENT_STATUSES or operation_status == "success":
            return self._respond(payment_id, PaymentStatus.SUCCESS, data)
        if payment_status in DECLINE_PAYMENT_STATUSES or operation_status == "decline":
            return self._decline(payment_id, data)
        if payment_status in PENDING_PAYMENT_STATUSES:
            return self._respond(payment_id, PaymentStatus.PENDING, data)

        return self._respond(
            payment_id, PaymentStatus.PENDING, data,
            message="Unable to determine payment status",
        )

    # Operations

    async def initiate_payment(
        self, request: PaymentRequest, payment_id: Optional[str] = None
    ) -> PaymentResponse:
        payment_id = payment_id or self.generate_payment_id(request.user_id)
        body = self.build_sale_request(request, payment_id)
        logger.info(
            f"Initiating payment {payment_id}: {request.amount} {request.currency} "
            f"card {mask_card_number(request.card.pan.get_secret_value())}"
        )

        status_code, data = await self._call(SALE_PATH, body, payment_id)
        del body
        if status_code is None:
            return data

        result = self.classify_sale_response(payment_id, status_code, data)
        logger.info(f"Payment {payment_id} initiation result: {result.status.value}")
        return result

    async def submit_3ds_result(self, payment_id: str, pa_res: str, md: str) -> PaymentResponse:
        body = self.signer.attach({
            "general": self._general(payment_id),
            "pares": pa_res,
            "md": md,
        })
        logger.info(f"Submitting 3DS result for payment {payment_id}")

        status_code, data = await self._call(THREE_DS_RESULT_PATH, body, payment_id)
        if status_code is None:
            return data
        return self.classify_completion(payment_id, status_code, data)

    async def initiate_3ds_check(self, payment_id: str, completion_indicator: bool = True) -> PaymentResponse:
        body = self.signer.attach({
            "general": self._general(payment_id),
            "threeds_completion_indicator": completion_indicator,
        })
        logger.info(f"Initiating 3DS check for payment {payment_id} (completed={completion_indicator})")

        status_code, data = await self._call(THREE_DS_CHECK_PATH, body, payment_id)
        if status_code is None:
            return data
        return self.classify_completion(payment_id, status_code, data)

    async def check_status(self, payment_id: str) -> PaymentResponse:
        body = self.signer.attach({"general": self._general(payment_id)})

        status_code, data = await self._call(STATUS_PATH, body, payment_id)
        if status_code is None:
            return data
        return self.classify_status_response(payment_id, status_code, data)

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": "gate",
            "api_url": self.config.api_url,
            "project_id": self.config.project_id,
        }
