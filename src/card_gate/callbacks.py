"""Verification of asynchronous processor notifications."""

import json
import logging
from typing import Any, Dict, Union

from pydantic import ValidationError

from .connectors.base import CallbackData, PaymentResponse, PaymentStatus
from .connectors.gate_connector import challenge_from_document
from .exceptions import InvalidCallbackError, SignatureMismatchError
from .signature import SignatureEngine

logger = logging.getLogger(__name__)

# Security events go to their own logger so they can be routed separately
security_logger = logging.getLogger("card_gate.security")


class CallbackVerifier:
    """Checks the HMAC signature of inbound callbacks.

    A callback that fails verification is rejected outright: it is logged
    and never allowed to mark a payment successful or declined.
    """

    def __init__(self, signature_engine: SignatureEngine):
        self.signer = signature_engine

    def verify(self, callback: Union[CallbackData, Dict[str, Any]]) -> bool:
        """Recompute the signature over the callback and compare.

        Args:
            callback: Parsed CallbackData or the raw JSON document.

        Returns:
            True only if the recomputed signature equals the supplied one.
        """
        if isinstance(callback, CallbackData):
            payload = callback.signed_payload()
        else:
            payload = callback
        received = payload.get("signature") if isinstance(payload, dict) else None

        if not received:
            security_logger.warning("Rejecting callback without signature")
            return False
        if not self.signer.verify(payload, received):
            payment = payload.get("payment") or {}
            security_logger.warning(
                f"Rejecting callback with invalid signature (payment {payment.get('id')})"
            )
            return False
        return True

    def parse(self, body: Union[bytes, str]) -> CallbackData:
        """Decode a callback body without trusting it.

        Raises:
            InvalidCallbackError: If the body is not a JSON object of the right shape.
        """
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidCallbackError("Callback body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidCallbackError("Callback body must be a JSON object")
        try:
            return CallbackData.from_payload(payload)
        except ValidationError as e:
            raise InvalidCallbackError(f"Malformed callback: {e.error_count()} invalid field(s)") from e

    def verify_and_parse(self, body: Union[bytes, str]) -> CallbackData:
        """Parse a callback body and verify it in one step.

        Raises:
            InvalidCallbackError: If the body cannot be parsed.
            SignatureMismatchError: If the signature does not match.
        """
        callback = self.parse(body)
        if not self.verify(callback):
            raise SignatureMismatchError("Callback signature verification failed")
        logger.info(f"Verified callback for payment {callback.payment_id}: {callback.resolve_status().value}")
        return callback


def callback_response(callback: CallbackData) -> PaymentResponse:
    """Read a verified callback as a payment response.

    A callback that is still pending but carries an ``acs`` or ``threeds2``
    block hands out a new challenge.
    """
    status = callback.resolve_status()
    challenge = None
    if status == PaymentStatus.PENDING:
        challenge = challenge_from_document(callback.signed_payload())
        if challenge is not None:
            status = PaymentStatus.THREE_DS_REQUIRED
    return PaymentResponse(
        payment_id=callback.payment_id or "",
        status=status,
        message=callback.message,
        challenge=challenge,
    )
