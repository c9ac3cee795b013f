"""Tests for the connector models and base class."""

import pytest
from pydantic import ValidationError

from card_gate.connectors.base import (
    AcsChallenge,
    CallbackData,
    ChallengeKind,
    ConnectorBase,
    FingerprintChallenge,
    PaymentResponse,
    PaymentStatus,
    RedirectChallenge,
)


class TestPaymentRequest:
    """Test PaymentRequest validation."""

    def test_currency_upper_cased(self, request_factory):
        assert request_factory(currency="eur").currency == "EUR"

    def test_amount_must_be_positive(self, request_factory):
        with pytest.raises(ValidationError):
            request_factory(amount=0)

    def test_credits_must_be_positive(self, request_factory):
        with pytest.raises(ValidationError):
            request_factory(credits=-5)

    def test_request_is_frozen(self, payment_request):
        with pytest.raises(ValidationError):
            payment_request.amount = 5

    def test_card_secrets_hidden_in_repr(self, payment_request):
        """Test that PAN and CVV never show up in reprs or dumps."""
        text = repr(payment_request) + str(payment_request.model_dump())
        assert "4111111111111111" not in text
        assert "123'" not in text

    def test_integer_expiry_coerced(self, card_factory):
        card = card_factory(expiry_month=7, expiry_year=2030)
        assert card.expiry_month == "7"
        assert card.expiry_year == "2030"


class TestPaymentResponse:
    """Test the challenge/status invariant."""

    def test_3ds_required_needs_challenge(self):
        with pytest.raises(ValidationError):
            PaymentResponse(payment_id="p1", status=PaymentStatus.THREE_DS_REQUIRED)

    def test_challenge_only_with_3ds_required(self):
        with pytest.raises(ValidationError):
            PaymentResponse(
                payment_id="p1",
                status=PaymentStatus.SUCCESS,
                challenge=AcsChallenge(acs_url="https://acs.test"),
            )

    @pytest.mark.parametrize("challenge,kind", [
        (AcsChallenge(acs_url="https://acs.test", pa_req="r", md="m"), ChallengeKind.BASIC),
        (FingerprintChallenge(iframe_url="https://acs.test/fp"), ChallengeKind.EXTENDED),
        (RedirectChallenge(redirect_url="https://acs.test/c", creq="c"), ChallengeKind.THREEDS2),
    ])
    def test_challenge_kinds(self, challenge, kind):
        response = PaymentResponse(payment_id="p1", status=PaymentStatus.THREE_DS_REQUIRED, challenge=challenge)
        assert ChallengeKind(response.challenge.kind) == kind

    def test_challenge_discriminated_from_dict(self):
        """Test that a dumped response validates back to the same variant."""
        response = PaymentResponse(
            payment_id="p1",
            status=PaymentStatus.THREE_DS_REQUIRED,
            challenge=RedirectChallenge(redirect_url="https://acs.test/c", creq="c"),
        )
        restored = PaymentResponse.model_validate(response.model_dump())
        assert isinstance(restored.challenge, RedirectChallenge)

    def test_is_terminal(self):
        assert PaymentResponse(payment_id="p", status=PaymentStatus.SUCCESS).is_terminal
        assert PaymentResponse(payment_id="p", status=PaymentStatus.DECLINE).is_terminal
        assert not PaymentResponse(payment_id="p", status=PaymentStatus.PENDING).is_terminal
        assert not PaymentResponse(payment_id="p", status=PaymentStatus.ERROR).is_terminal


class TestCallbackData:
    """Test callback parsing helpers."""

    def test_payment_id_from_payment(self):
        callback = CallbackData.from_payload({"payment": {"id": "payment_1_2"}})
        assert callback.payment_id == "payment_1_2"

    def test_payment_id_from_custom_fields(self):
        callback = CallbackData.from_payload({"custom_fields": {"payment_id": "payment_1_3"}})
        assert callback.payment_id == "payment_1_3"

    def test_payment_id_from_general(self):
        callback = CallbackData.from_payload({"general": {"payment_id": "payment_1_4"}})
        assert callback.payment_id == "payment_1_4"

    @pytest.mark.parametrize("operation,payment,expected", [
        ("success", "processing", PaymentStatus.SUCCESS),
        (None, "success", PaymentStatus.SUCCESS),
        ("decline", "decline", PaymentStatus.DECLINE),
        (None, "failed", PaymentStatus.DECLINE),
        (None, "error", PaymentStatus.DECLINE),
        ("processing", "awaiting 3ds result", PaymentStatus.PENDING),
        (None, None, PaymentStatus.PENDING),
    ])
    def test_resolve_status(self, operation, payment, expected):
        payload = {"payment": {"id": "p1", "status": payment}}
        if operation:
            payload["operation"] = {"status": operation}
        assert CallbackData.from_payload(payload).resolve_status() == expected

    def test_signed_payload_is_raw_document(self):
        payload = {"payment": {"id": 77, "status": "success"}, "extra": {"k": "v"}}
        callback = CallbackData.from_payload(payload)
        assert callback.signed_payload() is payload
        assert callback.payment_id == "77"


class DummyConnector(ConnectorBase):
    async def initiate_payment(self, request, payment_id=None):
        raise NotImplementedError

    async def submit_3ds_result(self, payment_id, pa_res, md):
        raise NotImplementedError

    async def initiate_3ds_check(self, payment_id, completion_indicator=True):
        raise NotImplementedError

    async def check_status(self, payment_id):
        raise NotImplementedError


class TestConnectorBase:
    """Test shared connector behaviour."""

    def test_cannot_instantiate_abstract(self):
        with pytest.raises(TypeError):
            ConnectorBase()

    def test_generate_payment_id(self):
        assert DummyConnector().generate_payment_id("42", now_ms=1700000000000) == "payment_42_1700000000000"

    def test_generate_payment_id_uses_clock(self):
        payment_id = DummyConnector().generate_payment_id("7")
        prefix, user, millis = payment_id.split("_")
        assert (prefix, user) == ("payment", "7")
        assert millis.isdigit() and len(millis) >= 13

    def test_health_check(self):
        assert DummyConnector().health_check() == {"ok": True}
