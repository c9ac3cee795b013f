import enum
import time
from abc import ABC, abstractmethod
from typing import Annotated, Optional, Dict, Any, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SecretStr, field_validator, model_validator


class PaymentStatus(str, enum.Enum):
    """Outcome of a single gateway call."""
    SUCCESS = "success"
    DECLINE = "decline"
    PENDING = "pending"
    THREE_DS_REQUIRED = "3ds_required"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.DECLINE})


class ChallengeKind(str, enum.Enum):
    """The three 3-D Secure variants the processor may ask for."""
    BASIC = "basic"          # ACS redirect with PaReq/MD
    EXTENDED = "extended"    # hidden device fingerprinting iframe
    THREEDS2 = "threeds2"    # 3DS2 challenge redirect with creq


class ErrorSource(str, enum.Enum):
    TRANSPORT = "transport"
    PROCESSOR = "processor"
    SIGNATURE = "signature"


# Canonical request models
class CardData(BaseModel):
    """Raw card data. Held in memory only for the duration of initiation."""
    model_config = ConfigDict(frozen=True)

    pan: SecretStr
    expiry_month: str = Field(..., min_length=1, max_length=2)
    expiry_year: str = Field(..., min_length=2, max_length=4)
    cvv: SecretStr
    card_holder: str = Field(..., min_length=2)

    @field_validator("expiry_month", "expiry_year", mode="before")
    @classmethod
    def coerce_to_str(cls, v):
        return str(v) if isinstance(v, int) else v


class BillingAddress(BaseModel):
    """Optional AVS data."""
    model_config = ConfigDict(frozen=True)

    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class PaymentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    credits: int = Field(..., gt=0)
    amount: int = Field(..., gt=0)  # minor units
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    card: CardData
    customer_ip: str = "127.0.0.1"
    customer_email: Optional[str] = None
    billing: Optional[BillingAddress] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


# 3-D Secure challenge payloads
class AcsChallenge(BaseModel):
    """Basic 3DS: auto-post PaReq/MD/TermUrl into a visible iframe."""
    kind: Literal["basic"] = "basic"
    acs_url: str
    pa_req: Optional[str] = None
    md: Optional[str] = None
    term_url: Optional[str] = None


class FingerprintChallenge(BaseModel):
    """Extended 3DS: auto-post threeDSMethodData into a hidden 0x0 iframe."""
    kind: Literal["extended"] = "extended"
    iframe_url: str
    threeds_method_data: Optional[str] = None


class RedirectChallenge(BaseModel):
    """3DS2 challenge: auto-post creq/threeDSSessionData into a visible iframe."""
    kind: Literal["threeds2"] = "threeds2"
    redirect_url: str
    creq: Optional[str] = None
    threeds_session_data: Optional[str] = None


ThreeDSChallenge = Annotated[
    Union[AcsChallenge, FingerprintChallenge, RedirectChallenge],
    Field(discriminator="kind"),
]


class ProcessorErrorDetail(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def code_to_str(cls, v):
        return str(v) if v is not None else v


class PaymentResponse(BaseModel):
    payment_id: str
    status: PaymentStatus
    message: Optional[str] = None
    challenge: Optional[ThreeDSChallenge] = None
    errors: List[ProcessorErrorDetail] = Field(default_factory=list)
    error_source: Optional[ErrorSource] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def challenge_matches_status(self) -> "PaymentResponse":
        # exactly one challenge variant when 3DS is required, none otherwise
        if self.status == PaymentStatus.THREE_DS_REQUIRED and self.challenge is None:
            raise ValueError("3ds_required responses must carry a challenge")
        if self.status != PaymentStatus.THREE_DS_REQUIRED and self.challenge is not None:
            raise ValueError(f"{self.status.value} responses cannot carry a challenge")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# Inbound asynchronous notifications
class CallbackPayment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def id_to_str(cls, v):
        return str(v) if v is not None else v


class CallbackOperation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    status: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def code_to_str(cls, v):
        return str(v) if v is not None else v


class CallbackData(BaseModel):
    """Signed notification posted by the processor.

    Nothing in here may be trusted until the signature has been verified.
    The document is kept exactly as received so the signature can be
    recomputed over the same fields.
    """
    model_config = ConfigDict(extra="allow")

    project_id: Optional[int] = None
    payment: Optional[CallbackPayment] = None
    operation: Optional[CallbackOperation] = None
    acs: Optional[Dict[str, Any]] = None
    threeds2: Optional[Dict[str, Any]] = None
    custom_fields: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None

    _raw: Optional[Dict[str, Any]] = PrivateAttr(default=None)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CallbackData":
        callback = cls.model_validate(payload)
        callback._raw = payload
        return callback

    def signed_payload(self) -> Dict[str, Any]:
        """The document the processor signed."""
        if self._raw is not None:
            return self._raw
        return self.model_dump(exclude_none=True)

    @property
    def payment_id(self) -> Optional[str]:
        if self.payment and self.payment.id:
            return self.payment.id
        if self.custom_fields and self.custom_fields.get("payment_id"):
            return str(self.custom_fields["payment_id"])
        general = (self.model_extra or {}).get("general")
        if isinstance(general, dict) and general.get("payment_id"):
            return str(general["payment_id"])
        return None

    def resolve_status(self) -> PaymentStatus:
        """Map the operation/payment status pair onto a payment outcome."""
        operation_status = ((self.operation.status if self.operation else None) or "").lower()
        payment_status = ((self.payment.status if self.payment else None) or "").lower()

        if operation_status == "success" or payment_status == "success":
            return PaymentStatus.SUCCESS
        if operation_status == "decline" or payment_status in ("decline", "failed", "error"):
            return PaymentStatus.DECLINE
        return PaymentStatus.PENDING

    @property
    def message(self) -> Optional[str]:
        return self.operation.message if self.operation else None


class ConnectorBase(ABC):
    """
    Gateway connector interface. Every method that talks to the processor is
    a suspension point; nothing else performs I/O.
    """

    PAYMENT_ID_PREFIX = "payment"

    def generate_payment_id(self, user_id: str, now_ms: Optional[int] = None) -> str:
        """Mint the correlation key for one purchase attempt."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return f"{self.PAYMENT_ID_PREFIX}_{user_id}_{now_ms}"

    @abstractmethod
    async def initiate_payment(
        self, request: PaymentRequest, payment_id: Optional[str] = None
    ) -> PaymentResponse:
        """
        Start a card sale. Can return 3ds_required with exactly one challenge.
        """
        raise NotImplementedError

    @abstractmethod
    async def submit_3ds_result(self, payment_id: str, pa_res: str, md: str) -> PaymentResponse:
        raise NotImplementedError

    @abstractmethod
    async def initiate_3ds_check(self, payment_id: str, completion_indicator: bool = True) -> PaymentResponse:
        raise NotImplementedError

    @abstractmethod
    async def check_status(self, payment_id: str) -> PaymentResponse:
        """
        Idempotent status read; safe to call any number of times.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}
