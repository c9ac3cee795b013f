# card_gate package
__version__ = "0.1.0"

from .config import GatewayConfig
from .exceptions import (
    GatewayError,
    ConfigurationError,
    CardValidationError,
    GatewayTransportError,
    SignatureMismatchError,
    InvalidCallbackError,
)
from .signature import SignatureEngine, canonicalize
from .cards import CardBrand, validate_card, validate_card_number, validate_expiry_date, detect_card_brand
from .connectors import (
    ConnectorBase,
    GateConnector,
    CardData,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
    ChallengeKind,
    CallbackData,
)
from .polling import StatusPoller, PollOutcome, PollResult
from .three_ds import ThreeDSOrchestrator, PaymentPhase, ChallengeForm, render_challenge
from .callbacks import CallbackVerifier, callback_response
from .services import PurchaseService
