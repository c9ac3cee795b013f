"""Payment processor connectors."""

from .base import (
    ConnectorBase,
    CardData,
    BillingAddress,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
    TERMINAL_STATUSES,
    ChallengeKind,
    ErrorSource,
    AcsChallenge,
    FingerprintChallenge,
    RedirectChallenge,
    ThreeDSChallenge,
    ProcessorErrorDetail,
    CallbackData,
)
from .gate_connector import GateConnector
from .simulator_connector import (
    SimulatedProcessor,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedTransaction,
)

__all__ = [
    # Base classes and models
    "ConnectorBase",
    "CardData",
    "BillingAddress",
    "PaymentRequest",
    "PaymentResponse",
    "PaymentStatus",
    "TERMINAL_STATUSES",
    "ErrorSource",
    "ProcessorErrorDetail",
    "CallbackData",
    # 3DS
    "ChallengeKind",
    "AcsChallenge",
    "FingerprintChallenge",
    "RedirectChallenge",
    "ThreeDSChallenge",
    # Connectors
    "GateConnector",
    "SimulatedProcessor",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedTransaction",
]
