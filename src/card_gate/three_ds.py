"""3-D Secure orchestration.

Tracks every payment attempt by PaymentId and drives it from initiation to a
terminal outcome::

    initiated -> success | declined | error
    initiated -> challenge_pending -> success | declined

A challenge of a given kind is handled exactly once per PaymentId; duplicate
form posts or racing callbacks and poll ticks are suppressed here because the
processor treats a second 3DS submission as a protocol error.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel

from .cards import validate_card
from .config import DEFAULT_FINGERPRINT_SETTLE_SECONDS
from .connectors.base import (
    AcsChallenge,
    ChallengeKind,
    ConnectorBase,
    FingerprintChallenge,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
    RedirectChallenge,
)
from .polling import PollOutcome, PollResult, StatusPoller

logger = logging.getLogger(__name__)

# idle attempts are dropped after this long; the database stays authoritative
DEFAULT_STATE_TTL_SECONDS = 3600.0
# settled attempts only need to outlive late duplicate posts
DEFAULT_TERMINAL_STATE_TTL_SECONDS = 300.0


class PaymentPhase(str, enum.Enum):
    INITIATED = "initiated"
    CHALLENGE_PENDING = "challenge_pending"
    SUCCESS = "success"
    DECLINED = "declined"
    ERROR = "error"


TERMINAL_PHASES = frozenset({PaymentPhase.SUCCESS, PaymentPhase.DECLINED})

_PHASE_BY_STATUS = {
    PaymentStatus.SUCCESS: PaymentPhase.SUCCESS,
    PaymentStatus.DECLINE: PaymentPhase.DECLINED,
    PaymentStatus.ERROR: PaymentPhase.ERROR,
    PaymentStatus.THREE_DS_REQUIRED: PaymentPhase.CHALLENGE_PENDING,
}


class ChallengeForm(BaseModel):
    """What the UI has to auto-post, and into which kind of frame."""
    kind: ChallengeKind
    action_url: str
    fields: Dict[str, str]
    method: str = "POST"
    visible: bool = True


@dataclass
class PaymentState:
    """Per-PaymentId orchestration state."""
    payment_id: str
    phase: PaymentPhase = PaymentPhase.INITIATED
    challenge: Optional[object] = None
    last_response: Optional[PaymentResponse] = None
    handled: Set[ChallengeKind] = field(default_factory=set)
    submitted: Set[ChallengeKind] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    touched_at: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


def render_challenge(challenge) -> ChallengeForm:
    """Turn a challenge payload into the form the UI posts into an iframe."""
    if isinstance(challenge, AcsChallenge):
        fields = {"PaReq": challenge.pa_req or "", "MD": challenge.md or ""}
        if challenge.term_url:
            fields["TermUrl"] = challenge.term_url
        return ChallengeForm(kind=ChallengeKind.BASIC, action_url=challenge.acs_url, fields=fields)
    if isinstance(challenge, FingerprintChallenge):
        return ChallengeForm(
            kind=ChallengeKind.EXTENDED,
            action_url=challenge.iframe_url,
            fields={"threeDSMethodData": challenge.threeds_method_data or ""},
            visible=False,
        )
    if isinstance(challenge, RedirectChallenge):
        return ChallengeForm(
            kind=ChallengeKind.THREEDS2,
            action_url=challenge.redirect_url,
            fields={
                "creq": challenge.creq or "",
                "threeDSSessionData": challenge.threeds_session_data or "",
            },
        )
    raise TypeError(f"Unsupported challenge type: {type(challenge).__name__}")


def _challenge_key(challenge) -> tuple:
    if isinstance(challenge, AcsChallenge):
        return (challenge.kind, challenge.acs_url, challenge.md)
    if isinstance(challenge, FingerprintChallenge):
        return (challenge.kind, challenge.iframe_url)
    if isinstance(challenge, RedirectChallenge):
        return (challenge.kind, challenge.redirect_url, challenge.creq)
    return (type(challenge).__name__,)


def same_challenge(known, incoming) -> bool:
    """True if ``incoming`` repeats the challenge already recorded as ``known``."""
    if known is None or incoming is None:
        return False
    return _challenge_key(known) == _challenge_key(incoming)


class ThreeDSOrchestrator:
    """Drives payment attempts through the 3-D Secure state machine.

    Each PaymentId gets its own lock, so calls for one attempt are strictly
    sequenced while unrelated attempts proceed independently. States idle
    for longer than ``state_ttl`` seconds, or ``terminal_ttl`` seconds once
    settled, are evicted.
    """

    def __init__(
        self,
        connector: ConnectorBase,
        settle_delay: float = DEFAULT_FINGERPRINT_SETTLE_SECONDS,
        state_ttl: float = DEFAULT_STATE_TTL_SECONDS,
        terminal_ttl: float = DEFAULT_TERMINAL_STATE_TTL_SECONDS,
    ):
        self.connector = connector
        self.settle_delay = settle_delay
        self.state_ttl = state_ttl
        self.terminal_ttl = terminal_ttl
        self._states: Dict[str, PaymentState] = {}

    def get_state(self, payment_id: str) -> Optional[PaymentState]:
        return self._states.get(payment_id)

    def _state(self, payment_id: str) -> PaymentState:
        state = self._states.get(payment_id)
        if state is None:
            self.evict_stale()
            state = PaymentState(payment_id=payment_id)
            self._states[payment_id] = state
        state.touched_at = time.monotonic()
        return state

    def forget(self, payment_id: str) -> None:
        """Drop the state of a finished attempt."""
        self._states.pop(payment_id, None)

    def evict_stale(self, now: Optional[float] = None) -> int:
        """Drop idle states nobody is working on; returns how many went."""
        now = time.monotonic() if now is None else now
        stale = [
            payment_id for payment_id, state in self._states.items()
            if now - state.touched_at > self._ttl(state) and not state.lock.locked()
        ]
        for payment_id in stale:
            del self._states[payment_id]
        if stale:
            logger.info(f"Evicted {len(stale)} idle payment state(s)")
        return len(stale)

    def _ttl(self, state: PaymentState) -> float:
        return self.terminal_ttl if state.is_terminal else self.state_ttl

    def __len__(self) -> int:
        return len(self._states)

    def is_resolved(self, payment_id: str) -> bool:
        state = self._states.get(payment_id)
        return bool(state and state.is_terminal)

    def observe(self, payment_id: str, response: PaymentResponse) -> PaymentResponse:
        """Fold a gateway, poll or callback result into the attempt's state.

        Once an attempt is terminal, later results are ignored and the
        recorded terminal response is returned instead.
        """
        state = self._state(payment_id)
        if state.is_terminal:
            if response.status != state.last_response.status:
                logger.warning(
                    f"Ignoring {response.status.value} for payment {payment_id}: "
                    f"already {state.phase.value}"
                )
            return state.last_response

        phase = _PHASE_BY_STATUS.get(response.status)
        if response.status == PaymentStatus.PENDING:
            # pending keeps an outstanding challenge alive
            phase = state.phase
        elif response.status == PaymentStatus.ERROR and state.phase == PaymentPhase.CHALLENGE_PENDING:
            phase = state.phase
        state.phase = phase
        state.last_response = response
        if response.challenge is not None:
            state.challenge = response.challenge
        if phase in TERMINAL_PHASES:
            logger.info(f"Payment {payment_id} reached terminal phase {phase.value}")
        return response

    def claim_challenge(self, payment_id: str, kind: ChallengeKind) -> bool:
        """The "already handled" guard: True exactly once per (PaymentId, kind)."""
        state = self._state(payment_id)
        kind = ChallengeKind(kind)
        if state.is_terminal or kind in state.handled:
            logger.warning(f"Suppressing duplicate {kind.value} challenge handling for payment {payment_id}")
            return False
        state.handled.add(kind)
        return True

    def pending_form(self, payment_id: str) -> Optional[ChallengeForm]:
        """Form for the current challenge if nobody has handled it yet."""
        state = self._states.get(payment_id)
        if not state or state.phase != PaymentPhase.CHALLENGE_PENDING or state.challenge is None:
            return None
        if not self.claim_challenge(payment_id, state.challenge.kind):
            return None
        return render_challenge(state.challenge)

    async def start(self, request: PaymentRequest) -> PaymentResponse:
        """Validate the card, mint a PaymentId and initiate the sale.

        Raises:
            CardValidationError: Before any network call, on a bad card.
        """
        validate_card(request.card)
        payment_id = self.connector.generate_payment_id(request.user_id)
        state = self._state(payment_id)
        async with state.lock:
            response = await self.connector.initiate_payment(request, payment_id=payment_id)
            return self.observe(payment_id, response)

    async def complete_basic(self, payment_id: str, pa_res: str, md: str) -> PaymentResponse:
        """Submit the ACS result (PaRes or CRes) once."""
        return await self._submit_once(
            payment_id,
            ChallengeKind.BASIC,
            lambda: self.connector.submit_3ds_result(payment_id, pa_res, md),
        )

    async def complete_challenge(self, payment_id: str, cres: str, session_data: Optional[str] = None) -> PaymentResponse:
        """Submit the CRes of a 3DS2 challenge once."""
        return await self._submit_once(
            payment_id,
            ChallengeKind.THREEDS2,
            lambda: self.connector.submit_3ds_result(payment_id, cres, session_data or payment_id),
        )

    async def complete_fingerprint(self, payment_id: str, settle_delay: Optional[float] = None) -> PaymentResponse:
        """Finish extended 3DS after the hidden fingerprinting iframe was posted.

        Waits the settle delay, then signals completion to the processor. The
        result is either terminal (frictionless) or a 3DS2 redirect challenge.
        The wait happens outside the per-id lock so status reads and callbacks
        for the attempt are not held up.
        """
        delay = self.settle_delay if settle_delay is None else settle_delay
        state = self._state(payment_id)
        if delay > 0 and not state.is_terminal and ChallengeKind.EXTENDED not in state.submitted:
            await asyncio.sleep(delay)

        return await self._submit_once(
            payment_id,
            ChallengeKind.EXTENDED,
            lambda: self.connector.initiate_3ds_check(payment_id, True),
        )

    async def _submit_once(self, payment_id: str, kind: ChallengeKind, call: Callable) -> PaymentResponse:
        state = self._state(payment_id)
        async with state.lock:
            if state.is_terminal or kind in state.submitted:
                logger.warning(f"Suppressing duplicate {kind.value} submission for payment {payment_id}")
                return state.last_response or PaymentResponse(
                    payment_id=payment_id, status=PaymentStatus.PENDING,
                )
            state.submitted.add(kind)
            state.handled.add(kind)
            response = await call()
            return self.observe(payment_id, response)

    async def refresh(self, payment_id: str) -> PaymentResponse:
        """One status read, skipped entirely once the attempt is terminal."""
        state = self._state(payment_id)
        if state.is_terminal:
            return state.last_response
        async with state.lock:
            if state.is_terminal:
                return state.last_response
            response = await self.connector.check_status(payment_id)
            return self.observe(payment_id, response)

    async def complete_return(self, payment_id: str, auth_data: str, md: Optional[str] = None) -> PaymentResponse:
        """Handle the ACS return post, whichever challenge produced it."""
        state = self._state(payment_id)
        if isinstance(state.challenge, RedirectChallenge):
            return await self.complete_challenge(payment_id, auth_data, md)
        return await self.complete_basic(payment_id, auth_data, md or payment_id)

    async def resolve(
        self,
        payment_id: str,
        poller: StatusPoller,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PollResult:
        """Poll until the attempt settles, a new challenge appears or polling gives up.

        A status reply repeating the challenge already handed to the UI counts
        as pending. Stops without further network calls as soon as a callback
        (or any other observer) resolves the attempt.
        """
        state = self._state(payment_id)

        async def fetch(pid: str) -> PaymentResponse:
            known = state.challenge
            response = await self.refresh(pid)
            if response.status == PaymentStatus.THREE_DS_REQUIRED and same_challenge(known, response.challenge):
                # the outstanding challenge is still with the cardholder
                return response.model_copy(update={"status": PaymentStatus.PENDING, "challenge": None})
            return response

        if not state.is_terminal:
            result = await poller.poll(
                payment_id,
                cancel_event=cancel_event,
                stop_when=lambda: self.is_resolved(payment_id),
                fetch=fetch,
            )
            if result.outcome != PollOutcome.STOPPED:
                return result
            attempts = result.attempts
        else:
            attempts = 0

        return PollResult(
            payment_id=payment_id,
            outcome=PollOutcome.from_status(state.last_response.status),
            response=state.last_response,
            attempts=attempts,
        )
