"""Status polling for payments that complete asynchronously."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_TIMEOUT_SECONDS, GatewayConfig
from .connectors.base import ConnectorBase, ErrorSource, PaymentResponse, PaymentStatus

logger = logging.getLogger(__name__)


class PollOutcome(str, enum.Enum):
    """Why polling stopped."""
    SUCCESS = "success"
    DECLINE = "decline"
    CHALLENGE = "challenge"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    STOPPED = "stopped"

    @classmethod
    def from_status(cls, status: PaymentStatus) -> "PollOutcome":
        return {
            PaymentStatus.SUCCESS: cls.SUCCESS,
            PaymentStatus.DECLINE: cls.DECLINE,
            PaymentStatus.THREE_DS_REQUIRED: cls.CHALLENGE,
            PaymentStatus.ERROR: cls.ERROR,
        }.get(status, cls.STOPPED)


@dataclass
class PollResult:
    payment_id: str
    outcome: PollOutcome
    response: Optional[PaymentResponse]
    attempts: int

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (PollOutcome.SUCCESS, PollOutcome.DECLINE)


class StatusPoller:
    """Repeatedly reads a payment's status until it settles.

    The first read happens immediately. Afterwards the poller waits
    ``interval`` seconds between reads, and gives up with a ``timeout``
    outcome after ``max_duration`` seconds. Transport errors are simply
    retried on the next tick; processor errors end polling.
    """

    def __init__(
        self,
        connector: ConnectorBase,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_duration: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_duration <= 0:
            raise ValueError("max_duration must be positive")
        self.connector = connector
        self.interval = interval
        self.max_duration = max_duration

    @classmethod
    def from_config(cls, connector: ConnectorBase, config: GatewayConfig) -> "StatusPoller":
        return cls(
            connector,
            interval=config.poll_interval_seconds,
            max_duration=config.poll_timeout_seconds,
        )

    @staticmethod
    def _outcome(response: PaymentResponse) -> Optional[PollOutcome]:
        if response.status == PaymentStatus.PENDING:
            return None
        if response.status == PaymentStatus.ERROR and response.error_source == ErrorSource.TRANSPORT:
            return None
        return PollOutcome.from_status(response.status)

    @staticmethod
    async def _wait(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``; True if the cancel event fired meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def poll(
        self,
        payment_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        stop_when: Optional[Callable[[], bool]] = None,
        fetch: Optional[Callable[[str], Awaitable[PaymentResponse]]] = None,
    ) -> PollResult:
        """Poll until a terminal status, a challenge, an error, cancellation or timeout.

        Args:
            payment_id: The attempt to watch.
            cancel_event: Set by the consumer to stop polling at once.
            stop_when: Checked before every read; polling stops when it is true.
            fetch: Status reader; defaults to the connector's ``check_status``.

        Returns:
            PollResult with the outcome and the last response seen.
        """
        fetch = fetch or self.connector.check_status
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_duration
        attempts = 0
        last: Optional[PaymentResponse] = None

        def result(outcome: PollOutcome) -> PollResult:
            return PollResult(payment_id=payment_id, outcome=outcome, response=last, attempts=attempts)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Polling cancelled for payment {payment_id}")
                return result(PollOutcome.CANCELLED)
            if stop_when is not None and stop_when():
                return result(PollOutcome.STOPPED)

            last = await fetch(payment_id)
            attempts += 1

            outcome = self._outcome(last)
            if outcome is not None:
                logger.info(f"Polling for payment {payment_id} ended with {outcome.value} after {attempts} attempt(s)")
                return result(outcome)
            if last.status == PaymentStatus.ERROR:
                logger.warning(f"Transient error polling payment {payment_id}: {last.message}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Polling timed out for payment {payment_id} after {attempts} attempt(s)")
                return result(PollOutcome.TIMEOUT)
            if await self._wait(min(self.interval, remaining), cancel_event):
                logger.info(f"Polling cancelled for payment {payment_id}")
                return result(PollOutcome.CANCELLED)
