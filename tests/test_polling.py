"""Tests for the status poller."""

import asyncio
from typing import List

import pytest

from card_gate.connectors import (
    AcsChallenge,
    ErrorSource,
    PaymentResponse,
    PaymentStatus,
    SimulatedProcessor,
)
from card_gate.connectors.gate_connector import STATUS_PATH
from card_gate.polling import PollOutcome, StatusPoller


def response(status, error_source=None, **kwargs) -> PaymentResponse:
    return PaymentResponse(payment_id="p1", status=status, error_source=error_source, **kwargs)


class ScriptedConnector:
    """Answers check_status from a fixed script, repeating the last entry."""

    def __init__(self, script: List[PaymentResponse]):
        self.script = list(script)
        self.calls = 0

    async def check_status(self, payment_id: str) -> PaymentResponse:
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        return self.script[index]


class TestStatusPoller:
    """Test poll loop outcomes."""

    async def test_first_poll_is_immediate(self):
        connector = ScriptedConnector([response(PaymentStatus.SUCCESS)])
        poller = StatusPoller(connector, interval=60, max_duration=120)
        result = await asyncio.wait_for(poller.poll("p1"), timeout=1)
        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 1
        assert result.is_terminal

    async def test_pending_then_success(self):
        connector = ScriptedConnector([
            response(PaymentStatus.PENDING),
            response(PaymentStatus.PENDING),
            response(PaymentStatus.SUCCESS),
        ])
        result = await StatusPoller(connector, interval=0.01, max_duration=5).poll("p1")
        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 3

    async def test_decline(self):
        connector = ScriptedConnector([response(PaymentStatus.DECLINE, message="Do not honor")])
        result = await StatusPoller(connector, interval=0.01).poll("p1")
        assert result.outcome == PollOutcome.DECLINE
        assert result.response.message == "Do not honor"

    async def test_challenge_stops_polling(self):
        challenge = AcsChallenge(acs_url="https://acs.test", pa_req="r", md="p1")
        connector = ScriptedConnector([
            response(PaymentStatus.PENDING),
            response(PaymentStatus.THREE_DS_REQUIRED, challenge=challenge),
        ])
        result = await StatusPoller(connector, interval=0.01).poll("p1")
        assert result.outcome == PollOutcome.CHALLENGE
        assert result.response.challenge == challenge
        assert not result.is_terminal

    async def test_transport_errors_are_retried(self):
        connector = ScriptedConnector([
            response(PaymentStatus.ERROR, ErrorSource.TRANSPORT, message="timeout"),
            response(PaymentStatus.ERROR, ErrorSource.TRANSPORT, message="timeout"),
            response(PaymentStatus.SUCCESS),
        ])
        result = await StatusPoller(connector, interval=0.01, max_duration=5).poll("p1")
        assert result.outcome == PollOutcome.SUCCESS
        assert connector.calls == 3

    async def test_processor_error_stops_polling(self):
        connector = ScriptedConnector([response(PaymentStatus.ERROR, ErrorSource.PROCESSOR)])
        result = await StatusPoller(connector, interval=0.01).poll("p1")
        assert result.outcome == PollOutcome.ERROR
        assert connector.calls == 1

    async def test_timeout(self):
        connector = ScriptedConnector([response(PaymentStatus.PENDING)])
        result = await StatusPoller(connector, interval=0.02, max_duration=0.1).poll("p1")
        assert result.outcome == PollOutcome.TIMEOUT
        assert result.response.status == PaymentStatus.PENDING
        assert 2 <= connector.calls <= 10

    async def test_cancel_before_start(self):
        connector = ScriptedConnector([response(PaymentStatus.PENDING)])
        cancel = asyncio.Event()
        cancel.set()
        result = await StatusPoller(connector, interval=0.01).poll("p1", cancel_event=cancel)
        assert result.outcome == PollOutcome.CANCELLED
        assert connector.calls == 0

    async def test_cancel_interrupts_wait(self):
        """Test that cancelling does not wait for the interval to elapse."""
        connector = ScriptedConnector([response(PaymentStatus.PENDING)])
        cancel = asyncio.Event()
        poller = StatusPoller(connector, interval=30, max_duration=60)

        task = asyncio.create_task(poller.poll("p1", cancel_event=cancel))
        await asyncio.sleep(0.05)
        cancel.set()
        result = await asyncio.wait_for(task, timeout=1)

        assert result.outcome == PollOutcome.CANCELLED
        assert connector.calls == 1

    async def test_stop_when(self):
        connector = ScriptedConnector([response(PaymentStatus.PENDING)])
        result = await StatusPoller(connector, interval=0.01).poll(
            "p1", stop_when=lambda: connector.calls >= 2,
        )
        assert result.outcome == PollOutcome.STOPPED
        assert connector.calls == 2

    async def test_custom_fetch(self):
        connector = ScriptedConnector([response(PaymentStatus.PENDING)])

        async def fetch(payment_id):
            return response(PaymentStatus.SUCCESS)

        result = await StatusPoller(connector, interval=0.01).poll("p1", fetch=fetch)
        assert result.outcome == PollOutcome.SUCCESS
        assert connector.calls == 0

    @pytest.mark.parametrize("interval,max_duration", [(0, 10), (1, 0), (-1, 10)])
    def test_invalid_settings(self, interval, max_duration):
        with pytest.raises(ValueError):
            StatusPoller(ScriptedConnector([]), interval=interval, max_duration=max_duration)

    def test_from_config(self, gateway_config):
        poller = StatusPoller.from_config(ScriptedConnector([]), gateway_config)
        assert poller.interval == gateway_config.poll_interval_seconds
        assert poller.max_duration == gateway_config.poll_timeout_seconds


class TestPollingAgainstSimulator:
    """Test polling through the real connector."""

    async def test_not_found_is_polled_through(self, gateway_config, request_factory):
        from card_gate.connectors import GateConnector, SimulatorConfig

        simulator = SimulatedProcessor(SimulatorConfig(status_lag=2))
        async with simulator.client("https://gate.simulator.test") as client:
            connector = GateConnector(gateway_config, http_client=client)
            await connector.initiate_payment(request_factory(), payment_id="p_lag")
            result = await StatusPoller(connector, interval=0.01, max_duration=5).poll("p_lag")

        assert result.outcome == PollOutcome.SUCCESS
        assert simulator.calls_for("p_lag", STATUS_PATH) == 3
