"""Tests for the command-line interface."""

import json

import pytest

from card_gate.cli import create_parser, main, run_poll, run_status
from card_gate.connectors import SimulatedProcessor


class TestParser:
    """Test argument parsing."""

    def test_status(self):
        args = create_parser().parse_args(["status", "payment_42_1"])
        assert args.command == "status"
        assert args.payment_id == "payment_42_1"

    def test_poll_options(self):
        args = create_parser().parse_args(["-v", "poll", "payment_42_1", "-i", "0.5", "--timeout", "10"])
        assert args.verbose
        assert args.interval == 0.5
        assert args.timeout == 10

    def test_poll_defaults_from_config(self):
        args = create_parser().parse_args(["poll", "payment_42_1"])
        assert args.interval is None
        assert args.timeout is None


class TestMain:
    """Test the entry point."""

    def test_no_command(self):
        assert main([]) == 1

    def test_missing_configuration(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_SECRET_KEY", raising=False)
        assert main(["status", "payment_42_1"]) == 2

    def test_non_positive_interval(self):
        with pytest.raises(SystemExit):
            main(["poll", "payment_42_1", "--interval", "0"])


class TestCommands:
    """Test commands against the simulator."""

    async def test_status_success(self, connector, request_factory, capsys):
        await connector.initiate_payment(request_factory(), payment_id="p1")
        assert await run_status(connector, "p1") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "success"
        assert "raw_provider_response" not in output

    async def test_status_pending(self, connector, request_factory, capsys):
        await connector.initiate_payment(request_factory(SimulatedProcessor.CARD_PENDING), payment_id="p1")
        assert await run_status(connector, "p1") == 1

    async def test_poll_decline(self, connector, request_factory, simulator, capsys):
        await connector.initiate_payment(request_factory(SimulatedProcessor.CARD_PENDING), payment_id="p1")
        simulator.settle("p1", success=False)
        assert await run_poll(connector, "p1", interval=0.01, timeout=1) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["outcome"] == "decline"
        assert output["attempts"] == 1

    async def test_poll_timeout(self, connector, request_factory, capsys):
        await connector.initiate_payment(request_factory(SimulatedProcessor.CARD_PENDING), payment_id="p1")
        assert await run_poll(connector, "p1", interval=0.01, timeout=0.05) == 4

    async def test_poll_challenge(self, connector, request_factory, capsys):
        await connector.initiate_payment(request_factory(SimulatedProcessor.CARD_3DS_BASIC), payment_id="p1")
        assert await run_poll(connector, "p1", interval=0.01, timeout=1) == 3
