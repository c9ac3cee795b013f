"""Simulated card processor for exercising payment flows without a real PSP.

The simulator speaks the processor's HTTP API, so the production
``GateConnector`` can be pointed at it through ``httpx.MockTransport`` and
every request goes through the real signing and classification code.
"""

import json
import uuid
import logging
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import httpx

from ..signature import SignatureEngine
from .gate_connector import SALE_PATH, STATUS_PATH, THREE_DS_CHECK_PATH, THREE_DS_RESULT_PATH

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined test scenarios for the simulator."""
    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    THREE_DS_BASIC = "3ds_basic"
    THREE_DS_FRICTIONLESS = "3ds_frictionless"
    THREE_DS_CHALLENGE = "3ds_challenge"
    PENDING = "pending"
    PROCESSOR_ERROR = "processor_error"


@dataclass
class SimulatedTransaction:
    """In-memory representation of a simulated transaction."""
    payment_id: str
    amount: int
    currency: str
    scenario: SimulatorScenario
    status: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    operation_message: Optional[str] = None
    pa_req: Optional[str] = None
    md: Optional[str] = None
    three_ds_submissions: int = 0
    check_submissions: int = 0
    challenge_issued: bool = False
    custom_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    project_id: int = 1001
    secret_key: str = "sim_secret_key"
    acs_url: str = "https://acs.simulator.test/challenge"
    fingerprint_url: str = "https://acs.simulator.test/fingerprint"
    challenge_url: str = "https://acs.simulator.test/3ds2"
    sign_responses: bool = True
    # status reads that answer "not found" before the transaction is indexed
    status_lag: int = 0


class SimulatedProcessor:
    """
    In-memory card processor.

    Features:
    - Signature verification of every inbound request
    - Basic, extended (frictionless or challenge) and 3DS2 flows
    - Asynchronous settlement and signed callbacks
    - Special card numbers for specific scenarios
    """

    # Luhn-valid card numbers that trigger specific behaviors
    CARD_SUCCESS = "4111111111111111"
    CARD_INSUFFICIENT = "4000000000000002"
    CARD_3DS_BASIC = "4000000000003063"
    CARD_3DS_FRICTIONLESS = "4000000000003220"
    CARD_3DS_CHALLENGE = "4000000000003238"
    CARD_PENDING = "4000000000000077"
    CARD_ERROR = "4000000000000119"

    FAILING_PARES = "sim_pares_fail"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self.signer = SignatureEngine(self.config.secret_key)
        self._transactions: Dict[str, SimulatedTransaction] = {}
        self._status_misses: Dict[str, int] = {}
        self.requests: List[Tuple[str, Optional[str]]] = []
        logger.info("SimulatedProcessor initialized")

    # httpx plumbing

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, base_url: str) -> httpx.AsyncClient:
        """An AsyncClient whose requests are answered by this simulator."""
        return httpx.AsyncClient(base_url=base_url, transport=self.transport())

    def handle(self, request: httpx.Request) -> httpx.Response:
        """Route one HTTP request to the matching endpoint handler."""
        try:
            body = json.loads(request.content or b"{}")
        except json.JSONDecodeError:
            return self._reply(400, {"status": "error", "message": "Malformed JSON"})

        payment_id = (body.get("general") or {}).get("payment_id")
        path = request.url.path
        self.requests.append((path, payment_id))

        signature = (body.get("general") or {}).get("signature")
        if not self.signer.verify(body, signature):
            return self._reply(400, {
                "status": "error",
                "message": "Wrong signature",
                "errors": [{"code": "1001", "message": "Signature is invalid"}],
            })

        handlers = {
            SALE_PATH: self._sale,
            THREE_DS_RESULT_PATH: self._three_ds_result,
            THREE_DS_CHECK_PATH: self._three_ds_check,
            STATUS_PATH: self._status,
        }
        handler = handlers.get(path)
        if handler is None:
            return self._reply(404, {"status": "error", "message": f"Unknown endpoint {path}"})
        status_code, data = handler(payment_id, body)
        return self._reply(status_code, data)

    def _reply(self, status_code: int, data: Dict[str, Any]) -> httpx.Response:
        if self.config.sign_responses:
            data = dict(data)
            data["signature"] = self.signer.sign(data)
        return httpx.Response(status_code, json=data)

    def _determine_scenario(self, pan: str) -> SimulatorScenario:
        card_scenarios = {
            self.CARD_SUCCESS: SimulatorScenario.SUCCESS,
            self.CARD_INSUFFICIENT: SimulatorScenario.INSUFFICIENT_FUNDS,
            self.CARD_3DS_BASIC: SimulatorScenario.THREE_DS_BASIC,
            self.CARD_3DS_FRICTIONLESS: SimulatorScenario.THREE_DS_FRICTIONLESS,
            self.CARD_3DS_CHALLENGE: SimulatorScenario.THREE_DS_CHALLENGE,
            self.CARD_PENDING: SimulatorScenario.PENDING,
            self.CARD_ERROR: SimulatorScenario.PROCESSOR_ERROR,
        }
        return card_scenarios.get(pan, SimulatorScenario.SUCCESS)

    def _document(self, txn: SimulatedTransaction, operation_status: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "project_id": self.config.project_id,
            "payment": {"id": txn.payment_id, "status": txn.status, "type": "sale"},
        }
        if operation_status:
            data["operation"] = {
                "id": abs(hash(txn.payment_id)) % 10**9,
                "status": operation_status,
                "message": txn.operation_message,
                "code": "0" if operation_status == "success" else "20105",
            }
        return data

    # Endpoints

    def _sale(self, payment_id: str, body: Dict[str, Any]):
        if payment_id in self._transactions:
            return 400, {
                "status": "error",
                "message": "Duplicate payment",
                "errors": [{"code": "3029", "message": "Payment already exists"}],
            }

        scenario = self._determine_scenario(str(body["card"]["pan"]))
        if scenario == SimulatorScenario.PROCESSOR_ERROR:
            return 400, {
                "status": "error",
                "message": "Invalid card data",
                "errors": [{"code": "2001", "message": "Card is not supported"}],
            }

        txn = SimulatedTransaction(
            payment_id=payment_id,
            amount=body["payment"]["amount"],
            currency=body["payment"]["currency"],
            scenario=scenario,
            status="processing",
            custom_fields=dict(body.get("custom_fields") or {}),
        )
        self._transactions[payment_id] = txn

        if scenario == SimulatorScenario.SUCCESS:
            txn.status = "success"
            txn.operation_message = "Success"
            return 200, self._document(txn, "success")

        if scenario == SimulatorScenario.INSUFFICIENT_FUNDS:
            txn.status = "decline"
            txn.operation_message = "Insufficient funds"
            return 200, self._document(txn, "decline")

        if scenario == SimulatorScenario.THREE_DS_BASIC:
            txn.status = "awaiting 3ds result"
            txn.pa_req = f"sim_pareq_{uuid.uuid4().hex[:16]}"
            txn.md = payment_id
            data = self._document(txn, "awaiting 3ds result")
            data["acs"] = self._acs_block(txn, body)
            return 200, data

        if scenario in (SimulatorScenario.THREE_DS_FRICTIONLESS, SimulatorScenario.THREE_DS_CHALLENGE):
            txn.status = "awaiting 3ds result"
            data = self._document(txn, "awaiting 3ds result")
            data["threeds2"] = {
                "iframe": {
                    "url": self.config.fingerprint_url,
                    "params": {"threeDSMethodData": f"sim_method_{uuid.uuid4().hex[:16]}"},
                }
            }
            return 200, data

        return 200, self._document(txn, "processing")

    def _acs_block(self, txn: SimulatedTransaction, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        term_url = ((body or {}).get("acs_return_url") or {}).get("return_url")
        return {
            "acs_url": self.config.acs_url,
            "pa_req": txn.pa_req,
            "md": txn.md,
            "term_url": term_url,
        }

    def _three_ds_result(self, payment_id: str, body: Dict[str, Any]):
        txn = self._transactions.get(payment_id)
        if not txn:
            return 400, {"status": "error", "errors": [{"code": "3061", "message": "Transaction not found"}]}

        txn.three_ds_submissions += 1
        if txn.three_ds_submissions > 1 or txn.status != "awaiting 3ds result":
            return 400, {
                "status": "error",
                "message": "3DS result already processed",
                "errors": [{"code": "3013", "message": "3-D Secure result already processed"}],
            }

        if body.get("pares") == self.FAILING_PARES:
            txn.status = "decline"
            txn.operation_message = "3-D Secure authentication failed"
            return 200, self._document(txn, "decline")

        txn.status = "success"
        txn.operation_message = "Success"
        return 200, self._document(txn, "success")

    def _three_ds_check(self, payment_id: str, body: Dict[str, Any]):
        txn = self._transactions.get(payment_id)
        if not txn:
            return 400, {"status": "error", "errors": [{"code": "3061", "message": "Transaction not found"}]}

        txn.check_submissions += 1
        if txn.check_submissions > 1:
            return 400, {
                "status": "error",
                "message": "3DS check already processed",
                "errors": [{"code": "3014", "message": "3-D Secure check already processed"}],
            }

        if txn.scenario == SimulatorScenario.THREE_DS_FRICTIONLESS:
            txn.status = "success"
            txn.operation_message = "Success"
            return 200, self._document(txn, "success")

        txn.challenge_issued = True
        data = self._document(txn, "awaiting 3ds result")
        data["threeds2"] = {
            "redirect": {
                "url": self.config.challenge_url,
                "params": {
                    "creq": f"sim_creq_{uuid.uuid4().hex[:16]}",
                    "threeDSSessionData": payment_id,
                },
            }
        }
        return 200, data

    def _status(self, payment_id: str, body: Dict[str, Any]):
        txn = self._transactions.get(payment_id)
        misses = self._status_misses.get(payment_id, 0)
        if not txn or misses < self.config.status_lag:
            self._status_misses[payment_id] = misses + 1
            return 400, {
                "status": "error",
                "errors": [{"code": "3061", "message": "Transaction not found"}],
            }

        operation_status = {"success": "success", "decline": "decline"}.get(txn.status)
        data = self._document(txn, operation_status)
        if txn.scenario == SimulatorScenario.THREE_DS_BASIC and txn.status == "awaiting 3ds result":
            data["acs"] = self._acs_block(txn)
        return 200, data

    # Test controls

    def settle(self, payment_id: str, success: bool = True, message: Optional[str] = None) -> None:
        """Resolve a pending or challenged transaction, as the cardholder or acquirer would."""
        txn = self._transactions[payment_id]
        txn.status = "success" if success else "decline"
        txn.operation_message = message or ("Success" if success else "Payment declined")

    def build_callback(self, payment_id: str) -> Dict[str, Any]:
        """Build the signed callback the processor would post for a transaction."""
        txn = self._transactions[payment_id]
        operation_status = {"success": "success", "decline": "decline"}.get(txn.status, "processing")
        data = self._document(txn, operation_status)
        data["custom_fields"] = dict(txn.custom_fields)
        if txn.scenario == SimulatorScenario.THREE_DS_BASIC and txn.status == "awaiting 3ds result":
            data["acs"] = self._acs_block(txn)
        data["signature"] = self.signer.sign(data)
        return data

    def calls_for(self, payment_id: str, path: Optional[str] = None) -> int:
        """Number of requests received for a payment, optionally for one endpoint."""
        return sum(
            1 for p, pid in self.requests
            if pid == payment_id and (path is None or p == path)
        )

    def get_transaction(self, payment_id: str) -> Optional[SimulatedTransaction]:
        """Get a transaction from in-memory storage (for testing)."""
        return self._transactions.get(payment_id)

    def clear_transactions(self) -> None:
        """Clear all stored transactions (for test cleanup)."""
        self._transactions.clear()
        self._status_misses.clear()
        self.requests.clear()
