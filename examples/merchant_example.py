"""
Simple merchant usage example (server-side). Runs a basic 3-D Secure purchase
against the in-memory simulator; point GatewayConfig at the real processor
and drop the http_client argument to go live.
"""
import asyncio

from card_gate import GatewayConfig, ThreeDSOrchestrator
from card_gate.connectors import CardData, GateConnector, PaymentRequest, SimulatedProcessor


async def run():
    config = GatewayConfig(
        project_id=1001,
        secret_key="sim_secret_key",
        api_url="https://gate.simulator.test",
        public_base_url="https://shop.example.com",
    )
    simulator = SimulatedProcessor()
    async with GateConnector(config, http_client=simulator.client(config.api_url)) as connector:
        orchestrator = ThreeDSOrchestrator(connector, settle_delay=0)
        req = PaymentRequest(
            user_id="42",
            credits=100,
            amount=999,
            currency="EUR",
            card=CardData(
                pan=SimulatedProcessor.CARD_3DS_BASIC,
                expiry_month="12",
                expiry_year="2030",
                cvv="123",
                card_holder="Jane Doe",
            ),
            customer_ip="203.0.113.7",
        )
        resp = await orchestrator.start(req)
        print("Initiated:", resp.status.value, resp.payment_id)

        # the browser auto-posts this form into the ACS iframe
        form = orchestrator.pending_form(resp.payment_id)
        print("Challenge form:", form.model_dump_json())

        # the ACS posts PaRes back to the return URL
        final = await orchestrator.complete_return(resp.payment_id, "pares-from-acs", form.fields["MD"])
        print("Final:", final.status.value, final.message)


if __name__ == "__main__":
    asyncio.run(run())
