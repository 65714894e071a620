from casehub.config import settings
from casehub.contracts.contracts import GatewayACreatePaymentRequest, GatewayAPayment
from casehub.helpers import GatewayHttpClient


class GatewayAClient(GatewayHttpClient):
    """
    Card gateway. Authenticates with shop id / secret key basic auth; every
    create call carries an Idempotence-Key so a retried request never opens a
    second payment.
    """

    name = "gateway_a"

    def __init__(self, **kwargs):
        super().__init__(
            settings.gateway_a_base_url,
            auth=(settings.gateway_a_shop_id, settings.gateway_a_secret_key),
            **kwargs,
        )

    async def create_payment(self, request: GatewayACreatePaymentRequest, idempotence_key: str) -> GatewayAPayment:
        resp = await self._request_with_retry(
            "POST",
            "payments",
            json=request.model_dump(exclude_none=True),
            headers={"Idempotence-Key": idempotence_key},
        )
        return self._parse(GatewayAPayment, resp, "create payment")

    async def get_payment(self, payment_id: str) -> GatewayAPayment:
        resp = await self._request_with_retry("GET", f"payments/{payment_id}")
        return self._parse(GatewayAPayment, resp, "get payment")
