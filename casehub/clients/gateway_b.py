from casehub.config import settings
from casehub.contracts.contracts import (
    GatewayBCreateOrderRequest,
    GatewayBCreateOrderResponse,
    GatewayBOrder,
)
from casehub.errors import ExternalServiceError
from casehub.helpers import GatewayHttpClient
from casehub.logging_config import get_logger
from casehub.security import canonical_body, signed_headers

logger = get_logger(__name__)


class GatewayBClient(GatewayHttpClient):
    """
    Crypto invoice gateway. Requests are HMAC-signed; the body is sent exactly
    as it was signed.
    """

    name = "gateway_b"

    def __init__(self, **kwargs):
        super().__init__(settings.gateway_b_base_url, **kwargs)

    async def create_order(self, request: GatewayBCreateOrderRequest) -> GatewayBCreateOrderResponse:
        body = request.model_dump(exclude_none=True)
        resp = await self._request_with_retry(
            "POST",
            "api/crypto/invoice/create",
            content=canonical_body(body),
            headers=signed_headers(body),
        )
        order = self._parse(GatewayBCreateOrderResponse, resp, "create order")
        if not order.payment_url:
            raise ExternalServiceError("gateway_b did not return a payment_url", context={"trackerId": order.tracker_id})
        return order

    async def get_order(self, tracker_id: str) -> GatewayBOrder:
        resp = await self._request_with_retry(
            "GET",
            "api/crypto/invoice/get",
            params={"tracker_id": tracker_id},
            headers=signed_headers(None),
        )
        order = self._parse(GatewayBOrder, resp, "get order")
        logger.info("Fetched gateway_b order trackerId=%s status=%s", tracker_id, order.status)
        return order
