import hashlib
import json
import asyncio
import time
from collections import deque
import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError
from typing import Any, Deque, Type, TypeVar

from casehub.config import settings
from casehub.errors import ExternalServiceError, ValidationError
from casehub.logging_config import get_logger
from casehub.models import models

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


def validate_currency(currency: str):
    if currency not in settings.supported_currencies:
        raise ValidationError("unsupported currency")


def format_minor_units(amount: int) -> str:
    """
    Render integer minor units as a major-unit decimal string, e.g. 1050 -> "10.50".
    """
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{amount // 100}.{amount % 100:02d}"


def serialize_ledger_entry(entry: models.LedgerEntry) -> dict:
    return {
        "id": entry.id,
        "accountId": entry.account_id,
        "amount": entry.amount,
        "currency": entry.currency,
        "kind": entry.kind,
        "status": entry.status,
        "provider": entry.provider,
        "providerOrderRef": entry.provider_order_ref,
        "expiresAt": entry.expires_at.isoformat() if entry.expires_at else None,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def serialize_opening(record: models.OpeningRecord) -> dict:
    return {
        "id": record.id,
        "accountId": record.account_id,
        "caseId": record.case_id,
        "caseName": record.case.name if record.case else None,
        "caseImage": record.case.image_url if record.case else None,
        "itemId": record.item_id,
        "itemName": record.item.display_name if record.item else None,
        "itemImage": record.item.image_url if record.item else None,
        "itemRarity": record.item.rarity if record.item else None,
        "openedAt": record.opened_at.isoformat() if record.opened_at else None,
    }


class GatewayHttpClient:
    """
    Rate-limited httpx client with retry/backoff for 429 and 5xx responses.
    Network failures surface as ExternalServiceError; timeouts are flagged so
    callers can leave work pending instead of assuming failure.
    """

    name = "gateway"

    def __init__(
        self,
        base_url: str,
        rate_limit_per_minute: int | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        timeout: float | None = None,
        auth: Any = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=str(base_url),
            timeout=timeout if timeout is not None else settings.gateway_timeout_seconds,
            auth=auth,
        )
        self._sent: Deque[float] = deque()
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    def _take_slot(self) -> bool:
        """
        Sliding one-minute window over outgoing requests.
        """
        now = time.monotonic()
        while self._sent and now - self._sent[0] >= 60:
            self._sent.popleft()
        if len(self._sent) >= self.rate_limit_per_minute:
            return False
        self._sent.append(now)
        return True

    def _retry_delay(self, response: httpx.Response | None, attempt: int) -> float:
        delay = self.retry_backoff_seconds * (2 ** attempt)
        if response is not None and response.status_code == 429:
            try:
                return float(response.headers.get("Retry-After", ""))
            except ValueError:
                return delay
        return delay

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = None
        for attempt in range(self.max_retries + 1):
            if not self._take_slot():
                logger.warning("%s local rate limit reached method=%s url=%s", self.name, method, url)
                return httpx.Response(
                    status_code=429,
                    headers={"Retry-After": str(self._retry_delay(None, attempt))},
                    request=self.client.build_request(method, url),
                )
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                raise ExternalServiceError(f"{self.name} request timed out", timed_out=True) from exc
            except httpx.RequestError as exc:
                raise ExternalServiceError(f"{self.name} request error: {exc}") from exc

            retryable = response.status_code == 429 or response.status_code >= 500
            if not retryable or attempt == self.max_retries:
                return response
            delay = self._retry_delay(response, attempt)
            logger.warning(
                "%s retrying method=%s url=%s status=%s attempt=%s delay=%s",
                self.name,
                method,
                url,
                response.status_code,
                attempt + 1,
                delay,
            )
            await asyncio.sleep(delay)
        return response

    def _json_or_raise(self, response: httpx.Response, action: str) -> Any:
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{self.name} {action} failed with status {response.status_code}",
                context={"status": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"{self.name} {action} returned invalid JSON") from exc

    def _parse(self, model: Type[ModelT], response: httpx.Response, action: str) -> ModelT:
        """
        Validate a response body against ``model``. A body of the wrong shape
        is a gateway fault like any other.
        """
        payload = self._json_or_raise(response, action)
        try:
            return model.model_validate(payload)
        except PydanticValidationError as exc:
            raise ExternalServiceError(
                f"{self.name} {action} returned an unexpected body",
                context={"status": response.status_code, "errors": exc.error_count()},
            ) from exc

    async def aclose(self):
        await self.client.aclose()
