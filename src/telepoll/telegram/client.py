from __future__ import annotations

from typing import Any, Protocol

import httpx
import msgspec

from ..logging import get_logger
from .api_models import Update

logger = get_logger(__name__)

# Extra read time granted on top of the long-poll timeout so the server,
# not the socket, ends an idle getUpdates call.
LONG_POLL_GRACE_S = 10.0


class FetchError(Exception):
    """A getUpdates call failed; the caller may simply try again."""

    def __init__(self, method: str, description: str) -> None:
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description


class TelegramRetryAfter(FetchError):
    def __init__(
        self, method: str, retry_after: float, description: str | None = None
    ) -> None:
        super().__init__(method, description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    return None


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[Update]: ...


class HttpBotClient:
    def __init__(
        self,
        token: str,
        *,
        timeout_s: float = 120,
        base_url: str = "https://api.telegram.org",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{base_url.rstrip('/')}/bot{token}"
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _raise_for_rate_limit(
        self, method: str, resp: httpx.Response, payload: Any
    ) -> None:
        retry_after = None
        if isinstance(payload, dict):
            retry_after = retry_after_from_payload(payload)
        retry_after = 5.0 if retry_after is None else retry_after
        logger.warning(
            "telegram.rate_limited",
            method=method,
            status=resp.status_code,
            url=str(resp.request.url),
            retry_after=retry_after,
        )
        raise TelegramRetryAfter(method, retry_after)

    async def _post(
        self,
        method: str,
        params: dict[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> Any:
        logger.debug("telegram.request", method=method, payload=params)
        timeout = httpx.USE_CLIENT_DEFAULT if timeout_s is None else timeout_s
        try:
            resp = await self._http_client.post(
                f"{self._base}/{method}", json=params, timeout=timeout
            )
        except httpx.HTTPError as exc:
            url = exc.request.url if _has_request(exc) else None
            logger.error(
                "telegram.network_error",
                method=method,
                url=str(url) if url is not None else None,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise FetchError(method, f"{exc.__class__.__name__}: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code == 429:
            self._raise_for_rate_limit(method, resp, payload)
        if resp.is_error:
            logger.error(
                "telegram.http_error",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                body=resp.text,
            )
            raise FetchError(method, f"HTTP {resp.status_code}")
        if not isinstance(payload, dict):
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                body=resp.text,
            )
            raise FetchError(method, "response is not a JSON object")
        if not payload.get("ok"):
            if payload.get("error_code") == 429:
                self._raise_for_rate_limit(method, resp, payload)
            logger.error(
                "telegram.api_error",
                method=method,
                url=str(resp.request.url),
                payload=payload,
            )
            description = payload.get("description")
            raise FetchError(
                method, description if isinstance(description, str) else "not ok"
            )

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> list[Update]:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        result = await self._post(
            "getUpdates", params, timeout_s=timeout_s + LONG_POLL_GRACE_S
        )
        try:
            return msgspec.convert(result, type=list[Update])
        except msgspec.ValidationError as exc:
            logger.error(
                "telegram.decode_error",
                method="getUpdates",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise FetchError("getUpdates", f"undecodable result: {exc}") from exc


def _has_request(exc: httpx.HTTPError) -> bool:
    # httpx raises RuntimeError from .request when none was attached.
    try:
        exc.request
    except RuntimeError:
        return False
    return True
