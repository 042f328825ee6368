import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from .config import settings
from .logger import get_logger

log = get_logger("core.http")

_DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
_assets_client: httpx.AsyncClient | None = None
_proxy_client: httpx.AsyncClient | None = None
_proxy_base: str | None = None


def _http_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


def assets_client() -> httpx.AsyncClient:
    global _assets_client
    if _assets_client is None or _assets_client.is_closed:
        _assets_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.image_direct_timeout_seconds),
            limits=_http_limits(),
            follow_redirects=True,
        )
    return _assets_client


def proxy_client() -> httpx.AsyncClient:
    global _proxy_client, _proxy_base
    base = (settings.image_proxy_url or "").strip()
    if not base:
        raise RuntimeError("IMAGE_PROXY_URL is not configured")
    if _proxy_client is None or _proxy_client.is_closed or _proxy_base != base:
        _proxy_base = base
        headers = {"Content-Type": "application/json"}
        token = (settings.image_proxy_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        _proxy_client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(settings.image_proxy_timeout_seconds),
            limits=_http_limits(),
        )
    return _proxy_client


async def init_http_clients() -> None:
    assets_client()
    if settings.image_proxy_url:
        proxy_client()


async def close_http_clients() -> None:
    global _assets_client, _proxy_client, _proxy_base
    if _assets_client is not None and not _assets_client.is_closed:
        await _assets_client.aclose()
    if _proxy_client is not None and not _proxy_client.is_closed:
        await _proxy_client.aclose()
    _assets_client = None
    _proxy_client = None
    _proxy_base = None


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = (response.headers.get("Retry-After") or "").strip()
    if not value:
        return None
    if value.replace(".", "", 1).isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _delay(attempt: int, base: float, cap: float, floor: float | None = None) -> float:
    return max(min(cap, base * (2 ** attempt)), floor or 0.0)


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transient statuses and transport errors.

    The last response is returned as-is once retries run out; the last
    transport error is re-raised.
    """
    statuses = retry_statuses or _DEFAULT_RETRY_STATUSES
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions as exc:
            if attempt >= retries:
                raise
            wait = _delay(attempt, backoff_base, backoff_max)
            log.info("http_retry method=%s url=%s attempt=%s error=%s wait=%.2f",
                     method, url, attempt + 1, type(exc).__name__, wait)
        else:
            if response.status_code not in statuses or attempt >= retries:
                return response
            wait = _delay(attempt, backoff_base, backoff_max, _retry_after_seconds(response))
            await response.aclose()
            log.info("http_retry method=%s url=%s attempt=%s status=%s wait=%.2f",
                     method, url, attempt + 1, response.status_code, wait)
        await _sleep(wait)
        attempt += 1
