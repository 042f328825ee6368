from __future__ import annotations

import base64
import binascii
import re
from urllib.parse import unquote_to_bytes

from matchgraphic.core.config import settings
from matchgraphic.core.errors import ProxyError
from matchgraphic.core.http import proxy_client, request_with_retries

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^;,]*)*?),(?P<payload>.*)$", re.DOTALL)
_PROXY_RETRIES = 1
_PROXY_BACKOFF_BASE = 0.4
_PROXY_BACKOFF_CAP = 2.0


def sniff_mime(data: bytes) -> str:
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/png"


def encode_data_uri(data: bytes, mime: str | None = None) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime or sniff_mime(data)};base64,{encoded}"


def decode_data_uri(uri: str) -> bytes:
    m = _DATA_URI_RE.match((uri or "").strip())
    if not m:
        raise ValueError("not a data URI")
    payload = m.group("payload")
    if ";base64" in (m.group("params") or "").lower():
        try:
            return base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("invalid base64 payload") from exc
    return unquote_to_bytes(payload)


async def fetch_via_proxy(url: str) -> str:
    """Ask the proxy service for `url`; returns the embeddable data URI.

    Raises ProxyError on any non-success response. Transport errors from
    httpx propagate to the caller unchanged.
    """
    client = proxy_client()
    resp = await request_with_retries(
        client,
        "POST",
        settings.image_proxy_url.strip(),
        json={"url": url},
        retries=_PROXY_RETRIES,
        backoff_base=_PROXY_BACKOFF_BASE,
        backoff_max=_PROXY_BACKOFF_CAP,
    )
    try:
        data = resp.json()
    except ValueError:
        data = None
    finally:
        await resp.aclose()
    if resp.status_code < 200 or resp.status_code >= 300:
        detail = (data or {}).get("error") if isinstance(data, dict) else None
        raise ProxyError(f"proxy status={resp.status_code} error={detail or 'n/a'}")
    if not isinstance(data, dict) or not data.get("success") or not data.get("imageData"):
        detail = data.get("error") if isinstance(data, dict) else "malformed payload"
        raise ProxyError(f"proxy refused url={url} error={detail or 'n/a'}")
    image_data = str(data["imageData"])
    if not image_data.startswith("data:"):
        raise ProxyError("proxy returned a non data URI payload")
    return image_data
