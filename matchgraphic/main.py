from contextlib import asynccontextmanager
from typing import List, Literal, Optional, Union
from urllib.parse import urlparse
import ipaddress
import logging

import httpx
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from matchgraphic.core.config import settings
from matchgraphic.core.http import assets_client, close_http_clients, init_http_clients, request_with_retries
from matchgraphic.data.models import PairedEntry, Side, SingleEntry, StyleConfig
from matchgraphic.data.providers.image_proxy import encode_data_uri
from matchgraphic.services.composer import GraphicComposer
from matchgraphic.services.export import ExportPipeline

logger = logging.getLogger(__name__)

_LOCAL_SUFFIXES = (".localhost", ".local", ".internal")


def _is_private_host(host: str) -> bool:
    host = host.strip("[]").lower()
    if host == "localhost" or host.endswith(_LOCAL_SUFFIXES):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return not ip.is_global


class ProxyImageRequest(BaseModel):
    url: str


class SideIn(BaseModel):
    name: str
    logo: Optional[str] = None


class PairedEntryIn(BaseModel):
    kind: Literal["paired"] = "paired"
    id: str
    team1: SideIn
    team2: SideIn
    time: str = ""
    tournament: Optional[str] = None


class SingleEntryIn(BaseModel):
    kind: Literal["single"]
    id: str
    label: str
    time: str = ""


class StyleIn(BaseModel):
    showLogos: bool = True
    showTime: bool = True
    backgroundColor: str = "#1a1b1e"
    backgroundGradientEnd: Optional[str] = None
    textColor: str = "#ffffff"
    scale: float = Field(1.0, gt=0, le=4)
    title: Optional[str] = None
    titleAlign: Literal["right", "center"] = "right"
    width: int = Field(600, gt=0, le=4000)
    height: Optional[int] = Field(None, gt=0, le=8000)
    backgroundUrl: Optional[str] = None
    highlightedIds: List[str] = Field(default_factory=list)


class RenderRequest(BaseModel):
    entries: List[Union[SingleEntryIn, PairedEntryIn]] = Field(default_factory=list, max_length=200)
    style: StyleIn = Field(default_factory=StyleIn)
    retry: bool = False


def _to_entry(item: Union[SingleEntryIn, PairedEntryIn]):
    if isinstance(item, SingleEntryIn):
        return SingleEntry(id=item.id, label=item.label, time=item.time)
    return PairedEntry(
        id=item.id,
        side_a=Side(item.team1.name, item.team1.logo),
        side_b=Side(item.team2.name, item.team2.logo),
        time=item.time,
        tournament=item.tournament,
    )


def _to_style(style: StyleIn) -> StyleConfig:
    return StyleConfig(
        show_logos=style.showLogos,
        show_time=style.showTime,
        background_color=style.backgroundColor,
        background_gradient_end=style.backgroundGradientEnd,
        text_color=style.textColor,
        scale=style.scale,
        title=style.title if style.title is not None else (settings.default_title or None),
        title_align=style.titleAlign,
        width=style.width,
        height=style.height,
        background_url=style.backgroundUrl,
        highlighted_ids=frozenset(style.highlightedIds),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_http_clients()
    app.state.composer = GraphicComposer()
    app.state.exporter = ExportPipeline()
    try:
        yield
    finally:
        await close_http_clients()


app = FastAPI(title="Match Graphic", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.get("/health")
async def health():
    return {"ok": True}


@app.post("/api/v1/proxy-image")
async def api_proxy_image(req: ProxyImageRequest):
    url = (req.url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        return JSONResponse(status_code=400, content={"success": False, "error": "URL is required"})
    if _is_private_host(parsed.hostname):
        logger.warning("proxy_image_blocked host=%s", parsed.hostname)
        return JSONResponse(status_code=400, content={"success": False, "error": "URL host is not allowed"})
    logger.info("proxy_image url=%s", url)
    try:
        resp = await request_with_retries(
            assets_client(),
            "GET",
            url,
            retries=2,
            backoff_base=0.4,
            backoff_max=2.0,
        )
    except httpx.HTTPError as exc:
        logger.warning("proxy_image_transport_error url=%s error=%s", url, exc)
        return JSONResponse(status_code=502, content={"success": False, "error": f"Failed to fetch image: {exc}"})
    try:
        if resp.status_code < 200 or resp.status_code >= 300:
            return JSONResponse(
                status_code=502,
                content={"success": False, "error": f"Failed to fetch image: status {resp.status_code}"},
            )
        data = resp.content
    finally:
        await resp.aclose()
    if not data:
        return JSONResponse(status_code=502, content={"success": False, "error": "Empty image"})
    if len(data) > settings.image_max_bytes:
        return JSONResponse(status_code=413, content={"success": False, "error": "Image too large"})
    content_type = (resp.headers.get("content-type") or "").split(";")[0].strip()
    mime = content_type if content_type.startswith("image/") else None
    return {"success": True, "imageData": encode_data_uri(data, mime)}


@app.post("/api/v1/render")
async def api_render(req: RenderRequest):
    composer: GraphicComposer = app.state.composer
    exporter: ExportPipeline = app.state.exporter
    try:
        entries = [_to_entry(item) for item in req.entries]
        style = _to_style(req.style)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if req.retry:
        surface = await composer.retry(entries, style)
    else:
        surface = await composer.refresh(entries, style)
    png = await exporter.export(surface, entries)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{exporter.filename}"'},
    )
