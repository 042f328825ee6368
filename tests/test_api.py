import io

import httpx
from fastapi.testclient import TestClient
from PIL import Image

from matchgraphic import main


def _mock_assets(monkeypatch, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    monkeypatch.setattr(main, "assets_client", lambda: client)


def test_health():
    with TestClient(main.app) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_proxy_image_returns_data_uri(monkeypatch, png_factory):
    png = png_factory()
    _mock_assets(
        monkeypatch,
        lambda r: httpx.Response(200, content=png, headers={"content-type": "image/png"}, request=r),
    )
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/proxy-image", json={"url": "https://cdn.pandascore.co/images/team/1.png"})

    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["imageData"].startswith("data:image/png;base64,")


def test_proxy_image_rejects_missing_url():
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/proxy-image", json={"url": "  "})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "URL is required"}


def test_proxy_image_upstream_error(monkeypatch):
    _mock_assets(monkeypatch, lambda r: httpx.Response(404, request=r))
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/proxy-image", json={"url": "https://cdn.test/missing.png"})
    assert resp.status_code == 502
    assert resp.json()["success"] is False


def test_proxy_image_too_large(monkeypatch, png_factory):
    _mock_assets(monkeypatch, lambda r: httpx.Response(200, content=png_factory(), request=r))
    monkeypatch.setattr(main.settings, "image_max_bytes", 8, raising=False)
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/proxy-image", json={"url": "https://cdn.test/big.png"})
    assert resp.status_code == 413


def test_render_returns_png():
    payload = {
        "entries": [
            {"id": "1", "team1": {"name": "Alpha"}, "team2": {"name": "Bravo"}, "time": "18:00"},
            {"kind": "single", "id": "2", "label": "Break", "time": "19:00"},
        ],
        "style": {"showLogos": False, "width": 500},
    }
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/render", json=payload)

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert "match-graphic.png" in resp.headers["content-disposition"]
    img = Image.open(io.BytesIO(resp.content))
    assert img.size == (500, 220)


def test_render_rejects_bad_style():
    with TestClient(main.app) as client:
        resp = client.post("/api/v1/render", json={"entries": [], "style": {"width": 0}})
    assert resp.status_code == 422


def test_proxy_image_refuses_private_hosts(monkeypatch):
    def handler(request):
        raise AssertionError(f"fetched {request.url}")

    _mock_assets(monkeypatch, handler)
    urls = [
        "http://127.0.0.1/logo.png",
        "http://10.0.0.5/logo.png",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/logo.png",
        "http://localhost:8000/logo.png",
        "https://db.internal/logo.png",
    ]
    with TestClient(main.app) as client:
        for url in urls:
            resp = client.post("/api/v1/proxy-image", json={"url": url})
            assert resp.status_code == 400, url
            assert resp.json() == {"success": False, "error": "URL host is not allowed"}
