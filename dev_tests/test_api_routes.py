"""
Tests for the HTTP surface - assets_router, html_router and core service routes.

Test Categories:
1. Service Endpoints
2. Asset Endpoints
3. HTML Transform Endpoint
"""

import asyncio
import base64
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

import core  # noqa: F401  # registers every route on the shared app
from assets_router import SimpleRateLimiter, get_rate_limiter, resolve_asset_service
from config import TransformSettings, config
from conftest import FakeAssetProcessor
from core.app_state import app
from html_router import get_html_transformer
from services.errors import StorageUnavailable
from services.html_transformer import HTMLTransformer


def _data_uri(data, mime="image/png"):
    return f"data:{mime};base64," + base64.b64encode(data).decode("ascii")


class SlowTransformer:
    def __init__(self):
        self.cancelled = False

    async def transform_html(self, html):
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def client(asset_service):
    """Test client with the pipeline wired to a local store and a fresh rate limiter."""
    limiter = SimpleRateLimiter(limit=1000, window_seconds=60)
    transformer = HTMLTransformer(FakeAssetProcessor(), TransformSettings(), asset_base_url="https://cdn.test")
    app.dependency_overrides[resolve_asset_service] = lambda: asset_service
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_html_transformer] = lambda: transformer
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# Service Endpoints
# ============================================================================

class TestServiceEndpoints:

    def test_health(self, client):
        """
        Given: A running API server
        When: GET /health is called
        Then: Returns 200 with status, version and an ISO timestamp
        """
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert "T" in data["timestamp"]

    def test_public_config(self, client):
        response = client.get("/api/config")
        assert response.status_code == 200
        assert response.json() == {"cdn_base_url": config.STORAGE.public_base_url}


# ============================================================================
# Asset Endpoints
# ============================================================================

class TestAssetEndpoints:

    def test_multipart_upload(self, client, image_bytes):
        """
        Given: A small JPEG uploaded as multipart form data
        When: POST /api/assets is called
        Then: Returns the stored Asset
        """
        data = image_bytes("JPEG", size=(200, 150))
        response = client.post("/api/assets", files={"file": ("photo.jpg", data, "image/jpeg")})
        assert response.status_code == 200
        asset = response.json()
        assert asset["mime"] == "image/jpeg"
        assert asset["width"] == 200
        assert asset["height"] == 150
        assert asset["public_url"].startswith("https://cdn.test/")
        assert asset["deduplicated"] is False

    def test_upload_over_limit_is_413(self, client, monkeypatch):
        monkeypatch.setattr(config.FETCH, "max_bytes", 10)
        response = client.post("/api/assets", files={"file": ("a.png", b"x" * 50, "image/png")})
        assert response.status_code == 413

    def test_upload_of_non_image_is_400(self, client):
        response = client.post("/api/assets", files={"file": ("a.txt", b"hello", "text/plain")})
        assert response.status_code == 400

    def test_data_uri(self, client, image_bytes):
        response = client.post("/api/assets/data-uri", json={"data_uri": _data_uri(image_bytes("PNG", size=(8, 8)))})
        assert response.status_code == 200
        assert response.json()["mime"] == "image/png"

    def test_malformed_data_uri_is_400(self, client):
        response = client.post("/api/assets/data-uri", json={"data_uri": "data:image/png;base64"})
        assert response.status_code == 400

    def test_http_url_is_400(self, client):
        response = client.post("/api/assets/url", json={"url": "http://images.example.com/a.png"})
        assert response.status_code == 400

    def test_unparseable_url_is_400(self, client):
        response = client.post("/api/assets/url", json={"url": "https://[::1"})
        assert response.status_code == 400
        assert "malformed" in response.json()["detail"]

    def test_batch_with_unparseable_url_reports_index(self, client, image_bytes):
        items = [
            {"data_uri": _data_uri(image_bytes("PNG", size=(4, 4)))},
            {"url": "https://[::1"},
        ]
        response = client.post("/api/assets/batch", json={"items": items})
        assert response.status_code == 400
        assert "item 1" in response.json()["detail"]

    def test_private_url_is_403(self, client):
        response = client.post("/api/assets/url", json={"url": "https://169.254.169.254/latest"})
        assert response.status_code == 403

    def test_batch(self, client, image_bytes):
        items = [
            {"data_uri": _data_uri(image_bytes("PNG", size=(4, 4), color=(1, 2, 3)))},
            {"data_uri": _data_uri(image_bytes("PNG", size=(5, 5), color=(4, 5, 6)))},
        ]
        response = client.post("/api/assets/batch", json={"items": items})
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert [asset["width"] for asset in body["assets"]] == [4, 5]

    def test_empty_batch_is_400(self, client):
        response = client.post("/api/assets/batch", json={"items": []})
        assert response.status_code == 400

    def test_batch_item_with_two_sources_is_422(self, client):
        response = client.post(
            "/api/assets/batch",
            json={"items": [{"url": "https://a.example/x.png", "data_uri": "data:,x"}]},
        )
        assert response.status_code == 422

    def test_batch_failure_reports_index(self, client, image_bytes):
        """
        Given: A batch whose second item is a private URL
        When: POST /api/assets/batch is called
        Then: Returns the cause's status (403) with the failing index in the detail
        """
        items = [
            {"data_uri": _data_uri(image_bytes("PNG", size=(3, 3)))},
            {"url": "https://10.0.0.1/a.png"},
        ]
        response = client.post("/api/assets/batch", json={"items": items})
        assert response.status_code == 403
        assert "failed to process item 1" in response.json()["detail"]

    def test_rate_limit(self, client):
        limiter = SimpleRateLimiter(limit=1, window_seconds=60)
        app.dependency_overrides[get_rate_limiter] = lambda: limiter
        first = client.post("/api/assets/data-uri", json={"data_uri": "data:image/png;base64"})
        second = client.post("/api/assets/data-uri", json={"data_uri": "data:image/png;base64"})
        assert first.status_code == 400
        assert second.status_code == 429

    def test_storage_unavailable_is_503(self, client):
        del app.dependency_overrides[resolve_asset_service]
        with patch("assets_router.get_asset_service", side_effect=StorageUnavailable("not configured")):
            response = client.post("/api/assets/url", json={"url": "https://images.example.com/a.png"})
        assert response.status_code == 503


# ============================================================================
# HTML Transform Endpoint
# ============================================================================

class TestHtmlTransformEndpoint:

    def test_transform(self, client):
        html = '<p>Hi <a href="http://example.com/?utm_source=x">x</a></p><script>bad()</script>'
        response = client.post("/api/html/transform", json={"html": html})
        assert response.status_code == 200
        body = response.json()
        assert "<script" not in body["html"]
        assert 'href="https://example.com/"' in body["html"]
        assert body["stats"]["scripts_removed"] == 1
        assert body["messages"] == []

    def test_oversized_body_rejected_from_content_length(self, client, monkeypatch):
        monkeypatch.setattr(config.TRANSFORM, "max_html_bytes", 10)
        response = client.post("/api/html/transform", json={"html": "x" * 70_000})
        assert response.status_code == 413

    def test_oversized_html_rejected_by_transformer(self, client):
        transformer = HTMLTransformer(
            FakeAssetProcessor(),
            TransformSettings(max_html_bytes=10),
            asset_base_url="https://cdn.test",
        )
        app.dependency_overrides[get_html_transformer] = lambda: transformer
        response = client.post("/api/html/transform", json={"html": "<p>" + "x" * 100 + "</p>"})
        assert response.status_code == 413

    def test_timeout_is_504(self, client, monkeypatch):
        """
        Given: A transform slower than the request deadline
        When: POST /api/html/transform is called
        Then: The work is cancelled and 504 is returned
        """
        monkeypatch.setattr(config.TRANSFORM, "request_timeout_seconds", 0.05)
        app.dependency_overrides[get_html_transformer] = lambda: SlowTransformer()
        response = client.post("/api/html/transform", json={"html": "<p>x</p>"})
        assert response.status_code == 504

    def test_client_disconnect_cancels_transform(self, client):
        """
        Given: A transform still running when the client goes away
        When: POST /api/html/transform is called
        Then: The transform task is cancelled and 499 is returned
        """
        transformer = SlowTransformer()
        app.dependency_overrides[get_html_transformer] = lambda: transformer
        with patch.object(Request, "is_disconnected", AsyncMock(return_value=True)):
            response = client.post("/api/html/transform", json={"html": "<p>x</p>"})
        assert response.status_code == 499
        assert transformer.cancelled is True
