"""
Tests for the HTTP blob store client, against an httpx mock transport
"""

import json

import httpx
import pytest

from app.exceptions import StorageFault
from app.services.blob_store import HttpBlobStore

BASE = "https://blobs.example.com/store"


def _store(handler, token="secret"):
    return HttpBlobStore(base_url=BASE + "/", token=token, timeout=5, transport=httpx.MockTransport(handler))


class TestHttpBlobStore:

    def test_put_returns_url(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["type"] = request.headers.get("Content-Type")
            seen["body"] = request.content
            return httpx.Response(200, json={"url": "https://cdn.example.com/deposit-1.jpg"})

        url = _store(handler).put(b"abc", "deposit-1.jpg", "image/jpeg")

        assert url == "https://cdn.example.com/deposit-1.jpg"
        assert seen == {
            "method": "PUT",
            "url": f"{BASE}/deposit-1.jpg",
            "auth": "Bearer secret",
            "type": "image/jpeg",
            "body": b"abc",
        }

    def test_put_without_url_in_response(self):
        store = _store(lambda request: httpx.Response(200, json={}))
        with pytest.raises(StorageFault):
            store.put(b"abc", "deposit-1.jpg")

    def test_server_error_is_storage_fault(self):
        store = _store(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(StorageFault) as exc_info:
            store.put(b"abc", "deposit-1.jpg")
        assert exc_info.value.details["status_code"] == 503

    def test_transport_error_is_storage_fault(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(StorageFault):
            _store(handler).delete("https://cdn.example.com/deposit-1.jpg")

    def test_delete_of_missing_blob_is_fine(self):
        seen = []

        def handler(request):
            seen.append(request.url.params["url"])
            return httpx.Response(404)

        _store(handler).delete("https://cdn.example.com/deposit-1.jpg")
        assert seen == ["https://cdn.example.com/deposit-1.jpg"]

    def test_list_page(self):
        def handler(request):
            assert request.url.params["prefix"] == "deposit-"
            assert request.url.params["cursor"] == "c1"
            return httpx.Response(200, content=json.dumps({
                "blobs": [{"url": "u1", "pathname": "deposit-1.jpg", "size": 3, "uploaded_at": "2027-01-01T00:00:00Z"}],
                "cursor": "c2",
                "has_more": True,
            }))

        page = _store(handler, token="").list(prefix="deposit-", limit=10, cursor="c1")

        assert page.has_more is True
        assert page.cursor == "c2"
        assert page.blobs[0].pathname == "deposit-1.jpg"
        assert page.blobs[0].uploaded_at == "2027-01-01T00:00:00Z"
