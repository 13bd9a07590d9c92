"""
Object store client for deposit evidence.

``BlobStore`` is the interface the core depends on; ``HttpBlobStore`` talks
to an HTTP blob service:

    PUT    {base}/{pathname}              body = bytes   -> {"url": ...}
    DELETE {base}?url=...                                -> 200/204 (404 is fine)
    GET    {base}?prefix=&limit=&cursor=                 -> {"blobs": [...], "cursor": ..., "has_more": ...}

Every call runs under ``BLOB_TIMEOUT_SECONDS``. Transport errors and 5xx
responses surface as StorageFault.
"""

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import settings
from ..exceptions import StorageFault

logger = logging.getLogger(__name__)


@dataclass
class BlobInfo:
    url: str
    pathname: str
    size: Optional[int] = None
    uploaded_at: Optional[str] = None


@dataclass
class BlobListPage:
    blobs: List[BlobInfo] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False


class BlobStore(Protocol):
    def put(self, data: bytes, pathname: str, content_type: str = "application/octet-stream") -> str:
        ...

    def delete(self, url: str) -> None:
        """Remove the object. Deleting an object that does not exist is not an error."""
        ...

    def list(self, prefix: str = "", limit: int = 1000, cursor: Optional[str] = None) -> BlobListPage:
        ...


class HttpBlobStore:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.blob_store_url).rstrip("/")
        token = token if token is not None else settings.blob_store_token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            headers=headers,
            timeout=timeout or settings.blob_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Blob store {method} failed: {e}")
            raise StorageFault(f"Blob store unavailable: {e}", details={"method": method}) from e

    def _raise_for_status(self, response: httpx.Response, operation: str, target: str) -> None:
        if response.is_success:
            return
        logger.error(f"Blob store {operation} {target} returned {response.status_code}: {response.text[:200]}")
        raise StorageFault(
            f"Blob store {operation} failed with status {response.status_code}",
            details={"operation": operation, "target": target, "status_code": response.status_code},
        )

    def put(self, data: bytes, pathname: str, content_type: str = "application/octet-stream") -> str:
        response = self._request(
            "PUT",
            f"{self.base_url}/{pathname.lstrip('/')}",
            content=data,
            headers={"Content-Type": content_type},
        )
        self._raise_for_status(response, "put", pathname)
        try:
            url = response.json()["url"]
        except (ValueError, KeyError) as e:
            raise StorageFault("Blob store returned no url", details={"pathname": pathname}) from e
        logger.info(f"Stored blob {pathname} ({len(data)} bytes)")
        return url

    def delete(self, url: str) -> None:
        response = self._request("DELETE", self.base_url, params={"url": url})
        if response.status_code == 404:
            logger.debug(f"Blob already gone: {url}")
            return
        self._raise_for_status(response, "delete", url)
        logger.info(f"Deleted blob {url}")

    def list(self, prefix: str = "", limit: int = 1000, cursor: Optional[str] = None) -> BlobListPage:
        params: Dict[str, Any] = {"prefix": prefix, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        response = self._request("GET", self.base_url, params=params)
        self._raise_for_status(response, "list", prefix)
        body = response.json()
        return BlobListPage(
            blobs=[
                BlobInfo(
                    url=item["url"],
                    pathname=item.get("pathname", ""),
                    size=item.get("size"),
                    uploaded_at=item.get("uploaded_at"),
                )
                for item in body.get("blobs", [])
            ],
            cursor=body.get("cursor"),
            has_more=bool(body.get("has_more")),
        )


@lru_cache()
def get_blob_store() -> BlobStore:
    """Process-wide blob store client (FastAPI dependency)."""
    return HttpBlobStore()
