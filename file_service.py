# file_service.py
"""
Client side of the file service the PO images and signatures live in.

Stored files are referenced by relative paths like "/uploads/products/abc.png".
Those are turned into fetchable (possibly signed) URLs by the API before
download. Errors are raised as httpx exceptions; callers decide how to degrade.
"""
import logging

import httpx

from config import Config

logger = logging.getLogger(__name__)

SIGNED_URL_ENDPOINT = "/api/FileUpload/signed-url"


def is_internal_path(url: str) -> bool:
    raw = (url or "").strip()
    return raw.startswith("/uploads/") or raw.startswith("uploads/")


class FileService:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.token = (token if token is not None else Config.API_AUTH_TOKEN) or ""
        self.client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else Config.HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def absolute_url(self, path: str) -> str:
        raw = (path or "").strip()
        if raw.lower().startswith(("http://", "https://", "data:")):
            return raw
        return f"{self.base_url}/{raw.lstrip('/')}"

    async def resolve_signed_url(self, path: str) -> str:
        """
        Fully-qualified URL for a stored file path. Absolute URLs pass through;
        when the API answers without a URL the plain base-joined path is used.
        """
        raw = (path or "").strip()
        if not is_internal_path(raw):
            return self.absolute_url(raw)

        response = await self.client.get(
            f"{self.base_url}{SIGNED_URL_ENDPOINT}",
            params={"filePath": raw},
            headers=self._auth_headers(),
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError:
            body = {}
        signed = ""
        if isinstance(body, dict):
            signed = str(body.get("url") or body.get("signedUrl") or body.get("Url") or "").strip()
        if not signed:
            logger.debug("No signed URL returned for %s; using base URL", raw)
            return self.absolute_url(raw)
        return self.absolute_url(signed)

    async def fetch_bytes(self, url: str, *, authenticated: bool = False) -> tuple[bytes, str]:
        """GET the URL; returns (body, content-type). Non-2xx raises httpx.HTTPStatusError."""
        headers = self._auth_headers() if authenticated else {}
        response = await self.client.get(url, headers=headers)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        return response.content, content_type
