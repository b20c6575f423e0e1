"""
Blob Publisher Adapter

Stores encrypted payloads on a blob publisher (Walrus-compatible HTTP API):
    PUT {publisher}/v1/blobs?epochs=N   body = raw bytes
    → {"newlyCreated": {"blobObject": {"blobId": ...}}}
    → {"alreadyCertified": {"blobId": ...}}

Only ciphertext is ever sent here.
"""

import logging
from typing import Optional

import aiohttp

from ..decoding import decode_blob_upload
from ..errors import StorageError
from ..results import BlobUpload

logger = logging.getLogger("sentinel.adapter.blob_store")

DEFAULT_PUBLISHER_URL = "https://publisher.walrus-testnet.walrus.space"


class BlobPublisher:

    def __init__(self, base_url: str = DEFAULT_PUBLISHER_URL, epochs: int = 3, timeout: int = 60):
        self.base_url = base_url.rstrip("/")
        self.epochs = epochs
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def store(self, data: bytes) -> BlobUpload:
        """Upload one blob. Raises on HTTP or decoding failure."""
        session = await self._get_session()
        async with session.put(
            f"{self.base_url}/v1/blobs",
            params={"epochs": str(self.epochs)},
            data=data,
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise StorageError(f"Blob publisher HTTP {resp.status}: {body[:200]}")
            payload = await resp.json(content_type=None)

        upload = decode_blob_upload(payload, size=len(data))
        logger.info(f"Blob stored: {upload.blob_id[:16]}... ({upload.size} bytes, {self.epochs} epochs)")
        return upload
