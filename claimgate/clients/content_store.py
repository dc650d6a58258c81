"""
Content Store Clients

Uploads opaque claim bytes and returns a content address: a deterministic
digest of the bytes. Uploading the same bytes twice yields the same address,
which is what makes a post-payment retry safe.

- ContentStoreClient: the boundary
- InMemoryContentStore: dict-backed, for tests
- LocalContentStore: files named by their SHA-256 under a directory
- PinataContentStore: IPFS pinning over HTTP, returns the CID
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from ..core.errors import ContentStoreFailure
from ..core.hasher import Hasher
from ..observability import get_logger

logger = get_logger(__name__)


class ContentStoreClient(ABC):
    """Uploads bytes to a content-addressed store."""

    @abstractmethod
    async def upload(self, data: bytes, metadata: Optional[dict] = None) -> str:
        """
        Store `data` and return its content address.

        Raises:
            ContentStoreFailure: the upload did not complete
        """
        pass

    async def aclose(self) -> None:
        return None


class InMemoryContentStore(ContentStoreClient):
    """
    Dict-backed content store.

    `fail_next(n)` makes the next n uploads fail; `delay` simulates latency.
    """

    def __init__(self, delay: float = 0.0):
        self.objects: dict[str, bytes] = {}
        self.delay = delay
        self.uploads = 0
        self._failures_remaining = 0

    def fail_next(self, count: int = 1) -> None:
        self._failures_remaining = count

    def get(self, address: str) -> Optional[bytes]:
        return self.objects.get(address)

    async def upload(self, data: bytes, metadata: Optional[dict] = None) -> str:
        self.uploads += 1
        if self.delay:
            await asyncio.sleep(self.delay)

        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise ContentStoreFailure("Injected content store failure")

        address = Hasher.content_address(data)
        self.objects[address] = data
        return address


class LocalContentStore(ContentStoreClient):
    """
    Filesystem content store.

    Each object is written once to <directory>/<sha256 hex>. Writes go
    through a temporary file and an atomic rename.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _write(self, address: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        digest = address[len(Hasher.CONTENT_ADDRESS_PREFIX):]
        target = self.directory / digest
        if target.exists():
            return
        tmp = self.directory / f"{digest}.{os.getpid()}.tmp"
        tmp.write_bytes(data)
        os.replace(tmp, target)

    def read(self, address: str) -> bytes:
        digest = address[len(Hasher.CONTENT_ADDRESS_PREFIX):]
        return (self.directory / digest).read_bytes()

    async def upload(self, data: bytes, metadata: Optional[dict] = None) -> str:
        address = Hasher.content_address(data)
        try:
            await asyncio.to_thread(self._write, address, data)
        except OSError as e:
            raise ContentStoreFailure(f"Local content store write failed: {e}") from e
        return address


class PinataContentStore(ContentStoreClient):
    """
    IPFS pinning through the Pinata API.

    Request:
        POST {api_url}/pinning/pinFileToIPFS   (multipart, Bearer JWT)

    Response:
        {"IpfsHash": "<cid>", ...}
    """

    def __init__(
        self,
        jwt: str,
        api_url: str = "https://api.pinata.cloud",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        if not jwt:
            raise ValueError("Pinata content store requires a JWT")
        self.api_url = api_url.rstrip("/")
        self._jwt = jwt
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    async def upload(self, data: bytes, metadata: Optional[dict] = None) -> str:
        metadata = metadata or {}
        name = metadata.get("claim_id") or Hasher.content_address(data)
        files = {"file": (f"{name}.json", data, "application/json")}
        form = {
            "pinataMetadata": json.dumps({
                "name": name,
                "keyvalues": {k: str(v) for k, v in metadata.items()},
            }),
        }

        try:
            response = await self.client.post(
                f"{self.api_url}/pinning/pinFileToIPFS",
                headers={"Authorization": f"Bearer {self._jwt}"},
                files=files,
                data=form,
            )
            response.raise_for_status()
            cid = response.json()["IpfsHash"]
        except httpx.HTTPError as e:
            raise ContentStoreFailure(f"Pinata upload failed: {type(e).__name__}") from e
        except (ValueError, KeyError) as e:
            raise ContentStoreFailure("Pinata returned an unexpected response") from e

        logger.info("Pinned claim content", cid=cid, size=len(data))
        return f"ipfs://{cid}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
