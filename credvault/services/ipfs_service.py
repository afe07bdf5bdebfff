# =====================================================
# FILE: credvault/services/ipfs_service.py
# Content-addressed object store clients (Pinata, local directory)
# =====================================================
"""
Object store for document ciphertext.

The pipeline only sees ObjectStoreClient. Exactly one provider is configured
(IPFS_PROVIDER): Pinata, or the local content-addressed directory store in
development. An outage surfaces as StorageUnavailable; retries belong to the
caller's RetryPolicy. Every call takes a CallContext so the request deadline
bounds each HTTP round-trip.
"""

import hashlib
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import httpx

from credvault.core.config import Settings
from credvault.core.exceptions import NotFound, StorageUnavailable
from credvault.core.resilience import CallContext, InFlightGauge

logger = logging.getLogger(__name__)

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
CID_V0_PATTERN = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
CID_V1_PATTERN = re.compile(r"^b[a-z2-7]{58,}$")


def base58_encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    encoded = ""
    while number > 0:
        number, remainder = divmod(number, 58)
        encoded = BASE58_ALPHABET[remainder] + encoded
    # Leading zero bytes map to leading '1's
    padding = len(data) - len(data.lstrip(b"\x00"))
    return "1" * padding + encoded


def compute_cid_v0(data: bytes) -> str:
    """CIDv0: base58btc of the sha2-256 multihash (0x12, 0x20, digest)"""
    multihash = b"\x12\x20" + hashlib.sha256(data).digest()
    return base58_encode(multihash)


def is_valid_cid(value) -> bool:
    if not isinstance(value, str):
        return False
    return bool(CID_V0_PATTERN.match(value) or CID_V1_PATTERN.match(value))


@dataclass
class StoredObject:
    cid: str
    size: int
    provider: str
    gateway_url: str


class ObjectStoreClient(ABC):
    """Capability interface over a content-addressed store"""

    name = "object-store"

    @abstractmethod
    async def put(self, data: bytes, name: str, ctx: CallContext) -> StoredObject:
        ...

    @abstractmethod
    async def pin(self, cid: str, ctx: CallContext) -> bool:
        ...

    @abstractmethod
    async def unpin(self, cid: str, ctx: CallContext) -> bool:
        ...

    @abstractmethod
    async def fetch(self, cid: str, ctx: CallContext) -> bytes:
        ...

    async def health(self) -> dict:
        return {"status": "healthy", "provider": self.name}

    async def aclose(self) -> None:
        return None


class LocalObjectStore(ObjectStoreClient):
    """Directory keyed by CIDv0. Used in development and tests."""

    name = "local"

    def __init__(self, root: str, gateway_url: str = "https://ipfs.io/ipfs/"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.gateway_url = gateway_url
        self.pins = set()
        # Fault injection for tests: number of upcoming put() calls that fail
        self.fail_next_puts = 0

    def _path(self, cid: str) -> Path:
        return self.root / cid

    async def put(self, data: bytes, name: str, ctx: CallContext) -> StoredObject:
        ctx.check("object-store put")
        if self.fail_next_puts > 0:
            self.fail_next_puts -= 1
            raise StorageUnavailable("Injected local store failure")

        cid = compute_cid_v0(data)
        path = self._path(cid)
        try:
            if not path.exists():
                tmp = path.with_suffix(".tmp")
                tmp.write_bytes(data)
                os.replace(tmp, path)
        except OSError as e:
            raise StorageUnavailable(f"Local store write failed: {str(e)}")

        self.pins.add(cid)
        logger.info(f"📦 Stored {len(data)} bytes locally as {cid}")
        return StoredObject(cid=cid, size=len(data), provider=self.name, gateway_url=f"{self.gateway_url}{cid}")

    async def pin(self, cid: str, ctx: CallContext) -> bool:
        if not self._path(cid).exists():
            return False
        self.pins.add(cid)
        return True

    async def unpin(self, cid: str, ctx: CallContext) -> bool:
        if cid not in self.pins:
            return False
        self.pins.discard(cid)
        return True

    async def fetch(self, cid: str, ctx: CallContext) -> bytes:
        path = self._path(cid)
        if not path.exists():
            raise NotFound(f"CID {cid} not found in local store")
        return path.read_bytes()

    async def health(self) -> dict:
        writable = os.access(self.root, os.W_OK)
        return {
            "status": "healthy" if writable else "unhealthy",
            "provider": self.name,
            "objects_pinned": len(self.pins),
        }


class PinataObjectStore(ObjectStoreClient):
    """Pinata pinning API over httpx"""

    name = "pinata"

    def __init__(self, api_url: str, jwt: str, gateway_url: str, client: httpx.AsyncClient = None):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url
        self._headers = {"Authorization": f"Bearer {jwt}"}
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def _request(self, method: str, url: str, ctx: CallContext, **kwargs) -> httpx.Response:
        timeout = ctx.remaining()
        try:
            response = await self._http().request(
                method, url, headers=self._headers, timeout=timeout if timeout is not None else 60.0, **kwargs
            )
        except httpx.TimeoutException:
            raise StorageUnavailable(f"Pinata request timed out: {method} {url}")
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"Pinata transport error: {str(e)}")

        if response.status_code >= 500 or response.status_code == 429:
            raise StorageUnavailable(f"Pinata returned {response.status_code}")
        return response

    async def put(self, data: bytes, name: str, ctx: CallContext) -> StoredObject:
        ctx.check("object-store put")
        response = await self._request(
            "POST",
            f"{self.api_url}/pinning/pinFileToIPFS",
            ctx,
            files={"file": (name, data, "application/octet-stream")},
            data={"pinataMetadata": json.dumps({"name": name})},
        )
        if response.status_code >= 400:
            raise StorageUnavailable(f"Pinata upload rejected: {response.status_code} {response.text[:200]}")

        cid = response.json()["IpfsHash"]
        logger.info(f"📦 Pinned {len(data)} bytes on Pinata as {cid}")
        return StoredObject(cid=cid, size=len(data), provider=self.name, gateway_url=f"{self.gateway_url}{cid}")

    async def pin(self, cid: str, ctx: CallContext) -> bool:
        response = await self._request(
            "POST", f"{self.api_url}/pinning/pinByHash", ctx, json={"hashToPin": cid}
        )
        return response.status_code < 400

    async def unpin(self, cid: str, ctx: CallContext) -> bool:
        response = await self._request("DELETE", f"{self.api_url}/pinning/unpin/{cid}", ctx)
        return response.status_code < 400

    async def fetch(self, cid: str, ctx: CallContext) -> bytes:
        response = await self._request("GET", f"{self.gateway_url}{cid}", ctx)
        if response.status_code == 404:
            raise NotFound(f"CID {cid} not found on gateway")
        if response.status_code >= 400:
            raise StorageUnavailable(f"Gateway returned {response.status_code}")
        return response.content

    async def health(self) -> dict:
        ctx = CallContext(timeout=5)
        try:
            response = await self._request("GET", f"{self.api_url}/data/testAuthentication", ctx)
            healthy = response.status_code < 400
        except StorageUnavailable as e:
            return {"status": "unhealthy", "provider": self.name, "error": e.detail}
        return {"status": "healthy" if healthy else "unhealthy", "provider": self.name}

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class GaugedObjectStore(ObjectStoreClient):
    """Single configured provider behind the in-flight gauge used for backpressure"""

    def __init__(self, provider: ObjectStoreClient, max_in_flight: int = 16):
        self.provider = provider
        self.name = provider.name
        self.gauge = InFlightGauge("object-store", max_in_flight)

    async def put(self, data: bytes, name: str, ctx: CallContext) -> StoredObject:
        async with self.gauge.track():
            return await self.provider.put(data, name, ctx)

    async def pin(self, cid: str, ctx: CallContext) -> bool:
        async with self.gauge.track():
            return await self.provider.pin(cid, ctx)

    async def unpin(self, cid: str, ctx: CallContext) -> bool:
        async with self.gauge.track():
            return await self.provider.unpin(cid, ctx)

    async def fetch(self, cid: str, ctx: CallContext) -> bytes:
        async with self.gauge.track():
            return await self.provider.fetch(cid, ctx)

    async def health(self) -> dict:
        result = await self.provider.health()
        result["in_flight"] = self.gauge.current
        return result

    async def aclose(self) -> None:
        await self.provider.aclose()


def build_object_store(settings: Settings) -> GaugedObjectStore:
    """Exactly one provider, chosen by IPFS_PROVIDER"""
    if settings.IPFS_PROVIDER == "pinata":
        if not settings.PINATA_JWT:
            raise ValueError("IPFS_PROVIDER=pinata requires PINATA_JWT")
        provider: ObjectStoreClient = PinataObjectStore(
            settings.PINATA_API_URL, settings.PINATA_JWT, settings.IPFS_GATEWAY_URL
        )
    elif settings.IPFS_PROVIDER == "local":
        provider = LocalObjectStore(settings.LOCAL_IPFS_PATH, settings.IPFS_GATEWAY_URL)
    else:
        raise ValueError(f"Unknown IPFS_PROVIDER: {settings.IPFS_PROVIDER!r}")

    logger.info(f"📦 Object store provider: {provider.name}")
    return GaugedObjectStore(provider, settings.OBJECT_STORE_MAX_IN_FLIGHT)
