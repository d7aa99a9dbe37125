"""Content-addressed blob storage with a propagation-aware read path.

Identifiers are CIDv1 (raw codec, sha256 multihash, base32 multibase), so
identical bytes always map to the identical identifier. Reads probe local
availability first; content that has not propagated yet gets exactly one
delayed retry before the read fails with ``NotFoundError``.
"""

import asyncio
import base64
import hashlib
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import aiohttp

from .errors import NetworkError, NotFoundError, ValidationError

log = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 5.0
DEFAULT_PROBE_TIMEOUT = 2.0

_CID_V1_RAW_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])
_CID_V0 = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_CID_V1 = re.compile(r"^b[a-z2-7]{50,}$")


def compute_cid(data: bytes) -> str:
    digest = hashlib.sha256(data).digest()
    encoded = base64.b32encode(_CID_V1_RAW_PREFIX + digest).decode("ascii")
    return "b" + encoded.lower().rstrip("=")


def is_content_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_CID_V0.match(value) or _CID_V1.match(value))


def validate_content_id(value: Any) -> str:
    if not is_content_id(value):
        raise ValidationError(f"malformed content identifier {value!r}")
    return value


class StoreBackend:
    async def add(self, data: bytes) -> str:
        raise NotImplementedError

    async def probe(self, cid: str, *, timeout: float) -> bool:
        raise NotImplementedError

    async def fetch(self, cid: str) -> Optional[bytes]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryBackend(StoreBackend):
    """In-process backend. ``withhold`` models content still propagating."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.withheld: Set[str] = set()
        self.adds = 0
        self.fetches = 0

    def withhold(self, cid: str) -> None:
        self.withheld.add(cid)

    def release(self, cid: str) -> None:
        self.withheld.discard(cid)

    async def add(self, data: bytes) -> str:
        self.adds += 1
        cid = compute_cid(data)
        self.blobs[cid] = bytes(data)
        return cid

    async def probe(self, cid: str, *, timeout: float) -> bool:
        return cid in self.blobs and cid not in self.withheld

    async def fetch(self, cid: str) -> Optional[bytes]:
        self.fetches += 1
        if cid in self.withheld:
            return None
        return self.blobs.get(cid)


class IpfsHttpBackend(StoreBackend):
    """Kubo RPC API for writes and probes; optional HTTP gateway for reads."""

    def __init__(
        self,
        api_url: str,
        *,
        gateway_url: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/") if gateway_url else None
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def add(self, data: bytes) -> str:
        form = aiohttp.FormData()
        form.add_field("file", data, filename="blob", content_type="application/octet-stream")
        params = {"cid-version": "1", "raw-leaves": "true", "pin": "true"}
        try:
            async with self._get_session().post(f"{self.api_url}/add", data=form, params=params) as resp:
                if resp.status != 200:
                    raise NetworkError(f"ipfs add failed (HTTP {resp.status}): {(await resp.text())[:200]}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"ipfs add failed: {exc}") from exc
        cid = str(payload.get("Hash") or "")
        if not cid:
            raise NetworkError("ipfs add returned no hash")
        return cid

    async def probe(self, cid: str, *, timeout: float) -> bool:
        url = f"{self.api_url}/block/stat"
        params = {"arg": cid, "offline": "true"}
        try:
            async with self._get_session().post(
                url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                return resp.status == 200
        except asyncio.TimeoutError:
            return False
        except aiohttp.ClientError as exc:
            raise NetworkError(f"ipfs probe failed: {exc}") from exc

    async def fetch(self, cid: str) -> Optional[bytes]:
        session = self._get_session()
        try:
            if self.gateway_url:
                request = session.get(f"{self.gateway_url}/ipfs/{cid}")
            else:
                request = session.post(f"{self.api_url}/cat", params={"arg": cid})
            async with request as resp:
                if resp.status == 200:
                    return await resp.read()
                if resp.status in (404, 410, 500):
                    log.debug("ipfs fetch miss for %s (HTTP %s)", cid, resp.status)
                    return None
                raise NetworkError(f"ipfs fetch failed (HTTP {resp.status})")
        except asyncio.TimeoutError:
            return None
        except aiohttp.ClientError as exc:
            raise NetworkError(f"ipfs fetch failed: {exc}") from exc


class ContentAddressableStore:
    """put/get over a backend, plus a never-evicted memo cache for artefacts."""

    def __init__(
        self,
        backend: StoreBackend,
        *,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.retry_delay = retry_delay
        self.probe_timeout = probe_timeout
        self._sleep = sleep
        self._written: Dict[str, str] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._memo: Dict[str, Any] = {}

    async def put(self, data: bytes) -> str:
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError("store payloads must be bytes")
        fingerprint = hashlib.sha256(data).hexdigest()
        known = self._written.get(fingerprint)
        if known:
            return known
        cid = await self.backend.add(bytes(data))
        self._written[fingerprint] = cid
        log.debug("stored %d bytes as %s", len(data), cid)
        return cid

    async def put_json(self, payload: Any) -> str:
        raw = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return await self.put(raw.encode("utf-8"))

    async def get(self, cid: str) -> bytes:
        validate_content_id(cid)
        pending = self._inflight.get(cid)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(cid))
            self._inflight[cid] = pending
            pending.add_done_callback(lambda _: self._inflight.pop(cid, None))
        return await asyncio.shield(pending)

    async def _fetch(self, cid: str) -> bytes:
        if await self.backend.probe(cid, timeout=self.probe_timeout):
            data = await self.backend.fetch(cid)
            if data is not None:
                return data
        log.info("content %s not yet available, retrying in %.1fs", cid, self.retry_delay)
        await self._sleep(self.retry_delay)
        data = await self.backend.fetch(cid)
        if data is None:
            log.warning("content %s unavailable after retry", cid)
            raise NotFoundError(f"content {cid} not found")
        return data

    async def get_json(self, cid: str) -> Any:
        raw = await self.get(cid)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValidationError(f"content {cid} is not JSON") from exc

    def cached(self, key: str) -> Optional[Any]:
        return self._memo.get(key)

    async def memoize(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._memo:
            return self._memo[key]
        value = await factory()
        if value is not None:
            self._memo[key] = value
        return value

    async def close(self) -> None:
        await self.backend.close()
