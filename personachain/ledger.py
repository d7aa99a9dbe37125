"""Stateless RPC facade over a ledger node's chain API."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import aiohttp

from .errors import LedgerRejection, NetworkError, ValidationError
from .names import validate_account_name

log = logging.getLogger(__name__)

MISSING_TABLE_MARKERS = ("Table does not exist", "Fail to retrieve")
UNKNOWN_ACCOUNT_NAMES = {"unknown_key_exception", "account_query_exception"}
EMPTY_CODE_HASH = "0" * 64


@dataclass
class ChainInfo:
    chain_id: str
    head_block_num: int
    head_block_time: datetime
    last_irreversible_block_num: int
    last_irreversible_block_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChainInfo":
        try:
            head_time = datetime.fromisoformat(str(payload["head_block_time"]).rstrip("Z"))
            return cls(
                chain_id=str(payload["chain_id"]),
                head_block_num=int(payload["head_block_num"]),
                head_block_time=head_time.replace(tzinfo=timezone.utc),
                last_irreversible_block_num=int(payload["last_irreversible_block_num"]),
                last_irreversible_block_id=str(payload["last_irreversible_block_id"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkError(f"malformed chain info: {exc}") from exc


@dataclass
class TableRows:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    more: bool = False
    next_key: str = ""


class LedgerClient:
    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _call(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.endpoint}/v1/chain/{path}"
        session = self._get_session()
        try:
            async with session.post(url, json=body or {}) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"ledger {path} failed: {exc}") from exc
        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = None
        if status >= 400:
            raise _error_for(path, status, payload, text)
        if payload is None:
            raise NetworkError(f"ledger {path} returned non-JSON body (HTTP {status})")
        return payload

    async def get_info(self) -> ChainInfo:
        return ChainInfo.from_payload(await self._call("get_info"))

    async def get_abi(self, account: str) -> Optional[Dict[str, Any]]:
        validate_account_name(account)
        try:
            payload = await self._call("get_abi", {"account_name": account})
        except LedgerRejection as exc:
            if _unknown_account(exc):
                return None
            raise
        return payload.get("abi") or None

    async def get_account(self, account: str) -> Optional[Dict[str, Any]]:
        validate_account_name(account)
        try:
            return await self._call("get_account", {"account_name": account})
        except LedgerRejection as exc:
            if _unknown_account(exc):
                return None
            raise

    async def get_code_hash(self, account: str) -> str:
        validate_account_name(account)
        payload = await self._call("get_code_hash", {"account_name": account})
        return str(payload.get("code_hash") or EMPTY_CODE_HASH)

    async def get_table_rows(
        self,
        code: str,
        table: str,
        *,
        scope: Optional[str] = None,
        index_position: Optional[Union[int, str]] = None,
        key_type: str = "i64",
        lower_bound: Optional[Union[int, str]] = None,
        upper_bound: Optional[Union[int, str]] = None,
        limit: int = 100,
        reverse: bool = False,
    ) -> TableRows:
        validate_account_name(code)
        if limit <= 0:
            raise ValidationError("limit must be positive")
        body: Dict[str, Any] = {
            "json": True,
            "code": code,
            "scope": scope or code,
            "table": table,
            "key_type": key_type,
            "limit": limit,
            "reverse": reverse,
        }
        if index_position is not None:
            body["index_position"] = index_position
        if lower_bound is not None:
            body["lower_bound"] = lower_bound
        if upper_bound is not None:
            body["upper_bound"] = upper_bound
        try:
            payload = await self._call("get_table_rows", body)
        except LedgerRejection as exc:
            if any(marker in exc.message for marker in MISSING_TABLE_MARKERS):
                log.debug("table %s/%s/%s missing, treating as empty", code, body["scope"], table)
                return TableRows()
            raise
        return TableRows(
            rows=list(payload.get("rows") or []),
            more=bool(payload.get("more")),
            next_key=str(payload.get("next_key") or ""),
        )

    async def push_transaction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("push_transaction", payload)


def _error_for(path: str, status: int, payload: Any, text: str) -> Exception:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        details = [item for item in error.get("details") or [] if isinstance(item, dict)]
        message = str(
            (details[0].get("message") if details else None)
            or error.get("what")
            or payload.get("message")
            or f"HTTP {status}"
        )
        code = error.get("code")
        return LedgerRejection(
            message,
            code=int(code) if isinstance(code, int) else None,
            name=str(error.get("name") or ""),
            details=details,
        )
    if status >= 500:
        return NetworkError(f"ledger {path} unavailable (HTTP {status}): {text[:200]}")
    return LedgerRejection(f"ledger {path} rejected (HTTP {status}): {text[:200]}")


def _unknown_account(exc: LedgerRejection) -> bool:
    return exc.name in UNKNOWN_ACCOUNT_NAMES or "unknown key" in exc.message.lower()
