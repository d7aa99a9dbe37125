"""
Shared fixtures: a fake ledger node served over HTTP, an in-memory content
store and a fully wired transaction builder.

The fake node decodes every pushed transaction, checks its signatures by
key recovery against the authorizing accounts, and applies the system,
resource-policy, registry and persona contract actions to its tables.
"""

import copy
import hashlib
import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from personachain.abi import ENVELOPE, AbiSchema, unpack_abi
from personachain.ledger import LedgerClient
from personachain.provisioning import ContractArtifacts, ResourcePolicy
from personachain.signer import LocalKeySigner, recover_public_key
from personachain.store import ContentAddressableStore, MemoryBackend
from personachain.transactions import ActionResolver, TransactionBuilder

CHAIN_ID = "8a34ec7df1b8cd06ff4a8abbaa7cc50300823350cadc59ab296cb00d104d2b8f"
REGISTRY = "immutablenpc"
PERSONA_ABI_PATH = Path(__file__).resolve().parent.parent / "personachain" / "data" / "persona.abi.json"

# deterministic test key
SIGNER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def _struct(name: str, fields: List[Tuple[str, str]]) -> Dict[str, Any]:
    return {"name": name, "base": "", "fields": [{"name": n, "type": t} for n, t in fields]}


def _abi(structs: List[Dict[str, Any]], tables: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "version": "eosio::abi/1.1",
        "structs": structs,
        "actions": [{"name": s["name"], "type": s["name"], "ricardian_contract": ""} for s in structs],
        "tables": tables or [],
    }


SYSTEM_ABI = _abi(
    [
        _struct(
            "newaccount",
            [("creator", "name"), ("name", "name"), ("owner", "authority"), ("active", "authority")],
        ),
        _struct("setcode", [("account", "name"), ("vmtype", "uint8"), ("vmversion", "uint8"), ("code", "bytes")]),
        _struct("setabi", [("account", "name"), ("abi", "bytes")]),
    ]
)
SYSTEM_ABI["structs"] += [
    _struct("key_weight", [("key", "public_key"), ("weight", "uint16")]),
    _struct("permission_level", [("actor", "name"), ("permission", "name")]),
    _struct("permission_level_weight", [("permission", "permission_level"), ("weight", "uint16")]),
    _struct("wait_weight", [("wait_sec", "uint32"), ("weight", "uint16")]),
    _struct(
        "authority",
        [
            ("threshold", "uint32"),
            ("keys", "key_weight[]"),
            ("accounts", "permission_level_weight[]"),
            ("waits", "wait_weight[]"),
        ],
    ),
]

ROA_ABI = _abi(
    [
        _struct(
            "addpolicy",
            [
                ("owner", "name"),
                ("issuer", "name"),
                ("net_weight", "asset"),
                ("cpu_weight", "asset"),
                ("ram_weight", "asset"),
                ("time_block", "uint32"),
                ("network_gen", "uint8"),
            ],
        )
    ]
)

REGISTRY_ABI = _abi([_struct("addpersona", [("persona_name", "name"), ("initial_state_cid", "string")])])


def _rejection(name: str, message: str, *, code: int = 3050003) -> web.Response:
    body = {
        "code": 500,
        "message": "Internal Service Error",
        "error": {"code": code, "name": name, "what": name.replace("_", " "), "details": [{"message": message}]},
    }
    return web.json_response(body, status=500)


class FakeLedger:
    """Just enough of a chain API node for the client, builder and engine."""

    def __init__(self, signer_public_key: str) -> None:
        self.key = signer_public_key
        self.url = ""
        self.calls: Counter = Counter()
        self.pushed: List[Dict[str, Any]] = []
        self.unavailable = False
        self._rejections: Dict[Tuple[str, str], Tuple[str, str]] = {}
        self.state: Dict[str, Any] = {
            "accounts": {name: self.key for name in ("sysio", "sysio.roa", REGISTRY)},
            "abis": {"sysio": SYSTEM_ABI, "sysio.roa": ROA_ABI, REGISTRY: REGISTRY_ABI},
            "code": {},
            "tables": {},
        }

    # -- test controls -------------------------------------------------

    def reject_next(self, account: str, action: str, message: str, *, name: str = "eosio_assert_message_exception") -> None:
        self._rejections[(account, action)] = (name, message)

    def rows(self, code: str, scope: str, table: str) -> List[Dict[str, Any]]:
        return self.state["tables"].setdefault((code, scope, table), [])

    def respond(self, persona: str, user: str, msg_cid: str, response: str, *, post_state_cid: str = "") -> None:
        for row in self.rows(persona, user, "messages"):
            if row["msg_cid"] == msg_cid:
                row["response"] = response
                row["post_state_cid"] = post_state_cid
                return
        raise AssertionError(f"no message row for {msg_cid}")

    def seed_persona(self, persona: str, initial_state_cid: str) -> None:
        """Put an already provisioned persona on the ledger."""
        self.state["accounts"][persona] = self.key
        self.state["abis"][persona] = json.loads(PERSONA_ABI_PATH.read_text(encoding="utf-8"))
        self.rows(persona, persona, "personainfo")[:] = [{"id": 0, "initial_state_cid": initial_state_cid}]

    # -- http ----------------------------------------------------------

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/chain/{method}", self._dispatch)
        return app

    async def _dispatch(self, request: web.Request) -> web.Response:
        method = request.match_info["method"]
        self.calls[method] += 1
        if self.unavailable:
            return web.Response(status=503, text="node unavailable")
        body = await request.json() if request.can_read_body else {}
        handler = getattr(self, f"_{method}", None)
        if handler is None:
            return web.Response(status=404, text="unknown endpoint")
        return handler(body)

    def _get_info(self, body: Dict[str, Any]) -> web.Response:
        return web.json_response(
            {
                "chain_id": CHAIN_ID,
                "head_block_num": 1200,
                "head_block_time": "2026-03-01T12:00:00.500",
                "last_irreversible_block_num": 1190,
                "last_irreversible_block_id": "000004a6" + "5f" * 4 + "c3d2b1a0" + "00" * 20,
            }
        )

    def _get_abi(self, body: Dict[str, Any]) -> web.Response:
        account = body["account_name"]
        if account not in self.state["accounts"]:
            return _rejection("unknown_key_exception", f"unknown key (sysio::name): (0 {account})", code=3060001)
        payload: Dict[str, Any] = {"account_name": account}
        if account in self.state["abis"]:
            payload["abi"] = self.state["abis"][account]
        return web.json_response(payload)

    def _get_account(self, body: Dict[str, Any]) -> web.Response:
        account = body["account_name"]
        if account not in self.state["accounts"]:
            return _rejection("unknown_key_exception", f"unknown key (sysio::name): {account}", code=3060001)
        key = self.state["accounts"][account]
        return web.json_response(
            {
                "account_name": account,
                "permissions": [
                    {"perm_name": perm, "required_auth": {"threshold": 1, "keys": [{"key": key, "weight": 1}]}}
                    for perm in ("owner", "active")
                ],
            }
        )

    def _get_code_hash(self, body: Dict[str, Any]) -> web.Response:
        account = body["account_name"]
        return web.json_response({"account_name": account, "code_hash": self.state["code"].get(account, "0" * 64)})

    def _get_table_rows(self, body: Dict[str, Any]) -> web.Response:
        key = (body["code"], body["scope"], body["table"])
        if key[0] not in self.state["abis"]:
            return _rejection("contract_table_query_exception", "Fail to retrieve table for " + key[0])
        rows = list(self.state["tables"].get(key, []))
        if body.get("key_type") == "name":
            lower, upper = body.get("lower_bound"), body.get("upper_bound")
            rows = [
                row
                for row in rows
                if (lower is None or row.get("persona_name", "") >= lower)
                and (upper is None or row.get("persona_name", "") <= upper)
            ]
        if body.get("reverse"):
            rows.reverse()
        limit = int(body.get("limit") or 10)
        return web.json_response({"rows": rows[:limit], "more": len(rows) > limit, "next_key": ""})

    def _push_transaction(self, body: Dict[str, Any]) -> web.Response:
        raw = bytes.fromhex(body["packed_trx"])
        trx = ENVELOPE.decode("transaction", raw)
        digest = hashlib.sha256(bytes.fromhex(CHAIN_ID) + raw + bytes(32)).digest()
        signed_by = {recover_public_key(digest, sig) for sig in body["signatures"]}
        state = copy.deepcopy(self.state)
        for action in trx["actions"]:
            account, name = action["account"], action["name"]
            for level in action["authorization"]:
                if state["accounts"].get(level["actor"]) not in signed_by:
                    return _rejection(
                        "unsatisfied_authorization",
                        f"transaction declares authority '{level['actor']}@{level['permission']}' "
                        "but does not have signatures for it.",
                        code=3090003,
                    )
            rejection = self._rejections.pop((account, name), None)
            if rejection is not None:
                return _rejection(*rejection)
            schema = AbiSchema(account, state["abis"].get(account) or {})
            data = schema.decode_action(name, bytes.fromhex(action["data"]))
            error = self._apply(state, account, name, data)
            if error is not None:
                return error
        self.state = state
        transaction_id = hashlib.sha256(raw).hexdigest()
        self.pushed.append(trx)
        return web.json_response({"transaction_id": transaction_id, "processed": {"id": transaction_id}})

    def _apply(self, state: Dict[str, Any], account: str, name: str, data: Dict[str, Any]) -> Optional[web.Response]:
        tables = state["tables"]
        if (account, name) == ("sysio", "newaccount"):
            if data["name"] in state["accounts"]:
                return _rejection(
                    "account_name_exists_exception",
                    f"Cannot create account named {data['name']}, as that name is already taken",
                    code=3050001,
                )
            state["accounts"][data["name"]] = data["active"]["keys"][0]["key"]
        elif (account, name) == ("sysio", "setcode"):
            state["code"][data["account"]] = hashlib.sha256(bytes.fromhex(data["code"])).hexdigest()
        elif (account, name) == ("sysio", "setabi"):
            state["abis"][data["account"]] = unpack_abi(bytes.fromhex(data["abi"]))
        elif (account, name) == ("sysio.roa", "addpolicy"):
            rows = tables.setdefault(("sysio.roa", data["owner"], "policies"), [])
            if any(row["owner"] == data["owner"] for row in rows):
                return _rejection("eosio_assert_message_exception", "assertion failure: policy already exists")
            rows.append(dict(data))
        elif (account, name) == (REGISTRY, "addpersona"):
            rows = tables.setdefault((REGISTRY, REGISTRY, "personas"), [])
            if any(row["persona_name"] == data["persona_name"] for row in rows):
                return _rejection("eosio_assert_message_exception", "assertion failure: persona already exists")
            rows.append(dict(data))
        elif name == "initpersona":
            tables[(account, account, "personainfo")] = [{"id": 0, "initial_state_cid": data["initial_state_cid"]}]
        elif name == "submitmsg":
            rows = tables.setdefault((account, data["account_name"], "messages"), [])
            rows.append(
                {
                    "key": len(rows),
                    "pre_state_cid": data["pre_state_cid"],
                    "msg_cid": data["msg_cid"],
                    "post_state_cid": "",
                    "response": "",
                }
            )
        return None


@pytest.fixture
def signer() -> LocalKeySigner:
    return LocalKeySigner(SIGNER_KEY)


@pytest_asyncio.fixture
async def node(signer):
    ledger = FakeLedger(signer.public_key)
    server = TestServer(ledger.app())
    await server.start_server()
    ledger.url = str(server.make_url("")).rstrip("/")
    yield ledger
    await server.close()


@pytest_asyncio.fixture
async def ledger(node):
    client = LedgerClient(node.url, timeout=5.0)
    yield client
    await client.close()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def store(backend, sleeps) -> ContentAddressableStore:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return ContentAddressableStore(backend, sleep=fake_sleep)


@pytest.fixture
def builder(ledger, signer) -> TransactionBuilder:
    return TransactionBuilder(ledger, ActionResolver(ledger), signer)


@pytest.fixture
def artifacts() -> ContractArtifacts:
    abi = json.loads(PERSONA_ABI_PATH.read_text(encoding="utf-8"))
    return ContractArtifacts(wasm=b"\x00asm\x01\x00\x00\x00persona", abi=abi)


@pytest.fixture
def policy() -> ResourcePolicy:
    return ResourcePolicy()
