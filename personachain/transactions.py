"""Transaction assembly: schema resolution, encoding, digest, signing, submit."""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .abi import ENVELOPE, AbiSchema
from .errors import ValidationError
from .ledger import ChainInfo, LedgerClient
from .names import validate_account_name
from .signer import Signer

log = logging.getLogger(__name__)

DEFAULT_EXPIRE_SECONDS = 120
CONTEXT_FREE_DATA_HASH = bytes(32)


@dataclass(frozen=True)
class PermissionLevel:
    actor: str
    permission: str = "active"

    def to_dict(self) -> Dict[str, str]:
        return {"actor": self.actor, "permission": self.permission}


@dataclass
class Action:
    account: str
    name: str
    authorization: List[PermissionLevel]
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, account: str, name: str, actor: str, data: Dict[str, Any], *, permission: str = "active") -> "Action":
        return cls(account=account, name=name, authorization=[PermissionLevel(actor, permission)], data=data)

    def describe(self) -> str:
        actors = ", ".join(f"{level.actor}@{level.permission}" for level in self.authorization)
        return f"{self.account}::{self.name} by {actors}"


@dataclass
class EncodedAction:
    account: str
    name: str
    authorization: List[PermissionLevel]
    data: bytes

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "name": self.name,
            "authorization": [level.to_dict() for level in self.authorization],
            "data": self.data,
        }


@dataclass
class TransactionHeader:
    expiration: int
    ref_block_num: int
    ref_block_prefix: int
    max_net_usage_words: int = 0
    max_cpu_usage_ms: int = 0
    delay_sec: int = 0

    @classmethod
    def from_chain_info(cls, info: ChainInfo, *, expire_seconds: int = DEFAULT_EXPIRE_SECONDS) -> "TransactionHeader":
        try:
            block_id = bytes.fromhex(info.last_irreversible_block_id)
        except ValueError as exc:
            raise ValidationError(f"malformed block id {info.last_irreversible_block_id!r}") from exc
        if len(block_id) < 12:
            raise ValidationError("block id too short for a reference prefix")
        expires = info.head_block_time + timedelta(seconds=expire_seconds)
        return cls(
            expiration=int(expires.timestamp()),
            ref_block_num=info.last_irreversible_block_num & 0xFFFF,
            ref_block_prefix=int.from_bytes(block_id[8:12], "little"),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "expiration": self.expiration,
            "ref_block_num": self.ref_block_num,
            "ref_block_prefix": self.ref_block_prefix,
            "max_net_usage_words": self.max_net_usage_words,
            "max_cpu_usage_ms": self.max_cpu_usage_ms,
            "delay_sec": self.delay_sec,
        }


@dataclass
class Transaction:
    header: TransactionHeader
    actions: List[EncodedAction]

    def serialize(self) -> bytes:
        body = self.header.to_dict()
        body["context_free_actions"] = []
        body["actions"] = [action.to_envelope() for action in self.actions]
        body["transaction_extensions"] = []
        return ENVELOPE.encode("transaction", body)

    def signing_digest(self, chain_id: str) -> bytes:
        """sha256 over chain id, packed transaction and the context-free data hash."""
        try:
            chain = bytes.fromhex(chain_id)
        except ValueError as exc:
            raise ValidationError(f"malformed chain id {chain_id!r}") from exc
        if len(chain) != 32:
            raise ValidationError("chain id must be 32 bytes")
        return hashlib.sha256(chain + self.serialize() + CONTEXT_FREE_DATA_HASH).digest()

    @property
    def transaction_id(self) -> str:
        return hashlib.sha256(self.serialize()).hexdigest()


@dataclass
class SignedTransaction:
    transaction: Transaction
    signatures: List[str]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "signatures": list(self.signatures),
            "compression": 0,
            "packed_context_free_data": "",
            "packed_trx": self.transaction.serialize().hex(),
        }


@dataclass
class TransactionResult:
    transaction_id: str
    processed: Dict[str, Any] = field(default_factory=dict)


class ActionResolver:
    """Caches each account's schema and encodes action payloads against it.

    The cache is filled lazily and never invalidated, so a contract
    redeployed after its schema was cached is not observed.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self.ledger = ledger
        self._schemas: Dict[str, AbiSchema] = {}

    def register(self, account: str, abi: Dict[str, Any]) -> AbiSchema:
        schema = AbiSchema(validate_account_name(account), abi)
        self._schemas[account] = schema
        return schema

    def cached(self, account: str) -> Optional[AbiSchema]:
        return self._schemas.get(account)

    async def resolve(self, account: str) -> AbiSchema:
        schema = self._schemas.get(account)
        if schema is not None:
            return schema
        validate_account_name(account)
        abi = await self.ledger.get_abi(account)
        if not abi:
            raise ValidationError(f"account {account} publishes no action schema")
        schema = AbiSchema(account, abi)
        self._schemas[account] = schema
        log.debug("resolved schema for %s (%d actions)", account, len(schema.actions))
        return schema

    async def encode(self, actions: Iterable[Action]) -> List[EncodedAction]:
        actions = list(actions)
        if not actions:
            raise ValidationError("a transaction needs at least one action")
        for account in dict.fromkeys(action.account for action in actions):
            await self.resolve(account)
        encoded: List[EncodedAction] = []
        for action in actions:
            validate_account_name(action.name)
            if not action.authorization:
                raise ValidationError(f"{action.account}::{action.name} has no authorization")
            for level in action.authorization:
                validate_account_name(level.actor)
                validate_account_name(level.permission)
            schema = self._schemas[action.account]
            encoded.append(
                EncodedAction(
                    account=action.account,
                    name=action.name,
                    authorization=list(action.authorization),
                    data=schema.encode_action(action.name, action.data),
                )
            )
        return encoded


class TransactionBuilder:
    def __init__(
        self,
        ledger: LedgerClient,
        resolver: ActionResolver,
        signer: Signer,
        *,
        expire_seconds: int = DEFAULT_EXPIRE_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.signer = signer
        self.expire_seconds = expire_seconds

    async def build(
        self, actions: Sequence[Action], *, signers: Optional[Sequence[Signer]] = None
    ) -> SignedTransaction:
        encoded = await self.resolver.encode(actions)
        info = await self.ledger.get_info()
        header = TransactionHeader.from_chain_info(info, expire_seconds=self.expire_seconds)
        transaction = Transaction(header=header, actions=encoded)
        digest = transaction.signing_digest(info.chain_id)
        summary = [action.describe() for action in actions]
        signatures = []
        for signer in signers or [self.signer]:
            signatures.append(await signer.sign(digest, context=summary))
        return SignedTransaction(transaction=transaction, signatures=signatures)

    async def submit(
        self, actions: Sequence[Action], *, signers: Optional[Sequence[Signer]] = None
    ) -> TransactionResult:
        """Build, sign and push. Errors propagate untouched; no retry here."""
        signed = await self.build(actions, signers=signers)
        response = await self.ledger.push_transaction(signed.to_payload())
        transaction_id = str(response.get("transaction_id") or signed.transaction.transaction_id)
        log.info(
            "committed %s (%s)",
            transaction_id[:12],
            ", ".join(f"{action.account}::{action.name}" for action in actions),
        )
        return TransactionResult(transaction_id=transaction_id, processed=response.get("processed") or {})
