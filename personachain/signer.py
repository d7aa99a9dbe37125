"""Signing capabilities: an in-memory key and a delegated (wallet) agent."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError

from .errors import SigningRejected, ValidationError

log = logging.getLogger(__name__)

KEY_TYPE_EM = 3
PUBLIC_KEY_PREFIX = "PUB_EM_"
SIGNATURE_PREFIX = "SIG_EM_"


def format_public_key(public_key: keys.PublicKey) -> str:
    return PUBLIC_KEY_PREFIX + public_key.to_compressed_bytes().hex()


def public_key_bytes(text: str) -> bytes:
    if not isinstance(text, str) or not text.startswith(PUBLIC_KEY_PREFIX):
        raise ValidationError(f"unsupported public key format: {text!r}")
    try:
        raw = bytes.fromhex(text[len(PUBLIC_KEY_PREFIX):])
    except ValueError as exc:
        raise ValidationError(f"public key is not hex: {text!r}") from exc
    if len(raw) != 33 or raw[0] not in (2, 3):
        raise ValidationError(f"public key must be 33 compressed bytes: {text!r}")
    return raw


def format_signature(signature: keys.Signature) -> str:
    return SIGNATURE_PREFIX + signature.to_bytes().hex()


def signature_bytes(text: str) -> bytes:
    if not isinstance(text, str) or not text.startswith(SIGNATURE_PREFIX):
        raise ValidationError(f"unsupported signature format: {text!r}")
    try:
        raw = bytes.fromhex(text[len(SIGNATURE_PREFIX):])
    except ValueError as exc:
        raise ValidationError(f"signature is not hex: {text!r}") from exc
    if len(raw) != 65:
        raise ValidationError(f"signature must be 65 bytes: {text!r}")
    return raw


def recover_public_key(digest: bytes, signature: str) -> str:
    try:
        sig = keys.Signature(signature_bytes=signature_bytes(signature))
        recovered = sig.recover_public_key_from_msg_hash(digest)
    except (BadSignature, KeyValidationError) as exc:
        raise ValidationError(f"signature does not recover: {exc}") from exc
    return format_public_key(recovered)


@dataclass
class SigningRequest:
    digest: bytes
    public_key: str
    summary: List[str] = field(default_factory=list)


class Signer:
    """Produces a signature over a 32-byte transaction digest."""

    public_key: str = ""

    async def sign(self, digest: bytes, *, context: Optional[List[str]] = None) -> str:
        raise NotImplementedError

    def cancel(self) -> None:
        return None


class LocalKeySigner(Signer):
    """Key held in process memory for the session; signs synchronously."""

    def __init__(self, private_key: str) -> None:
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError, KeyValidationError) as exc:
            raise ValidationError(f"invalid private key: {exc}") from exc
        self._key = keys.PrivateKey(bytes(account.key))
        self.public_key = format_public_key(self._key.public_key)

    @classmethod
    def generate(cls) -> "LocalKeySigner":
        return cls(Account.create().key.hex())

    def sign_digest(self, digest: bytes) -> str:
        if len(digest) != 32:
            raise ValidationError("digest must be 32 bytes")
        return format_signature(self._key.sign_msg_hash(digest))

    async def sign(self, digest: bytes, *, context: Optional[List[str]] = None) -> str:
        return self.sign_digest(digest)


SigningAgent = Callable[[SigningRequest], Awaitable[Optional[str]]]


class DelegatedSigner(Signer):
    """Forwards digests to an external agent, e.g. a wallet awaiting a human.

    No timeout is applied: the agent may take arbitrarily long. ``cancel()``
    aborts the request in flight without touching anything else.
    """

    def __init__(self, agent: SigningAgent, public_key: str, *, verify: bool = True) -> None:
        public_key_bytes(public_key)
        self._agent = agent
        self.public_key = public_key
        self.verify = verify
        self._pending: Optional[asyncio.Future] = None
        self._withdrawn = False

    @property
    def busy(self) -> bool:
        return bool(self._pending and not self._pending.done())

    async def sign(self, digest: bytes, *, context: Optional[List[str]] = None) -> str:
        request = SigningRequest(digest=digest, public_key=self.public_key, summary=list(context or []))
        self._withdrawn = False
        self._pending = asyncio.ensure_future(self._agent(request))
        try:
            signature = await self._pending
        except asyncio.CancelledError:
            if self._withdrawn:
                raise SigningRejected("signing request cancelled") from None
            raise
        except SigningRejected:
            raise
        except Exception as exc:
            raise SigningRejected(f"signing agent failed: {str(exc) or type(exc).__name__}") from exc
        finally:
            self._pending = None
        if not signature:
            raise SigningRejected("signing agent declined the request")
        if self.verify and recover_public_key(digest, signature) != self.public_key:
            raise SigningRejected("signing agent answered with a different key")
        return signature

    def cancel(self) -> None:
        if self._pending and not self._pending.done():
            log.info("cancelling delegated signing request")
            self._withdrawn = True
            self._pending.cancel()
