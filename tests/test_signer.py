import asyncio
import hashlib

import pytest

from personachain.errors import SigningRejected, ValidationError
from personachain.signer import (
    DelegatedSigner,
    LocalKeySigner,
    SigningRequest,
    public_key_bytes,
    recover_public_key,
)

DIGEST = hashlib.sha256(b"transaction").digest()


def test_local_signature_recovers_to_signer(signer):
    signature = signer.sign_digest(DIGEST)
    assert signature.startswith("SIG_EM_")
    assert recover_public_key(DIGEST, signature) == signer.public_key
    assert len(public_key_bytes(signer.public_key)) == 33


def test_local_signer_rejects_bad_input(signer):
    with pytest.raises(ValidationError):
        LocalKeySigner("not-a-key")
    with pytest.raises(ValidationError):
        signer.sign_digest(b"short")


@pytest.mark.asyncio
async def test_delegated_signer_passes_context(signer):
    seen = []

    async def wallet(request: SigningRequest):
        seen.append(request)
        return signer.sign_digest(request.digest)

    delegated = DelegatedSigner(wallet, signer.public_key)
    signature = await delegated.sign(DIGEST, context=["zeta12345.ai::submitmsg by zeta12345.ai@active"])
    assert recover_public_key(DIGEST, signature) == signer.public_key
    assert seen[0].summary == ["zeta12345.ai::submitmsg by zeta12345.ai@active"]


@pytest.mark.asyncio
async def test_delegated_signer_decline_and_wrong_key(signer):
    async def declines(request):
        return None

    with pytest.raises(SigningRejected, match="declined"):
        await DelegatedSigner(declines, signer.public_key).sign(DIGEST)

    other = LocalKeySigner.generate()

    async def wrong_key(request):
        return other.sign_digest(request.digest)

    with pytest.raises(SigningRejected, match="different key"):
        await DelegatedSigner(wrong_key, signer.public_key).sign(DIGEST)


@pytest.mark.asyncio
async def test_delegated_signer_wraps_agent_failures(signer):
    async def broken_bridge(request):
        raise ConnectionResetError("wallet bridge closed")

    delegated = DelegatedSigner(broken_bridge, signer.public_key)
    with pytest.raises(SigningRejected, match="wallet bridge closed") as info:
        await delegated.sign(DIGEST)
    assert isinstance(info.value.__cause__, ConnectionResetError)
    assert not delegated.busy


@pytest.mark.asyncio
async def test_delegated_signer_cancel_only_aborts_the_request(signer):
    release = asyncio.Event()

    async def slow_human(request):
        await release.wait()
        return signer.sign_digest(request.digest)

    delegated = DelegatedSigner(slow_human, signer.public_key)
    task = asyncio.ensure_future(delegated.sign(DIGEST))
    await asyncio.sleep(0)
    assert delegated.busy
    delegated.cancel()
    with pytest.raises(SigningRejected, match="cancelled"):
        await task
    assert not delegated.busy

    # the signer stays usable afterwards
    release.set()
    assert recover_public_key(DIGEST, await delegated.sign(DIGEST)) == signer.public_key
