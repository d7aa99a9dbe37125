import pytest

from personachain.errors import ValidationError
from personachain.personas import (
    ImageGenerator,
    PersonaDirectory,
    PersonaDraft,
    PersonaRecord,
    PersonaState,
    avatar_payload,
    split_traits,
)

from conftest import REGISTRY

PERSONA = "zeta12345.ai"


class CountingImages(ImageGenerator):
    def __init__(self, image="cG9ydHJhaXQ="):
        self.image = image
        self.calls = 0

    async def generate(self, persona, backstory):
        self.calls += 1
        return self.image


@pytest.fixture
def directory(ledger, store):
    return PersonaDirectory(ledger, store, registry_contract=REGISTRY)


def test_state_payload_round_trip():
    state = PersonaState(text="A lighthouse keeper.", persona=PERSONA, traits=["calm"], avatar_cid=None)
    payload = state.to_payload()
    assert payload["contentType"] == "application/json"
    assert PersonaState.from_payload(payload) == state
    # older payloads keep traits as a comma separated string
    legacy = PersonaState.from_payload({"data": {"text": "x", "persona": PERSONA, "traits": "calm, wry ,"}})
    assert legacy.traits == ["calm", "wry"]
    with pytest.raises(ValidationError):
        PersonaState.from_payload(["not", "an", "object"])


def test_draft_account_and_traits():
    assert PersonaDraft(name="Zeta12345", backstory="").account == PERSONA
    assert split_traits("") == []
    assert avatar_payload(PERSONA, "aW1n")["metadata"]["personaName"] == PERSONA


@pytest.mark.asyncio
async def test_directory_reads_registry_and_state(node, directory, store):
    state_cid = await store.put_json(PersonaState(text="A lighthouse keeper.", persona=PERSONA).to_payload())
    node.seed_persona(PERSONA, state_cid)
    node.rows(REGISTRY, REGISTRY, "personas").append({"persona_name": PERSONA, "initial_state_cid": state_cid})

    assert await directory.list_personas() == [PersonaRecord(account=PERSONA, initial_state_cid=state_cid)]
    record = await directory.get_persona("zeta12345")
    assert record.initial_state_cid == state_cid
    assert (await directory.load_state(record)).text == "A lighthouse keeper."


@pytest.mark.asyncio
async def test_unknown_persona_has_no_state(directory):
    record = await directory.get_persona("omega1234")
    assert record == PersonaRecord(account="omega1234.ai")
    with pytest.raises(ValidationError):
        await directory.load_state(record)


@pytest.mark.asyncio
async def test_avatar_is_generated_once(node, directory, store):
    state_cid = await store.put_json(PersonaState(text="A lighthouse keeper.", persona=PERSONA).to_payload())
    node.seed_persona(PERSONA, state_cid)
    record = await directory.get_persona(PERSONA)
    images = CountingImages()

    assert await directory.avatar(record, generator=images) == "cG9ydHJhaXQ="
    assert await directory.avatar(record, generator=images) == "cG9ydHJhaXQ="
    assert images.calls == 1


@pytest.mark.asyncio
async def test_stored_avatar_is_preferred(node, directory, store):
    avatar_cid = await store.put_json(avatar_payload(PERSONA, "c3RvcmVk"))
    state_cid = await store.put_json(
        PersonaState(text="A lighthouse keeper.", persona=PERSONA, avatar_cid=avatar_cid).to_payload()
    )
    node.seed_persona(PERSONA, state_cid)
    images = CountingImages()
    assert await directory.avatar(await directory.get_persona(PERSONA), generator=images) == "c3RvcmVk"
    assert images.calls == 0
