import json

import pytest
import pytest_asyncio

from personachain.errors import (
    AccountExistsError,
    LedgerRejection,
    PartialProvisioningError,
    ValidationError,
)
from personachain.personas import ImageGenerator, PersonaDraft
from personachain.provisioning import (
    STEP_ORDER,
    ContractArtifacts,
    PersonaProvisioningWorkflow,
    ProvisioningJournal,
    ProvisioningRecord,
    ProvisioningStep,
)

from conftest import REGISTRY

PERSONA = "zeta12345.ai"
ALL_STEPS = [step.value for step in STEP_ORDER]


@pytest.fixture
def journal_path(tmp_path):
    return tmp_path / "state" / "provisioning.json"


@pytest.fixture
def workflow(builder, store, artifacts, policy, journal_path):
    return PersonaProvisioningWorkflow(
        builder,
        store,
        artifacts=artifacts,
        registry_contract=REGISTRY,
        policy=policy,
        journal=ProvisioningJournal(journal_path),
    )


@pytest_asyncio.fixture
async def state_cid(store):
    return await store.put_json({"data": {"text": "A lighthouse keeper.", "persona": PERSONA}})


def _assert_fully_provisioned(node, artifacts, state_cid, signer):
    assert node.state["accounts"][PERSONA] == signer.public_key
    assert node.state["code"][PERSONA] == artifacts.code_hash
    assert sorted(a["name"] for a in node.state["abis"][PERSONA]["actions"]) == [
        "finalizemsg",
        "initpersona",
        "submitmsg",
    ]
    assert node.rows("sysio.roa", PERSONA, "policies")[0]["issuer"] == "sysio"
    assert node.rows(REGISTRY, REGISTRY, "personas") == [{"persona_name": PERSONA, "initial_state_cid": state_cid}]
    assert node.rows(PERSONA, PERSONA, "personainfo") == [{"id": 0, "initial_state_cid": state_cid}]


@pytest.mark.asyncio
async def test_provision_runs_all_steps_in_order(node, workflow, artifacts, state_cid, signer, journal_path):
    record = await workflow.provision("zeta12345", state_cid)

    assert record.status == "complete"
    assert record.completed == ALL_STEPS
    assert len(node.pushed) == 5
    assert [[a["name"] for a in trx["actions"]] for trx in node.pushed] == [
        ["newaccount"],
        ["setcode", "setabi"],
        ["addpolicy"],
        ["addpersona"],
        ["initpersona"],
    ]
    _assert_fully_provisioned(node, artifacts, state_cid, signer)

    reloaded = ProvisioningJournal(journal_path).get(PERSONA)
    assert reloaded.status == "complete"
    assert reloaded.completed == ALL_STEPS


@pytest.mark.asyncio
async def test_second_provision_reports_existing_account(node, workflow, state_cid):
    await workflow.provision(PERSONA, state_cid)

    with pytest.raises(AccountExistsError) as info:
        await workflow.provision(PERSONA, state_cid)
    assert isinstance(info.value, LedgerRejection)
    assert info.value.already_exists
    assert len(node.pushed) == 5
    assert workflow.journal.get(PERSONA).status == "complete"


@pytest.mark.asyncio
async def test_first_step_failure_is_not_partial(node, workflow, state_cid):
    node.reject_next("sysio", "newaccount", "assertion failure: creator has no ram")
    with pytest.raises(LedgerRejection) as info:
        await workflow.provision(PERSONA, state_cid)
    assert not isinstance(info.value, (AccountExistsError, PartialProvisioningError))
    assert workflow.journal.get(PERSONA) is None


@pytest.mark.asyncio
async def test_partial_failure_then_resume(node, workflow, artifacts, state_cid, signer, caplog):
    node.reject_next("sysio.roa", "addpolicy", "assertion failure: issuer out of quota")

    with caplog.at_level("ERROR"), pytest.raises(PartialProvisioningError) as info:
        await workflow.provision(PERSONA, state_cid)
    assert info.value.completed == ["create_account", "deploy_contract"]
    assert info.value.failed_step == "grant_policy"
    assert isinstance(info.value.cause, LedgerRejection)
    assert "partially provisioned" in caplog.text

    record = workflow.journal.get(PERSONA)
    assert record.status == "failed"
    assert record.next_step is ProvisioningStep.GRANT_POLICY

    resumed = await workflow.resume("zeta12345")
    assert resumed.status == "complete"
    assert resumed.completed == ALL_STEPS
    # only the three remaining steps were submitted again
    assert len(node.pushed) == 2 + 3
    _assert_fully_provisioned(node, artifacts, state_cid, signer)


@pytest.mark.asyncio
async def test_resume_checks_ledger_before_executing(node, builder, store, artifacts, workflow, state_cid, tmp_path):
    await workflow.provision(PERSONA, state_cid)
    pushed = len(node.pushed)

    # a journal that lost track of everything the ledger already has
    stale = ProvisioningJournal(tmp_path / "other" / "provisioning.json")
    stale.put(ProvisioningRecord(persona=PERSONA, initial_state_cid=state_cid))
    fresh = PersonaProvisioningWorkflow(
        builder, store, artifacts=artifacts, registry_contract=REGISTRY, journal=stale
    )

    record = await fresh.resume(PERSONA)
    assert record.status == "complete"
    assert record.completed == ALL_STEPS
    assert set(record.transactions.values()) == {""}
    assert len(node.pushed) == pushed


@pytest.mark.asyncio
async def test_abandon_reports_orphans(node, workflow, state_cid):
    node.reject_next(REGISTRY, "addpersona", "assertion failure: registry closed")
    with pytest.raises(PartialProvisioningError):
        await workflow.provision(PERSONA, state_cid)

    record = await workflow.abandon(PERSONA)
    assert record.status == "abandoned"
    assert record.completed == ["create_account", "deploy_contract", "grant_policy"]
    with pytest.raises(ValidationError, match="abandoned"):
        await workflow.resume(PERSONA)


@pytest.mark.asyncio
async def test_resume_and_abandon_need_a_recorded_run(workflow):
    with pytest.raises(ValidationError):
        await workflow.resume(PERSONA)
    with pytest.raises(ValidationError):
        await workflow.abandon(PERSONA)


@pytest.mark.asyncio
async def test_create_persona_uploads_state_and_avatar(node, workflow, store):
    class Portraits(ImageGenerator):
        def __init__(self):
            self.calls = []

        async def generate(self, persona, backstory):
            self.calls.append((persona, backstory))
            return "aW1hZ2U="

    portraits = Portraits()
    draft = PersonaDraft(name="zeta12345", backstory="A lighthouse keeper.", traits=["calm", "wry"])
    record = await workflow.create_persona(draft, image_generator=portraits)

    assert record.status == "complete"
    assert portraits.calls == [(PERSONA, "A lighthouse keeper.")]
    state = await store.get_json(record.initial_state_cid)
    assert state["data"]["text"] == "A lighthouse keeper."
    assert state["data"]["traits"] == ["calm", "wry"]
    avatar = await store.get_json(state["data"]["avatar_cid"])
    assert avatar["imageData"] == "aW1hZ2U="
    assert avatar["metadata"]["personaName"] == PERSONA
    assert node.rows(PERSONA, PERSONA, "personainfo")[0]["initial_state_cid"] == record.initial_state_cid


def test_artifacts_from_files(tmp_path):
    wasm = tmp_path / "persona.wasm"
    abi = tmp_path / "persona.abi"
    wasm.write_bytes(b"\x00asm")
    abi.write_text(json.dumps({"version": "eosio::abi/1.1", "structs": []}), encoding="utf-8")
    artifacts = ContractArtifacts.from_files(wasm, abi)
    assert artifacts.wasm == b"\x00asm"
    assert len(artifacts.code_hash) == 64

    with pytest.raises(ValidationError):
        ContractArtifacts.from_files(tmp_path / "missing.wasm", abi)
    abi.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValidationError):
        ContractArtifacts.from_files(wasm, abi)
