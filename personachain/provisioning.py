"""Persona provisioning as a resumable sequence of ledger transactions.

Each step is its own transaction, so a failure part way leaves the earlier
steps committed. Progress is journaled per persona; ``resume`` picks up
after the last journaled step and probes the ledger before re-running
anything, ``abandon`` closes a run that will not be finished.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .abi import pack_abi
from .errors import (
    AccountExistsError,
    LedgerRejection,
    PartialProvisioningError,
    PersonaChainError,
    ValidationError,
)
from .ledger import LedgerClient
from .names import persona_account_name
from .personas import (
    PERSONA_INFO_TABLE,
    REGISTRY_TABLE,
    ImageGenerator,
    PersonaDraft,
    PersonaState,
    avatar_payload,
)
from .signer import Signer
from .store import ContentAddressableStore, validate_content_id
from .transactions import Action, TransactionBuilder

log = logging.getLogger(__name__)

POLICY_TABLE = "policies"


class ProvisioningStep(str, Enum):
    CREATE_ACCOUNT = "create_account"
    DEPLOY_CONTRACT = "deploy_contract"
    GRANT_POLICY = "grant_policy"
    REGISTER = "register"
    INITIALIZE = "initialize"


STEP_ORDER: List[ProvisioningStep] = list(ProvisioningStep)


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


@dataclass
class ContractArtifacts:
    wasm: bytes
    abi: Dict[str, Any]

    @classmethod
    def from_files(cls, wasm_path: Path, abi_path: Path) -> "ContractArtifacts":
        wasm_path, abi_path = Path(wasm_path), Path(abi_path)
        try:
            wasm = wasm_path.read_bytes()
            abi = json.loads(abi_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ValidationError(f"cannot read contract artifacts: {exc}") from exc
        except ValueError as exc:
            raise ValidationError(f"{abi_path} is not a JSON schema") from exc
        if not wasm:
            raise ValidationError(f"{wasm_path} is empty")
        if not isinstance(abi, dict):
            raise ValidationError(f"{abi_path} must hold a JSON object")
        return cls(wasm=wasm, abi=abi)

    @property
    def code_hash(self) -> str:
        return hashlib.sha256(self.wasm).hexdigest()


@dataclass
class ResourcePolicy:
    contract: str = "sysio.roa"
    issuer: str = "sysio"
    net_weight: str = "0.1000 SYS"
    cpu_weight: str = "0.1000 SYS"
    ram_weight: str = "0.1000 SYS"
    time_block: int = 1
    network_gen: int = 0


@dataclass
class ProvisioningRecord:
    persona: str
    initial_state_cid: str
    completed: List[str] = field(default_factory=list)
    transactions: Dict[str, str] = field(default_factory=dict)
    status: str = RunStatus.IN_PROGRESS.value
    error: str = ""
    updated_at: float = field(default_factory=time.time)

    @property
    def next_step(self) -> Optional[ProvisioningStep]:
        for step in STEP_ORDER:
            if step.value not in self.completed:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persona": self.persona,
            "initial_state_cid": self.initial_state_cid,
            "completed": list(self.completed),
            "transactions": dict(self.transactions),
            "status": self.status,
            "error": self.error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "ProvisioningRecord":
        known = {step.value for step in STEP_ORDER}
        return cls(
            persona=str(item["persona"]),
            initial_state_cid=str(item.get("initial_state_cid") or ""),
            completed=[str(step) for step in item.get("completed") or [] if step in known],
            transactions={str(k): str(v) for k, v in (item.get("transactions") or {}).items()},
            status=str(item.get("status") or RunStatus.IN_PROGRESS.value),
            error=str(item.get("error") or ""),
            updated_at=float(item.get("updated_at") or time.time()),
        )


class ProvisioningJournal:
    """Per-persona provisioning progress, persisted as JSON when given a path."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self._records: Dict[str, ProvisioningRecord] = {}
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as exc:  # pragma: no cover - defensive
            log.warning("failed to load provisioning journal: %s", exc)
            return
        if not isinstance(payload, list):
            return
        for item in payload:
            if not isinstance(item, dict) or not item.get("persona"):
                continue
            record = ProvisioningRecord.from_dict(item)
            self._records[record.persona] = record

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.write_text(
                json.dumps([record.to_dict() for record in self._records.values()], ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except Exception as exc:  # pragma: no cover - disk failures logged
            log.warning("failed to persist provisioning journal: %s", exc)

    def get(self, persona: str) -> Optional[ProvisioningRecord]:
        return self._records.get(persona)

    def put(self, record: ProvisioningRecord) -> None:
        record.updated_at = time.time()
        self._records[record.persona] = record
        self._save()

    def remove(self, persona: str) -> None:
        if self._records.pop(persona, None) is not None:
            self._save()

    def records(self) -> List[ProvisioningRecord]:
        return list(self._records.values())


def single_key_authority(public_key: str) -> Dict[str, Any]:
    return {"threshold": 1, "keys": [{"key": public_key, "weight": 1}], "accounts": [], "waits": []}


class PersonaProvisioningWorkflow:
    def __init__(
        self,
        builder: TransactionBuilder,
        store: ContentAddressableStore,
        *,
        artifacts: ContractArtifacts,
        registry_contract: str,
        policy: Optional[ResourcePolicy] = None,
        system_account: str = "sysio",
        journal: Optional[ProvisioningJournal] = None,
        registry_signer: Optional[Signer] = None,
    ) -> None:
        self.builder = builder
        self.ledger: LedgerClient = builder.ledger
        self.store = store
        self.artifacts = artifacts
        self.registry_contract = registry_contract
        self.policy = policy or ResourcePolicy()
        self.system_account = system_account
        self.journal = journal or ProvisioningJournal()
        self.registry_signer = registry_signer

    async def create_persona(
        self,
        draft: PersonaDraft,
        *,
        image_generator: Optional[ImageGenerator] = None,
    ) -> ProvisioningRecord:
        """Upload the avatar and initial state, then provision the account."""
        account = draft.account
        avatar_cid = None
        if image_generator is not None:
            image = await self.store.memoize(
                f"avatar:{account}", lambda: image_generator.generate(account, draft.backstory)
            )
            if image:
                avatar_cid = await self.store.put_json(avatar_payload(account, image))
            else:
                log.warning("no avatar generated for %s", account)
        state = PersonaState(text=draft.backstory, persona=account, traits=list(draft.traits), avatar_cid=avatar_cid)
        initial_state_cid = await self.store.put_json(state.to_payload())
        return await self.provision(account, initial_state_cid)

    async def provision(self, name: str, initial_state_cid: str) -> ProvisioningRecord:
        """Run every step from account creation onwards.

        An account that already exists fails the first step with
        ``AccountExistsError``; nothing is journaled for that attempt, so an
        earlier run's record is left intact.
        """
        account = persona_account_name(name)
        validate_content_id(initial_state_cid)
        record = ProvisioningRecord(persona=account, initial_state_cid=initial_state_cid)
        log.info("provisioning persona %s", account)
        return await self._run(record, check_first=False)

    async def resume(self, name: str) -> ProvisioningRecord:
        account = persona_account_name(name)
        record = self.journal.get(account)
        if record is None:
            raise ValidationError(f"no provisioning run recorded for {account}")
        if record.status == RunStatus.COMPLETE.value:
            return record
        if record.status == RunStatus.ABANDONED.value:
            raise ValidationError(f"provisioning of {account} was abandoned")
        log.info("resuming %s at %s", account, record.next_step.value if record.next_step else "end")
        return await self._run(record, check_first=True)

    async def abandon(self, name: str) -> ProvisioningRecord:
        """Close an unfinished run and report what it left on the ledger."""
        account = persona_account_name(name)
        record = self.journal.get(account)
        if record is None:
            raise ValidationError(f"no provisioning run recorded for {account}")
        if record.status == RunStatus.COMPLETE.value:
            raise ValidationError(f"{account} is fully provisioned")
        record.status = RunStatus.ABANDONED.value
        self.journal.put(record)
        if record.completed:
            log.warning("abandoned %s; orphaned on ledger: %s", account, ", ".join(record.completed))
        else:
            log.info("abandoned %s before any step committed", account)
        return record

    async def _run(self, record: ProvisioningRecord, *, check_first: bool) -> ProvisioningRecord:
        for step in STEP_ORDER:
            if step.value in record.completed:
                continue
            try:
                if check_first and await self._already_applied(step, record):
                    log.info("%s: %s already on ledger", record.persona, step.value)
                    transaction_id = ""
                else:
                    transaction_id = await self._execute(step, record, tolerate_existing=check_first)
            except PersonaChainError as exc:
                failure = self._failure(record, step, exc)
                if failure is exc:
                    raise
                raise failure from exc
            record.completed.append(step.value)
            record.transactions[step.value] = transaction_id
            record.status = RunStatus.IN_PROGRESS.value
            record.error = ""
            self.journal.put(record)
            log.info("%s: %s done", record.persona, step.value)
        record.status = RunStatus.COMPLETE.value
        self.journal.put(record)
        log.info("persona %s provisioned", record.persona)
        return record

    def _failure(
        self, record: ProvisioningRecord, step: ProvisioningStep, exc: PersonaChainError
    ) -> PersonaChainError:
        if not record.completed:
            if isinstance(exc, LedgerRejection) and step is ProvisioningStep.CREATE_ACCOUNT and exc.already_exists:
                return AccountExistsError(
                    f"account {record.persona} already exists: {exc.message}",
                    code=exc.code,
                    name=exc.name,
                    details=exc.details,
                )
            return exc
        record.status = RunStatus.FAILED.value
        record.error = str(exc)
        self.journal.put(record)
        log.error(
            "persona %s partially provisioned: %s failed after %s: %s",
            record.persona,
            step.value,
            ", ".join(record.completed),
            exc,
        )
        return PartialProvisioningError(
            record.persona, completed=record.completed, failed_step=step.value, cause=exc
        )

    async def _execute(self, step: ProvisioningStep, record: ProvisioningRecord, *, tolerate_existing: bool) -> str:
        signers: Optional[Sequence[Signer]] = None
        if step is ProvisioningStep.REGISTER and self.registry_signer is not None:
            signers = [self.registry_signer]
        try:
            result = await self.builder.submit(self._actions(step, record), signers=signers)
        except LedgerRejection as exc:
            # steps without a ledger probe are retried blind on resume
            if tolerate_existing and exc.already_exists:
                log.info("%s: %s reported as existing, treating as done", record.persona, step.value)
                return ""
            raise
        if step is ProvisioningStep.DEPLOY_CONTRACT:
            self.builder.resolver.register(record.persona, self.artifacts.abi)
        return result.transaction_id

    def _actions(self, step: ProvisioningStep, record: ProvisioningRecord) -> List[Action]:
        persona = record.persona
        system = self.system_account
        if step is ProvisioningStep.CREATE_ACCOUNT:
            authority = single_key_authority(self.builder.signer.public_key)
            return [
                Action.of(
                    system,
                    "newaccount",
                    system,
                    {"creator": system, "name": persona, "owner": authority, "active": authority},
                )
            ]
        if step is ProvisioningStep.DEPLOY_CONTRACT:
            return [
                Action.of(
                    system,
                    "setcode",
                    persona,
                    {"account": persona, "vmtype": 0, "vmversion": 0, "code": self.artifacts.wasm},
                ),
                Action.of(system, "setabi", persona, {"account": persona, "abi": pack_abi(self.artifacts.abi)}),
            ]
        if step is ProvisioningStep.GRANT_POLICY:
            policy = self.policy
            return [
                Action.of(
                    policy.contract,
                    "addpolicy",
                    policy.issuer,
                    {
                        "owner": persona,
                        "issuer": policy.issuer,
                        "net_weight": policy.net_weight,
                        "cpu_weight": policy.cpu_weight,
                        "ram_weight": policy.ram_weight,
                        "time_block": policy.time_block,
                        "network_gen": policy.network_gen,
                    },
                )
            ]
        if step is ProvisioningStep.REGISTER:
            return [
                Action.of(
                    self.registry_contract,
                    "addpersona",
                    self.registry_contract,
                    {"persona_name": persona, "initial_state_cid": record.initial_state_cid},
                )
            ]
        return [Action.of(persona, "initpersona", persona, {"initial_state_cid": record.initial_state_cid})]

    async def _already_applied(self, step: ProvisioningStep, record: ProvisioningRecord) -> bool:
        persona = record.persona
        if step is ProvisioningStep.CREATE_ACCOUNT:
            return await self.ledger.get_account(persona) is not None
        if step is ProvisioningStep.DEPLOY_CONTRACT:
            return await self.ledger.get_code_hash(persona) == self.artifacts.code_hash
        if step is ProvisioningStep.GRANT_POLICY:
            result = await self.ledger.get_table_rows(self.policy.contract, POLICY_TABLE, scope=persona)
            return any(row.get("owner") == persona for row in result.rows)
        if step is ProvisioningStep.REGISTER:
            result = await self.ledger.get_table_rows(
                self.registry_contract,
                REGISTRY_TABLE,
                key_type="name",
                lower_bound=persona,
                upper_bound=persona,
            )
            return any(row.get("persona_name") == persona for row in result.rows)
        result = await self.ledger.get_table_rows(persona, PERSONA_INFO_TABLE, scope=persona, limit=1)
        return bool(result.rows)
