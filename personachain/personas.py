"""Persona records, their stored payloads and the read-side directory."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .ledger import LedgerClient
from .names import persona_account_name
from .store import ContentAddressableStore, is_content_id

log = logging.getLogger(__name__)

PERSONA_INFO_TABLE = "personainfo"
REGISTRY_TABLE = "personas"
AVATAR_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def split_traits(raw: str) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


@dataclass
class PersonaDraft:
    """What a content generator (or a human) proposes for a new persona."""

    name: str
    backstory: str
    traits: List[str] = field(default_factory=list)

    @property
    def account(self) -> str:
        return persona_account_name(self.name)


@dataclass
class PersonaState:
    text: str
    persona: str
    traits: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)
    avatar_cid: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "data": {
                "text": self.text,
                "timestamp": self.timestamp,
                "persona": self.persona,
                "traits": list(self.traits),
                "avatar_cid": self.avatar_cid,
            },
            "contentType": "application/json",
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "PersonaState":
        if not isinstance(payload, dict):
            raise ValidationError("persona state must be an object")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        traits = data.get("traits") or []
        if isinstance(traits, str):
            traits = split_traits(traits)
        return cls(
            text=str(data.get("text") or ""),
            persona=str(data.get("persona") or ""),
            traits=[str(item) for item in traits],
            timestamp=str(data.get("timestamp") or ""),
            avatar_cid=data.get("avatar_cid") or None,
        )


@dataclass
class PersonaRecord:
    account: str
    initial_state_cid: str = ""


def avatar_payload(persona: str, image_data: str) -> Dict[str, Any]:
    return {
        "imageData": image_data,
        "metadata": {"version": AVATAR_VERSION, "personaName": persona, "timestamp": utc_now_iso()},
    }


class PersonaContentGenerator:
    """Opaque collaborator proposing name, backstory and traits."""

    async def generate(self) -> PersonaDraft:
        raise NotImplementedError


class ImageGenerator:
    """Opaque collaborator returning a base64-encoded portrait."""

    async def generate(self, persona: str, backstory: str) -> Optional[str]:
        raise NotImplementedError


class PersonaDirectory:
    def __init__(
        self,
        ledger: LedgerClient,
        store: ContentAddressableStore,
        *,
        registry_contract: str,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.registry_contract = registry_contract

    async def list_personas(self, *, limit: int = 100) -> List[PersonaRecord]:
        result = await self.ledger.get_table_rows(self.registry_contract, REGISTRY_TABLE, limit=limit)
        records = []
        for row in result.rows:
            name = str(row.get("persona_name") or "")
            if not name:
                continue
            records.append(PersonaRecord(account=name, initial_state_cid=str(row.get("initial_state_cid") or "")))
        return records

    async def get_persona(self, name: str) -> PersonaRecord:
        account = persona_account_name(name)
        result = await self.ledger.get_table_rows(account, PERSONA_INFO_TABLE, scope=account, limit=1)
        if not result.rows:
            return PersonaRecord(account=account)
        return PersonaRecord(account=account, initial_state_cid=str(result.rows[0].get("initial_state_cid") or ""))

    async def load_state(self, record: PersonaRecord) -> PersonaState:
        if not is_content_id(record.initial_state_cid):
            raise ValidationError(f"persona {record.account} has no initial state")
        return PersonaState.from_payload(await self.store.get_json(record.initial_state_cid))

    async def avatar(
        self,
        record: PersonaRecord,
        *,
        generator: Optional[ImageGenerator] = None,
    ) -> Optional[str]:
        """Base64 avatar for a persona, memoized for the life of the store."""

        async def _resolve() -> Optional[str]:
            state = await self.load_state(record)
            if state.avatar_cid:
                try:
                    payload = await self.store.get_json(state.avatar_cid)
                except NotFoundError:
                    log.warning("avatar %s for %s not reachable", state.avatar_cid, record.account)
                else:
                    image = payload.get("imageData") if isinstance(payload, dict) else None
                    if image:
                        return str(image)
            if generator is None:
                return None
            return await generator.generate(record.account, state.text)

        return await self.store.memoize(f"avatar:{record.account}", _resolve)
