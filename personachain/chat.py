"""Optimistic chat state reconciled against the ledger's message table.

A sent message is uploaded, submitted as a ledger transaction and then
polled until the persona contract records a response for it. Every
message gets its own poll task by default; ``TrackingMode.SINGLE_SLOT``
keeps the older behaviour where a new send replaces whatever poll was
running.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import (
    PersonaChainError,
    PollExhausted,
    StateTransitionError,
    ValidationError,
)
from .ledger import LedgerClient, TableRows
from .names import persona_account_name, validate_account_name
from .personas import PERSONA_INFO_TABLE, utc_now_iso
from .signer import Signer
from .store import ContentAddressableStore, is_content_id, validate_content_id
from .transactions import Action, TransactionBuilder

log = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


class MessageState(str, Enum):
    COMPOSED = "composed"
    UPLOADED = "uploaded"
    SUBMITTED = "submitted"
    PENDING = "pending"
    FINALIZED = "finalized"
    FAILED = "failed"


_TRANSITIONS: Dict[MessageState, frozenset] = {
    MessageState.COMPOSED: frozenset({MessageState.UPLOADED, MessageState.FAILED}),
    MessageState.UPLOADED: frozenset({MessageState.SUBMITTED, MessageState.FAILED}),
    MessageState.SUBMITTED: frozenset({MessageState.PENDING, MessageState.FAILED}),
    MessageState.PENDING: frozenset({MessageState.FINALIZED, MessageState.FAILED}),
    MessageState.FINALIZED: frozenset(),
    MessageState.FAILED: frozenset(),
}

_PATH_TO_PENDING = [
    MessageState.COMPOSED,
    MessageState.UPLOADED,
    MessageState.SUBMITTED,
    MessageState.PENDING,
]


class TrackingMode(str, Enum):
    PER_MESSAGE = "per_message"
    SINGLE_SLOT = "single_slot"


@dataclass
class ChatMessage:
    author: str
    persona: str
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utc_now_iso)
    content_cid: Optional[str] = None
    pre_state_cid: str = ""
    post_state_cid: Optional[str] = None
    response: Optional[str] = None
    transaction_id: Optional[str] = None
    ledger_key: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    state: MessageState = MessageState.COMPOSED
    history: List[MessageState] = field(default_factory=lambda: [MessageState.COMPOSED])

    @property
    def finalized(self) -> bool:
        return self.state is MessageState.FINALIZED

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, state: MessageState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise StateTransitionError(f"message {self.id}: {self.state.value} -> {state.value} not allowed")
        self.state = state
        self.history.append(state)

    def payload(self) -> Dict[str, Any]:
        return {
            "data": {
                "text": self.text,
                "timestamp": self.created_at,
                "persona": self.persona,
                "user": self.author,
                "traits": [],
            },
            "contentType": "application/json",
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "persona": self.persona,
            "text": self.text,
            "created_at": self.created_at,
            "content_cid": self.content_cid,
            "pre_state_cid": self.pre_state_cid,
            "post_state_cid": self.post_state_cid,
            "finalized": self.finalized,
            "response": self.response,
            "state": self.state.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class PollPolicy:
    """How long and how often a pending message is polled.

    ``None`` for ``max_attempts``, ``deadline`` or ``max_consecutive_errors``
    removes that bound.
    """

    interval: float = 3.0
    backoff: float = 1.5
    max_interval: float = 30.0
    max_attempts: Optional[int] = 120
    deadline: Optional[float] = None
    max_consecutive_errors: Optional[int] = 3

    def __post_init__(self) -> None:
        if self.interval <= 0 or self.max_interval < self.interval:
            raise ValidationError("poll interval must be positive and not exceed max_interval")
        if self.backoff < 1.0:
            raise ValidationError("poll backoff must be >= 1.0")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if self.max_consecutive_errors is not None and self.max_consecutive_errors < 1:
            raise ValidationError("max_consecutive_errors must be at least 1")

    @classmethod
    def legacy(cls, interval: float = 3.0) -> "PollPolicy":
        """Fixed cadence, no attempt cap, no deadline, errors never give up."""
        return cls(
            interval=interval,
            backoff=1.0,
            max_interval=interval,
            max_attempts=None,
            deadline=None,
            max_consecutive_errors=None,
        )

    def delay_for(self, attempt: int) -> float:
        """Pause after the given (1-based) attempt."""
        return min(self.interval * self.backoff ** max(attempt - 1, 0), self.max_interval)


@dataclass
class ChatEvent:
    kind: str  # added | updated | retracted
    message_id: str
    state: MessageState


def _response_text(payload: Any) -> str:
    if isinstance(payload, dict):
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        for key in ("text", "response", "content"):
            if isinstance(data.get(key), str):
                return data[key]
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False)


class ChatSynchronizationEngine:
    def __init__(
        self,
        *,
        persona: str,
        user: str,
        ledger: LedgerClient,
        store: ContentAddressableStore,
        builder: TransactionBuilder,
        pre_state_cid: Optional[str] = None,
        policy: Optional[PollPolicy] = None,
        tracking: TrackingMode = TrackingMode.PER_MESSAGE,
        signers: Optional[Sequence[Signer]] = None,
        query_limit: int = 50,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persona = persona_account_name(persona)
        self.user = validate_account_name(user)
        self.ledger = ledger
        self.store = store
        self.builder = builder
        self.pre_state_cid = pre_state_cid
        self.policy = policy or PollPolicy()
        self.tracking = TrackingMode(tracking)
        self.signers = list(signers) if signers else None
        self.query_limit = query_limit
        self._sleep = sleep
        self._clock = clock
        self._visible: List[ChatMessage] = []
        self._index: Dict[str, ChatMessage] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._slot: Optional[str] = None
        self._events: List[ChatEvent] = []
        self._closed = False

    # -- read side -----------------------------------------------------

    def messages(self) -> List[ChatMessage]:
        return list(self._visible)

    def get(self, message_id: str) -> Optional[ChatMessage]:
        return self._index.get(message_id)

    def tracked_ids(self) -> List[str]:
        return [message_id for message_id, task in self._tasks.items() if not task.done()]

    def drain_events(self) -> List[ChatEvent]:
        events, self._events = self._events, []
        return events

    # -- send ----------------------------------------------------------

    async def send(self, text: str) -> ChatMessage:
        """Upload, submit and start tracking one outgoing message.

        The message is shown once its content is stored and is retracted
        again if the upload or the submission fails; the error propagates.
        """
        if self._closed:
            raise StateTransitionError("conversation is closed")
        text = (text or "").strip()
        if not text:
            raise ValidationError("message text is empty")
        if self.tracking is TrackingMode.SINGLE_SLOT and self._slot is not None:
            self._stop(self._slot, reason="superseded by a new send")
        message = ChatMessage(author=self.user, persona=self.persona, text=text)
        self._index[message.id] = message
        try:
            message.pre_state_cid = await self._pre_state()
            message.content_cid = await self.store.put_json(message.payload())
            message.advance(MessageState.UPLOADED)
            self._show(message)
            result = await self.builder.submit([self._submit_action(message)], signers=self.signers)
            message.transaction_id = result.transaction_id
            message.advance(MessageState.SUBMITTED)
        except (Exception, asyncio.CancelledError) as exc:
            self._retract(message, exc)
            raise
        message.advance(MessageState.PENDING)
        self._emit("updated", message)
        self._track(message)
        return message

    def _submit_action(self, message: ChatMessage) -> Action:
        return Action.of(
            self.persona,
            "submitmsg",
            self.persona,
            {
                "account_name": self.user,
                "pre_state_cid": message.pre_state_cid,
                "msg_cid": message.content_cid,
                "full_convo_history_cid": message.content_cid,
            },
        )

    async def _pre_state(self) -> str:
        if not self.pre_state_cid:
            result = await self.ledger.get_table_rows(self.persona, PERSONA_INFO_TABLE, scope=self.persona, limit=1)
            cid = str(result.rows[0].get("initial_state_cid") or "") if result.rows else ""
            if not is_content_id(cid):
                raise ValidationError(f"persona {self.persona} has not been initialized")
            self.pre_state_cid = cid
        return validate_content_id(self.pre_state_cid)

    def _show(self, message: ChatMessage) -> None:
        self._visible.append(message)
        self._emit("added", message)

    def _retract(self, message: ChatMessage, exc: BaseException) -> None:
        message.error = str(exc) or type(exc).__name__
        message.advance(MessageState.FAILED)
        if message in self._visible:
            self._visible.remove(message)
            self._emit("retracted", message)
        log.warning("retracted message %s: %s", message.id[:8], message.error)

    def _emit(self, kind: str, message: ChatMessage) -> None:
        self._events.append(ChatEvent(kind=kind, message_id=message.id, state=message.state))

    # -- polling -------------------------------------------------------

    def _track(self, message: ChatMessage) -> None:
        if self.tracking is TrackingMode.SINGLE_SLOT and self._slot is not None:
            self._stop(self._slot, reason="slot reused")
        task = asyncio.ensure_future(self._poll_loop(message))
        self._tasks[message.id] = task
        task.add_done_callback(lambda _: self._untrack(message.id, task))
        if self.tracking is TrackingMode.SINGLE_SLOT:
            self._slot = message.id

    def _untrack(self, message_id: str, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.error("poll task for %s crashed", message_id[:8], exc_info=task.exception())
        if self._tasks.get(message_id) is task:
            del self._tasks[message_id]
        if self._slot == message_id:
            self._slot = None

    def _stop(self, message_id: str, *, reason: str) -> bool:
        task = self._tasks.pop(message_id, None)
        if self._slot == message_id:
            self._slot = None
        if task is None or task.done():
            return False
        task.cancel()
        log.info("stopped polling %s (%s)", message_id[:8], reason)
        return True

    def cancel(self, message_id: str) -> bool:
        """Stop polling one message; it stays pending."""
        return self._stop(message_id, reason="cancelled")

    async def join(self) -> None:
        """Wait until every running poll task has ended."""
        while True:
            tasks = [task for task in self._tasks.values() if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        for message_id in list(self._tasks):
            self._stop(message_id, reason="conversation closed")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_loop(self, message: ChatMessage) -> None:
        policy = self.policy
        started = self._clock()
        errors = 0
        attempt = 0
        while message.state is MessageState.PENDING:
            attempt += 1
            message.attempts = attempt
            try:
                rows = await self._query()
                if await self._reconcile(message, rows):
                    return
                errors = 0
            except Exception as exc:
                errors += 1
                log.warning(
                    "poll %d for %s failed (%d in a row): %s",
                    attempt,
                    message.id[:8],
                    errors,
                    exc,
                    exc_info=not isinstance(exc, PersonaChainError),
                )
                if policy.max_consecutive_errors is not None and errors >= policy.max_consecutive_errors:
                    self._fail_pending(message, exc)
                    return
            if policy.max_attempts is not None and attempt >= policy.max_attempts:
                self._fail_pending(message, PollExhausted(f"no response after {attempt} polls"))
                return
            delay = policy.delay_for(attempt)
            if policy.deadline is not None and self._clock() - started + delay > policy.deadline:
                self._fail_pending(message, PollExhausted(f"no response within {policy.deadline:g}s"))
                return
            await self._sleep(delay)

    def _fail_pending(self, message: ChatMessage, exc: Exception) -> None:
        # the message is on the ledger already, so it stays visible
        message.error = str(exc) or type(exc).__name__
        message.advance(MessageState.FAILED)
        self._emit("updated", message)
        log.warning("gave up on message %s: %s", message.id[:8], exc)

    async def _query(self) -> TableRows:
        return await self.ledger.get_table_rows(
            self.persona, MESSAGES_TABLE, scope=self.user, limit=self.query_limit, reverse=True
        )

    async def _reconcile(self, message: ChatMessage, rows: TableRows) -> bool:
        if message.state is not MessageState.PENDING:
            return True
        for row in rows.rows:
            if row.get("msg_cid") != message.content_cid:
                continue
            if message.ledger_key is None and row.get("key") is not None:
                message.ledger_key = int(row["key"])
            response = str(row.get("response") or "")
            if not response:
                return False
            if is_content_id(response):
                response = _response_text(await self.store.get_json(response))
            if message.state is not MessageState.PENDING:
                return True
            message.response = response
            message.post_state_cid = str(row.get("post_state_cid") or "") or None
            message.advance(MessageState.FINALIZED)
            self._emit("updated", message)
            log.info("message %s finalized by %s", message.id[:8], self.persona)
            return True
        return False

    async def poll_once(self, message_id: Optional[str] = None) -> List[ChatMessage]:
        """One query for every pending message (or just one); returns those finalized."""
        if message_id is not None:
            message = self._index.get(message_id)
            if message is None:
                raise ValidationError(f"unknown message {message_id}")
            pending = [message]
        else:
            pending = list(self._index.values())
        pending = [message for message in pending if message.state is MessageState.PENDING]
        if not pending:
            return []
        rows = await self._query()
        finalized = []
        for message in pending:
            if await self._reconcile(message, rows) and message.finalized:
                finalized.append(message)
        return finalized

    # -- history -------------------------------------------------------

    async def load_history(self, *, limit: Optional[int] = None) -> List[ChatMessage]:
        """Rebuild earlier messages of this conversation from ledger rows.

        Rows whose content cannot be fetched are still shown, with empty
        text. Messages without a response yet are tracked like new sends.
        """
        result = await self.ledger.get_table_rows(
            self.persona, MESSAGES_TABLE, scope=self.user, limit=limit or self.query_limit, reverse=True
        )
        known = {message.content_cid for message in self._index.values()}
        loaded: List[ChatMessage] = []
        for row in reversed(result.rows):
            cid = str(row.get("msg_cid") or "")
            if not is_content_id(cid) or cid in known:
                continue
            message = await self._from_row(row, cid)
            self._index[message.id] = message
            loaded.append(message)
            known.add(cid)
        self._visible[:0] = loaded
        for message in loaded:
            self._emit("added", message)
            if message.state is MessageState.PENDING and not self._closed:
                self._track(message)
        log.info("loaded %d earlier messages with %s", len(loaded), self.persona)
        return loaded

    async def _from_row(self, row: Dict[str, Any], cid: str) -> ChatMessage:
        data: Dict[str, Any] = {}
        try:
            payload = await self.store.get_json(cid)
        except PersonaChainError as exc:
            log.warning("message content %s unavailable: %s", cid, exc)
        else:
            if isinstance(payload, dict):
                data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        message = ChatMessage(
            author=str(data.get("user") or data.get("author") or self.user),
            persona=self.persona,
            text=str(data.get("text") or ""),
            id=cid,
            created_at=str(data.get("timestamp") or ""),
            content_cid=cid,
            pre_state_cid=str(row.get("pre_state_cid") or ""),
            ledger_key=int(row["key"]) if row.get("key") is not None else None,
            state=MessageState.PENDING,
            history=list(_PATH_TO_PENDING),
        )
        response = str(row.get("response") or "")
        if response:
            if is_content_id(response):
                try:
                    response = _response_text(await self.store.get_json(response))
                except PersonaChainError as exc:
                    log.warning("response content %s unavailable: %s", response, exc)
            message.response = response
            message.post_state_cid = str(row.get("post_state_cid") or "") or None
            message.advance(MessageState.FINALIZED)
        return message
