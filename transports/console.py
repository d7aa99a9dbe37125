import asyncio
import logging
import sys
from typing import Optional, TextIO

from personachain.chat import ChatEvent, ChatSynchronizationEngine, MessageState
from personachain.errors import PersonaChainError

log = logging.getLogger(__name__)


class ConsoleTransport:
    """Line-oriented chat with one persona over stdin/stdout."""

    def __init__(
        self,
        engine: ChatSynchronizationEngine,
        *,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        refresh: float = 1.0,
    ):
        self.engine = engine
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.refresh = refresh
        self._stop_event = asyncio.Event()

    def _write(self, text: str) -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    async def handle_line(self, line: str) -> Optional[str]:
        text = line.strip()
        if not text:
            return None
        if text in ("/quit", "/exit"):
            self._stop_event.set()
            return None
        if text == "/history":
            loaded = await self.engine.load_history()
            lines = [self._render(message.id) for message in loaded]
            return "\n".join(lines) if lines else "(no earlier messages)"
        if text == "/status":
            tracked = self.engine.tracked_ids()
            return f"{len(self.engine.messages())} messages, polling {len(tracked)}"
        if text.startswith("/cancel"):
            parts = text.split(maxsplit=1)
            if len(parts) < 2:
                return "Provide the message id to stop polling."
            matches = [mid for mid in self.engine.tracked_ids() if mid.startswith(parts[1].strip())]
            if not matches:
                return "No polled message with that id."
            self.engine.cancel(matches[0])
            return f"stopped polling {matches[0][:8]}"
        try:
            message = await self.engine.send(text)
        except PersonaChainError as exc:
            log.warning("send failed: %s", exc)
            return f"not sent: {exc}"
        return f"[{message.id[:8]}] sent, waiting for {self.engine.persona}"

    def _render(self, message_id: str) -> str:
        message = self.engine.get(message_id)
        if message is None:
            return ""
        line = f"[{message.id[:8]}] {message.author}: {message.text}"
        if message.response:
            line += f"\n[{message.id[:8]}] {message.persona}: {message.response}"
        elif message.state is MessageState.FAILED:
            line += f"\n[{message.id[:8]}] failed: {message.error}"
        return line

    def _deliver_events(self) -> None:
        for event in self.engine.drain_events():
            if not isinstance(event, ChatEvent) or event.kind != "updated":
                continue
            message = self.engine.get(event.message_id)
            if message is None:
                continue
            if event.state is MessageState.FINALIZED:
                self._write(f"[{message.id[:8]}] {message.persona}: {message.response}")
            elif event.state is MessageState.FAILED:
                self._write(f"[{message.id[:8]}] no response: {message.error}")

    async def _read_lines(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            line = await loop.run_in_executor(None, self.stdin.readline)
            if not line:
                self._stop_event.set()
                return
            reply = await self.handle_line(line)
            if reply:
                self._write(reply)
            self._deliver_events()

    async def _pump_events(self) -> None:
        while not self._stop_event.is_set():
            self._deliver_events()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.refresh)
            except asyncio.TimeoutError:
                continue

    async def start(self):
        self._write(f"chatting with {self.engine.persona} as {self.engine.user}; /quit to leave")
        reader = asyncio.ensure_future(self._read_lines())
        pump = asyncio.ensure_future(self._pump_events())
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            reader.cancel()
            pump.cancel()
            await asyncio.gather(reader, pump, return_exceptions=True)
            self._deliver_events()

    async def stop(self):
        self._stop_event.set()
