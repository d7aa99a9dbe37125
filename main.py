import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from personachain.chat import ChatSynchronizationEngine, PollPolicy
from personachain.config import load_settings
from personachain.ledger import LedgerClient
from personachain.personas import PersonaDirectory
from personachain.signer import LocalKeySigner
from personachain.store import ContentAddressableStore, IpfsHttpBackend
from personachain.transactions import ActionResolver, TransactionBuilder
from transports.console import ConsoleTransport


async def main():
    load_dotenv()
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s :: %(message)s",
    )

    persona = os.getenv("CHAT_PERSONA")
    user = os.getenv("CHAT_USER")
    if not persona or not user or not settings.private_key:
        raise SystemExit("Missing required environment variables.")

    ledger = LedgerClient(settings.ledger_url)
    store = ContentAddressableStore(
        IpfsHttpBackend(settings.ipfs_api_url, gateway_url=settings.ipfs_gateway_url),
        retry_delay=settings.store_retry_delay,
        probe_timeout=settings.store_probe_timeout,
    )
    builder = TransactionBuilder(
        ledger,
        ActionResolver(ledger),
        LocalKeySigner(settings.private_key),
        expire_seconds=settings.expire_seconds,
    )
    directory = PersonaDirectory(ledger, store, registry_contract=settings.registry_contract)
    record = await directory.get_persona(persona)

    engine = ChatSynchronizationEngine(
        persona=record.account,
        user=user,
        ledger=ledger,
        store=store,
        builder=builder,
        pre_state_cid=record.initial_state_cid or None,
        policy=PollPolicy(
            interval=settings.poll_interval,
            backoff=settings.poll_backoff,
            max_interval=settings.poll_max_interval,
            max_attempts=settings.poll_max_attempts,
            max_consecutive_errors=settings.poll_max_errors,
        ),
    )
    console = ConsoleTransport(engine)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    console_task = asyncio.create_task(console.start())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({console_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    await console.stop()
    stop_task.cancel()
    await console_task

    await engine.close()
    await store.close()
    await ledger.close()


if __name__ == "__main__":
    asyncio.run(main())
