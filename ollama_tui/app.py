from __future__ import annotations

import argparse
import logging
import os
import queue
import sys
import threading
from dataclasses import dataclass

from dotenv import load_dotenv
from rich.console import Console
from rich.live import Live

from .catalog import CatalogClient
from .client import DEFAULT_OLLAMA_HOST, OllamaClient, sanitize_ollama_host
from .dispatcher import TaskDispatcher
from .handlers import handle_key, refresh_models
from .keys import key_input_worker
from .models import LIBRARY_BASE_URL
from .render import build_frame
from .state import ApplicationState, StateStore, append_activity, expire_status, is_busy

BUSY_POLL_SECONDS = 0.05
IDLE_POLL_SECONDS = 0.5
DEFAULT_TIMEOUT_SECONDS = 120
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

log = logging.getLogger(__name__)


@dataclass
class AppConfig:
    ollama_host: str
    timeout_seconds: int
    stream: bool
    catalog_url: str
    log_file: str


def parse_bool_arg(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError("expected boolean: true|false|1|0|yes|no|on|off")


def parse_args(argv: list[str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        description=(
            "Terminal client for a local Ollama server: chat with installed models, "
            "manage them and discover new ones on ollama.com. "
            "Configured through OLLAMA_HOST, OLLAMA_TIMEOUT_SECONDS, "
            "OLLAMA_TUI_STREAM and OLLAMA_TUI_LOG."
        )
    )
    parser.parse_args(argv)

    host = sanitize_ollama_host(os.getenv("OLLAMA_HOST", "")) or DEFAULT_OLLAMA_HOST

    raw_timeout = os.getenv("OLLAMA_TIMEOUT_SECONDS", "").strip()
    timeout_seconds = DEFAULT_TIMEOUT_SECONDS
    if raw_timeout:
        try:
            timeout_seconds = int(raw_timeout)
        except ValueError:
            raise ValueError("OLLAMA_TIMEOUT_SECONDS must be an integer") from None
        if timeout_seconds < 1:
            raise ValueError("OLLAMA_TIMEOUT_SECONDS must be >= 1")

    raw_stream = os.getenv("OLLAMA_TUI_STREAM", "").strip()
    try:
        stream = parse_bool_arg(raw_stream) if raw_stream else True
    except ValueError as exc:
        raise ValueError(f"OLLAMA_TUI_STREAM: {exc}") from None

    return AppConfig(
        ollama_host=host,
        timeout_seconds=timeout_seconds,
        stream=stream,
        catalog_url=LIBRARY_BASE_URL,
        log_file=os.getenv("OLLAMA_TUI_LOG", "").strip(),
    )


def configure_logging(log_file: str) -> None:
    # the terminal belongs to the full-screen UI, so only ever log to a file
    if not log_file:
        return
    logging.basicConfig(filename=log_file, level=logging.INFO, format=LOG_FORMAT)


def build_dispatcher(config: AppConfig, store: StateStore) -> TaskDispatcher:
    return TaskDispatcher(
        store,
        client_factory=lambda: OllamaClient(config.ollama_host, config.timeout_seconds),
        catalog_factory=lambda: CatalogClient(config.catalog_url),
        streaming=config.stream,
    )


def poll_interval(state: ApplicationState) -> float:
    return BUSY_POLL_SECONDS if is_busy(state) else IDLE_POLL_SECONDS


def next_keys(key_queue: queue.Queue[str], timeout: float) -> list[str]:
    try:
        first = key_queue.get(timeout=timeout)
    except queue.Empty:
        return []
    pending = [first]
    while True:
        try:
            pending.append(key_queue.get_nowait())
        except queue.Empty:
            return pending


def process_keys(store: StateStore, dispatcher: TaskDispatcher, pending: list[str]) -> bool:
    for key in pending:
        with store.locked() as state:
            if handle_key(state, key, dispatcher):
                return True
    return False


def run(config: AppConfig, console: Console) -> int:
    store = StateStore()
    dispatcher = build_dispatcher(config, store)
    with store.locked() as state:
        append_activity(state, f"Connecting to {config.ollama_host}. Tab switches views, Ctrl+C quits.")
        refresh_models(state, dispatcher)

    stop_event = threading.Event()
    key_queue: queue.Queue[str] = queue.Queue()
    key_thread = threading.Thread(
        target=key_input_worker,
        args=(key_queue, stop_event),
        daemon=True,
    )
    key_thread.start()
    log.info("started against %s (stream=%s)", config.ollama_host, config.stream)

    tick = 0
    with Live(
        build_frame(store.snapshot(), console.size.width, console.size.height),
        console=console,
        auto_refresh=False,
        screen=True,
        vertical_overflow="crop",
    ) as live:
        try:
            while True:
                with store.locked() as state:
                    interval = poll_interval(state)

                if process_keys(store, dispatcher, next_keys(key_queue, interval)):
                    log.info("exit requested")
                    return 0

                with store.locked() as state:
                    expire_status(state)
                snapshot = store.snapshot()
                tick += 1
                live.update(
                    build_frame(snapshot, console.size.width, console.size.height, tick),
                    refresh=True,
                )
        finally:
            stop_event.set()
            key_thread.join(timeout=2)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except ValueError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    configure_logging(config.log_file)
    try:
        return run(config, console)
    except KeyboardInterrupt:
        console.print("\n[bold]Stopped.[/bold]")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
