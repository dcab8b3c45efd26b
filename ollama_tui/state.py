from __future__ import annotations

import copy
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from .models import ChatTurn, ConversationMode, LocalModel, RemoteEntry, View

STATUS_TTL_SECONDS = 5.0
ACTIVITY_LOG_MAX = 12


@dataclass
class ApplicationState:
    view: View = View.CONVERSATION
    selected_model: str | None = None

    turns: list[ChatTurn] = field(default_factory=list)
    input_buffer: str = ""
    conversation_mode: ConversationMode = ConversationMode.NORMAL
    turn_cursor: int = 0
    follow_tail: bool = True
    chat_in_flight: bool = False

    models: list[LocalModel] = field(default_factory=list)
    model_cursor: int = 0
    models_loading: bool = False
    deleting: set[str] = field(default_factory=set)

    search_query: str = ""
    search_results: list[RemoteEntry] = field(default_factory=list)
    search_cursor: int = 0
    search_in_flight: bool = False
    pulling: str | None = None

    status_message: str | None = None
    status_persistent: bool = False
    status_expires_at: float | None = None
    activity_log: list[str] = field(default_factory=list)
    generations: dict[str, int] = field(default_factory=dict)


class StateStore:
    """The single lock-guarded ApplicationState shared by the UI and jobs."""

    def __init__(self, state: ApplicationState | None = None):
        self._state = state if state is not None else ApplicationState()
        self._lock = threading.Lock()

    @contextmanager
    def locked(self) -> Iterator[ApplicationState]:
        with self._lock:
            yield self._state

    def snapshot(self) -> ApplicationState:
        with self._lock:
            return copy.deepcopy(self._state)


def clamp_index(index: int, items: Sequence[object]) -> int:
    if not items:
        return 0
    if index < 0:
        return 0
    if index >= len(items):
        return len(items) - 1
    return index


def move_cursor(index: int, items: Sequence[object], delta: int) -> int:
    # no wrap; an empty list leaves the cursor where it was
    if not items:
        return index
    return clamp_index(clamp_index(index, items) + delta, items)


def last_index(index: int, items: Sequence[object]) -> int:
    if not items:
        return index
    return len(items) - 1


def set_status(state: ApplicationState, message: str, persistent: bool = False) -> None:
    state.status_message = message
    state.status_persistent = persistent
    state.status_expires_at = None if persistent else time.monotonic() + STATUS_TTL_SECONDS
    append_activity(state, message)


def clear_status(state: ApplicationState) -> None:
    state.status_message = None
    state.status_persistent = False
    state.status_expires_at = None


def expire_status(state: ApplicationState, now: float | None = None) -> None:
    if state.status_message is None or state.status_persistent:
        return
    if state.status_expires_at is None:
        return
    now = time.monotonic() if now is None else now
    if now >= state.status_expires_at:
        clear_status(state)


def append_activity(state: ApplicationState, message: str, max_entries: int = ACTIVITY_LOG_MAX) -> None:
    if not message:
        return
    timestamp = time.strftime("%H:%M:%S")
    state.activity_log.append(f"[{timestamp}] {message}")
    if len(state.activity_log) > max_entries:
        state.activity_log = state.activity_log[-max_entries:]


def next_generation(state: ApplicationState, kind: str) -> int:
    state.generations[kind] = state.generations.get(kind, 0) + 1
    return state.generations[kind]


def is_current_generation(state: ApplicationState, kind: str, generation: int) -> bool:
    return state.generations.get(kind, 0) == generation


def is_busy(state: ApplicationState) -> bool:
    return (
        state.chat_in_flight
        or state.models_loading
        or state.search_in_flight
        or bool(state.deleting)
        or state.pulling is not None
    )


def begin_model_refresh(state: ApplicationState) -> int:
    state.models_loading = True
    return next_generation(state, "models")


def begin_search(state: ApplicationState) -> int:
    state.search_in_flight = True
    return next_generation(state, "search")
