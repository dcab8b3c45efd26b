from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .catalog import CatalogClient
from .client import OllamaClient, short_error
from .models import LocalModel, RemoteEntry
from .state import (
    ApplicationState,
    StateStore,
    begin_model_refresh,
    clamp_index,
    clear_status,
    is_current_generation,
    set_status,
)

log = logging.getLogger(__name__)


class TaskDispatcher:
    """Runs each network operation on its own short-lived daemon thread.

    Callers set the matching in-flight flag under the state lock before
    dispatching; the job clears it when it writes its outcome. Methods never
    take the lock themselves, so they are safe to call while holding it.
    """

    def __init__(
        self,
        store: StateStore,
        client_factory: Callable[[], OllamaClient],
        catalog_factory: Callable[[], CatalogClient],
        streaming: bool = True,
    ):
        self.store = store
        self.client_factory = client_factory
        self.catalog_factory = catalog_factory
        self.streaming = streaming

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        log.info("dispatch %s", name)
        thread = threading.Thread(target=target, args=args, name=f"job-{name}", daemon=True)
        thread.start()
        return thread

    def refresh_models(self, generation: int) -> threading.Thread:
        return self._spawn("list", self._list_models_job, generation)

    def delete_model(self, name: str) -> threading.Thread:
        return self._spawn("delete", self._delete_model_job, name)

    def chat(self, model: str, messages: list[dict[str, str]]) -> threading.Thread:
        return self._spawn("chat", self._chat_job, model, messages)

    def chat_stream(self, model: str, messages: list[dict[str, str]]) -> threading.Thread:
        return self._spawn("chat-stream", self._chat_stream_job, model, messages)

    def search(self, query: str, generation: int) -> threading.Thread:
        return self._spawn("search", self._search_job, query, generation)

    def pull_model(self, name: str) -> threading.Thread:
        return self._spawn("pull", self._pull_model_job, name)

    def _list_models_job(self, generation: int) -> None:
        models: list[LocalModel] = []
        error = ""
        unreachable = False
        try:
            with self.client_factory() as client:
                result = client.list_models()
            models = result["models"]
            error = result["error"]
            unreachable = result["unreachable"]
        except Exception as exc:
            log.exception("model listing failed")
            error = short_error(exc)

        with self.store.locked() as state:
            if not is_current_generation(state, "models", generation):
                log.info("dropping stale model list (generation %s)", generation)
                return
            try:
                if error:
                    message = error if unreachable else f"Listing models failed: {error}"
                    set_status(state, message, persistent=unreachable)
                else:
                    state.models = models
                    state.model_cursor = clamp_index(state.model_cursor, state.models)
                    if state.status_persistent:
                        clear_status(state)
            finally:
                state.models_loading = False
        log.info("model list: %d models, error=%r", len(models), error)

    def _delete_model_job(self, name: str) -> None:
        error = ""
        try:
            with self.client_factory() as client:
                error = client.delete_model(name)
        except Exception as exc:
            log.exception("delete %s failed", name)
            error = short_error(exc)

        with self.store.locked() as state:
            try:
                if error:
                    set_status(state, f"Deleting {name} failed: {error}")
                else:
                    remove_model(state, name)
                    set_status(state, f"Deleted {name}")
            finally:
                state.deleting.discard(name)
        log.info("delete %s: error=%r", name, error)

    def _chat_job(self, model: str, messages: list[dict[str, str]]) -> None:
        text = ""
        error = ""
        try:
            with self.client_factory() as client:
                text, error = client.chat(model, messages)
        except Exception as exc:
            log.exception("chat with %s failed", model)
            error = short_error(exc)

        with self.store.locked() as state:
            try:
                if error:
                    fail_chat(state, error)
                else:
                    write_assistant(state, text)
            finally:
                state.chat_in_flight = False

    def _chat_stream_job(self, model: str, messages: list[dict[str, str]]) -> None:
        error = ""
        try:
            with self.client_factory() as client:
                _, error = client.chat_stream(model, messages, self._on_stream_update)
        except Exception as exc:
            log.exception("streamed chat with %s failed", model)
            error = short_error(exc)

        with self.store.locked() as state:
            try:
                if error:
                    fail_chat(state, error)
            finally:
                state.chat_in_flight = False

    def _on_stream_update(self, text: str) -> None:
        with self.store.locked() as state:
            write_assistant(state, text)

    def _search_job(self, query: str, generation: int) -> None:
        results: list[RemoteEntry] = []
        error = ""
        try:
            with self.catalog_factory() as catalog:
                results, error = catalog.resolve(query)
        except Exception as exc:
            log.exception("catalog search %r failed", query)
            error = short_error(exc)

        with self.store.locked() as state:
            if not is_current_generation(state, "search", generation):
                return
            try:
                if error:
                    set_status(state, f"Search failed: {error}")
                else:
                    state.search_results = results
                    state.search_cursor = 0
            finally:
                state.search_in_flight = False
        log.info("search %r: %d results, error=%r", query, len(results), error)

    def _pull_model_job(self, name: str) -> None:
        error = ""
        try:
            with self.client_factory() as client:
                _, error = client.pull_model(name)
        except Exception as exc:
            log.exception("pull %s failed", name)
            error = short_error(exc)

        generation = None
        with self.store.locked() as state:
            try:
                if error:
                    set_status(state, f"Pulling {name} failed: {error}")
                else:
                    set_status(state, f"Pulled {name}")
                    generation = begin_model_refresh(state)
            finally:
                state.pulling = None
        if error:
            log.warning("pull %s failed: %s", name, error)
        if generation is not None:
            self.refresh_models(generation)


def write_assistant(state: ApplicationState, text: str) -> None:
    if not state.turns:
        return
    last = state.turns[-1]
    if last.role == "assistant":
        last.content = text


def fail_chat(state: ApplicationState, error: str) -> None:
    set_status(state, f"Chat failed: {error}")
    if state.turns and state.turns[-1].role == "assistant" and not state.turns[-1].content:
        state.turns[-1].content = f"Error: {error}"


def remove_model(state: ApplicationState, name: str) -> None:
    removed = [m for m in state.models if m.name == name]
    state.models = [m for m in state.models if m.name != name]
    state.model_cursor = clamp_index(state.model_cursor, state.models)
    if state.selected_model is None:
        return
    if state.selected_model == name or any(m.identifier == state.selected_model for m in removed):
        state.selected_model = None
