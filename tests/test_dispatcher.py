import threading
import unittest

from ollama_tui.dispatcher import TaskDispatcher
from ollama_tui.handlers import handle_key
from ollama_tui import keys
from ollama_tui.models import ChatTurn, ConversationMode, LocalModel, RemoteEntry, View
from ollama_tui.state import ApplicationState, StateStore, begin_model_refresh, begin_search

JOIN_TIMEOUT = 5


def make_model(name):
    return LocalModel(name=name, model=name, size=1, digest="d", modified_at=None)


class FakeClient:
    def __init__(self, **behaviour):
        self.behaviour = behaviour
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def list_models(self):
        result = self.behaviour.get("list_models")
        if isinstance(result, Exception):
            raise result
        return result

    def delete_model(self, name):
        return self.behaviour.get("delete_error", "")

    def chat(self, model, messages):
        return self.behaviour.get("chat", ("", ""))

    def chat_stream(self, model, messages, on_update):
        for text in self.behaviour.get("stream_updates", []):
            on_update(text)
        error = self.behaviour.get("stream_error")
        if isinstance(error, Exception):
            raise error
        return "", error or ""

    def pull_model(self, name):
        return {}, self.behaviour.get("pull_error", "")


class FakeCatalog:
    def __init__(self, results=None, error="", gate=None):
        self.results = results or []
        self.error = error
        self.gate = gate

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None

    def resolve(self, query):
        if self.gate is not None:
            self.gate.wait(JOIN_TIMEOUT)
        return self.results, self.error


class DispatcherTestCase(unittest.TestCase):
    def make_dispatcher(self, client=None, catalog=None, state=None):
        self.store = StateStore(state)
        self.clients = []

        def client_factory():
            instance = client if client is not None else FakeClient()
            self.clients.append(instance)
            return instance

        return TaskDispatcher(
            self.store,
            client_factory=client_factory,
            catalog_factory=lambda: catalog if catalog is not None else FakeCatalog(),
        )

    def join(self, thread):
        thread.join(JOIN_TIMEOUT)
        self.assertFalse(thread.is_alive())


class ListModelsJobTests(DispatcherTestCase):
    def test_success_replaces_models_and_clears_flag(self):
        models = [make_model("a"), make_model("b")]
        dispatcher = self.make_dispatcher(
            FakeClient(list_models={"models": models, "error": "", "unreachable": False})
        )
        with self.store.locked() as state:
            state.model_cursor = 7
            generation = begin_model_refresh(state)

        self.join(dispatcher.refresh_models(generation))

        snapshot = self.store.snapshot()
        self.assertEqual([m.name for m in snapshot.models], ["a", "b"])
        self.assertEqual(snapshot.model_cursor, 1)
        self.assertFalse(snapshot.models_loading)
        self.assertTrue(self.clients[0].closed)

    def test_unreachable_server_sets_persistent_status(self):
        dispatcher = self.make_dispatcher(
            FakeClient(list_models={"models": [], "error": "Failed to connect", "unreachable": True})
        )
        with self.store.locked() as state:
            generation = begin_model_refresh(state)

        self.join(dispatcher.refresh_models(generation))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.status_message, "Failed to connect")
        self.assertTrue(snapshot.status_persistent)
        self.assertFalse(snapshot.models_loading)

    def test_success_clears_connection_warning(self):
        dispatcher = self.make_dispatcher(
            FakeClient(list_models={"models": [], "error": "", "unreachable": False})
        )
        with self.store.locked() as state:
            state.status_message = "Failed to connect"
            state.status_persistent = True
            generation = begin_model_refresh(state)

        self.join(dispatcher.refresh_models(generation))

        self.assertIsNone(self.store.snapshot().status_message)

    def test_unexpected_exception_still_clears_flag(self):
        dispatcher = self.make_dispatcher(FakeClient(list_models=RuntimeError("boom")))
        with self.store.locked() as state:
            generation = begin_model_refresh(state)

        self.join(dispatcher.refresh_models(generation))

        snapshot = self.store.snapshot()
        self.assertFalse(snapshot.models_loading)
        self.assertIn("boom", snapshot.status_message)

    def test_stale_generation_is_dropped(self):
        dispatcher = self.make_dispatcher(
            FakeClient(list_models={"models": [make_model("old")], "error": "", "unreachable": False})
        )
        with self.store.locked() as state:
            stale = begin_model_refresh(state)
            begin_model_refresh(state)

        self.join(dispatcher.refresh_models(stale))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.models, [])
        self.assertTrue(snapshot.models_loading)


class DeleteJobTests(DispatcherTestCase):
    def test_success_removes_model_by_name(self):
        state = ApplicationState(selected_model="b")
        state.models = [make_model("a"), make_model("b")]
        state.model_cursor = 1
        state.deleting.add("b")
        dispatcher = self.make_dispatcher(FakeClient(), state=state)

        self.join(dispatcher.delete_model("b"))

        snapshot = self.store.snapshot()
        self.assertEqual([m.name for m in snapshot.models], ["a"])
        self.assertEqual(snapshot.model_cursor, 0)
        self.assertIsNone(snapshot.selected_model)
        self.assertEqual(snapshot.deleting, set())
        self.assertEqual(snapshot.status_message, "Deleted b")

    def test_model_gone_before_result_is_safe(self):
        state = ApplicationState()
        state.deleting.add("b")
        dispatcher = self.make_dispatcher(FakeClient(), state=state)

        self.join(dispatcher.delete_model("b"))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.models, [])
        self.assertEqual(snapshot.deleting, set())

    def test_failure_reports_and_keeps_model(self):
        state = ApplicationState()
        state.models = [make_model("a")]
        state.deleting.add("a")
        dispatcher = self.make_dispatcher(FakeClient(delete_error="model not found"), state=state)

        self.join(dispatcher.delete_model("a"))

        snapshot = self.store.snapshot()
        self.assertEqual(len(snapshot.models), 1)
        self.assertEqual(snapshot.status_message, "Deleting a failed: model not found")
        self.assertEqual(snapshot.deleting, set())


class ChatJobTests(DispatcherTestCase):
    def test_submit_through_key_handler_round_trip(self):
        dispatcher = self.make_dispatcher(FakeClient(stream_updates=["Hel", "Hello!"]))
        with self.store.locked() as state:
            state.selected_model = "llama3"
            state.input_buffer = "hi"
            state.conversation_mode = ConversationMode.INSERT
            handle_key(state, keys.ENTER, dispatcher)
            self.assertTrue(state.chat_in_flight)

        for thread in threading.enumerate():
            if thread.name == "job-chat-stream":
                self.join(thread)

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.turns, [ChatTurn("user", "hi"), ChatTurn("assistant", "Hello!")])
        self.assertFalse(snapshot.chat_in_flight)

    def test_stream_updates_overwrite_placeholder(self):
        dispatcher = self.make_dispatcher(FakeClient(stream_updates=["He", "Hello"]))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi"), ChatTurn("assistant", "")]
            state.chat_in_flight = True

        self.join(dispatcher.chat_stream("llama3", [{"role": "user", "content": "hi"}]))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.turns[-1], ChatTurn("assistant", "Hello"))
        self.assertFalse(snapshot.chat_in_flight)

    def test_stream_failure_clears_flag_and_reports(self):
        dispatcher = self.make_dispatcher(FakeClient(stream_error="connection refused"))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi"), ChatTurn("assistant", "")]
            state.chat_in_flight = True

        self.join(dispatcher.chat_stream("llama3", []))

        snapshot = self.store.snapshot()
        self.assertFalse(snapshot.chat_in_flight)
        self.assertEqual(snapshot.status_message, "Chat failed: connection refused")
        self.assertEqual(snapshot.turns[-1].content, "Error: connection refused")

    def test_stream_exception_keeps_partial_text(self):
        dispatcher = self.make_dispatcher(FakeClient(stream_updates=["par"], stream_error=RuntimeError("reset")))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi"), ChatTurn("assistant", "")]
            state.chat_in_flight = True

        self.join(dispatcher.chat_stream("llama3", []))

        snapshot = self.store.snapshot()
        self.assertFalse(snapshot.chat_in_flight)
        self.assertEqual(snapshot.turns[-1].content, "par")
        self.assertIn("reset", snapshot.status_message)

    def test_stream_does_not_write_into_user_turn(self):
        dispatcher = self.make_dispatcher(FakeClient(stream_updates=["late"]))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi")]
            state.chat_in_flight = True

        self.join(dispatcher.chat_stream("llama3", []))

        self.assertEqual(self.store.snapshot().turns, [ChatTurn("user", "hi")])

    def test_non_streaming_chat_writes_reply(self):
        dispatcher = self.make_dispatcher(FakeClient(chat=("Hi there", "")))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi"), ChatTurn("assistant", "")]
            state.chat_in_flight = True

        self.join(dispatcher.chat("llama3", []))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.turns[-1].content, "Hi there")
        self.assertFalse(snapshot.chat_in_flight)

    def test_non_streaming_chat_failure_clears_flag(self):
        dispatcher = self.make_dispatcher(FakeClient(chat=("", "boom")))
        with self.store.locked() as state:
            state.turns = [ChatTurn("user", "hi"), ChatTurn("assistant", "")]
            state.chat_in_flight = True

        self.join(dispatcher.chat("llama3", []))

        snapshot = self.store.snapshot()
        self.assertFalse(snapshot.chat_in_flight)
        self.assertEqual(snapshot.status_message, "Chat failed: boom")
        self.assertEqual(snapshot.turns[-1].content, "Error: boom")


class SearchJobTests(DispatcherTestCase):
    def test_results_replace_list_and_clear_flag(self):
        results = [RemoteEntry.from_name("llama3"), RemoteEntry.from_name("phi3")]
        dispatcher = self.make_dispatcher(catalog=FakeCatalog(results))
        with self.store.locked() as state:
            state.search_results = [RemoteEntry.from_name("old")]
            state.search_cursor = 0
            generation = begin_search(state)

        self.join(dispatcher.search("", generation))

        snapshot = self.store.snapshot()
        self.assertEqual([r.name for r in snapshot.search_results], ["llama3", "phi3"])
        self.assertFalse(snapshot.search_in_flight)

    def test_failure_keeps_previous_results(self):
        dispatcher = self.make_dispatcher(catalog=FakeCatalog(error="timed out"))
        with self.store.locked() as state:
            state.search_results = [RemoteEntry.from_name("old")]
            generation = begin_search(state)

        self.join(dispatcher.search("x", generation))

        snapshot = self.store.snapshot()
        self.assertEqual([r.name for r in snapshot.search_results], ["old"])
        self.assertEqual(snapshot.status_message, "Search failed: timed out")
        self.assertFalse(snapshot.search_in_flight)

    def test_stale_search_generation_is_dropped(self):
        dispatcher = self.make_dispatcher(catalog=FakeCatalog([RemoteEntry.from_name("stale")]))
        with self.store.locked() as state:
            stale = begin_search(state)
            begin_search(state)

        self.join(dispatcher.search("", stale))

        snapshot = self.store.snapshot()
        self.assertEqual(snapshot.search_results, [])
        self.assertTrue(snapshot.search_in_flight)

    def test_ui_thread_can_take_lock_while_job_waits_on_network(self):
        gate = threading.Event()
        dispatcher = self.make_dispatcher(catalog=FakeCatalog([RemoteEntry.from_name("a")], gate=gate))
        with self.store.locked() as state:
            state.view = View.SEARCH
            generation = begin_search(state)

        thread = dispatcher.search("", generation)
        acquired = self.store._lock.acquire(timeout=1)
        self.assertTrue(acquired)
        self.store._lock.release()

        gate.set()
        self.join(thread)
        self.assertFalse(self.store.snapshot().search_in_flight)


class PullJobTests(DispatcherTestCase):
    def test_success_schedules_model_refresh(self):
        client = FakeClient(list_models={"models": [make_model("phi3")], "error": "", "unreachable": False})
        dispatcher = self.make_dispatcher(client)
        with self.store.locked() as state:
            state.pulling = "phi3"

        self.join(dispatcher.pull_model("phi3"))
        for thread in threading.enumerate():
            if thread.name == "job-list":
                self.join(thread)

        snapshot = self.store.snapshot()
        self.assertIsNone(snapshot.pulling)
        self.assertEqual([m.name for m in snapshot.models], ["phi3"])
        self.assertFalse(snapshot.models_loading)

    def test_failure_reports(self):
        dispatcher = self.make_dispatcher(FakeClient(pull_error="pull model manifest: file does not exist"))
        with self.store.locked() as state:
            state.pulling = "nope"

        self.join(dispatcher.pull_model("nope"))

        snapshot = self.store.snapshot()
        self.assertIsNone(snapshot.pulling)
        self.assertTrue(snapshot.status_message.startswith("Pulling nope failed"))
        self.assertFalse(snapshot.models_loading)


if __name__ == "__main__":
    unittest.main()
