"""Per-view key handling.

Every handler runs with the state lock already held by the caller and
mutates ``ApplicationState`` directly, or hands work to the dispatcher.
Nothing here touches the terminal, so each view can be driven from tests
with a plain state object and a fake dispatcher.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from . import keys
from .models import ChatTurn, ConversationMode, View, cycle_view
from .state import (
    ApplicationState,
    begin_model_refresh,
    begin_search,
    clamp_index,
    last_index,
    move_cursor,
    set_status,
)

if TYPE_CHECKING:
    from .dispatcher import TaskDispatcher

PAGE_STEP = 5


def handle_key(state: ApplicationState, key: str, dispatcher: "TaskDispatcher") -> bool:
    """Route one key event. Returns True when the user asked to exit."""
    if key == keys.QUIT:
        return True
    if key == keys.TAB:
        state.view = cycle_view(state.view, 1)
        return False
    if key == keys.SHTAB:
        state.view = cycle_view(state.view, -1)
        return False

    if state.view == View.CONVERSATION:
        handle_conversation_key(state, key, dispatcher)
    elif state.view == View.MODEL_LIST:
        handle_model_list_key(state, key, dispatcher)
    elif state.view == View.SEARCH:
        handle_search_key(state, key, dispatcher)
    return False


def _navigate(index: int, items: list, key: str) -> int | None:
    if key in (keys.DOWN, "j"):
        return move_cursor(index, items, 1)
    if key in (keys.UP, "k"):
        return move_cursor(index, items, -1)
    if key == keys.PGDN:
        return move_cursor(index, items, PAGE_STEP)
    if key == keys.PGUP:
        return move_cursor(index, items, -PAGE_STEP)
    if key in (keys.HOME, "g"):
        return 0 if items else index
    if key in (keys.END, "G"):
        return last_index(index, items)
    return None


def handle_conversation_key(state: ApplicationState, key: str, dispatcher: "TaskDispatcher") -> None:
    if state.conversation_mode == ConversationMode.INSERT:
        _handle_insert_key(state, key, dispatcher)
        return

    if key in ("i", "a", keys.ENTER):
        state.conversation_mode = ConversationMode.INSERT
        return
    if key == "d":
        delete_turn(state, state.turn_cursor)
        return

    moved = _navigate(state.turn_cursor, state.turns, key)
    if moved is None:
        return
    state.turn_cursor = moved
    state.follow_tail = bool(state.turns) and moved == len(state.turns) - 1


def _handle_insert_key(state: ApplicationState, key: str, dispatcher: "TaskDispatcher") -> None:
    if key == keys.ESC:
        state.conversation_mode = ConversationMode.NORMAL
    elif key == keys.ENTER:
        submit_chat(state, dispatcher)
    elif key == keys.BACKSPACE:
        state.input_buffer = state.input_buffer[:-1]
    elif keys.is_printable_key(key):
        state.input_buffer += key


def submit_chat(state: ApplicationState, dispatcher: "TaskDispatcher") -> bool:
    text = state.input_buffer
    if not text or not state.selected_model or state.chat_in_flight:
        return False

    state.turns.append(ChatTurn(role="user", content=text))
    messages = [turn.to_message() for turn in state.turns]
    state.turns.append(ChatTurn(role="assistant", content=""))
    state.input_buffer = ""
    state.chat_in_flight = True
    state.turn_cursor = len(state.turns) - 1
    state.follow_tail = True

    if dispatcher.streaming:
        dispatcher.chat_stream(state.selected_model, messages)
    else:
        dispatcher.chat(state.selected_model, messages)
    return True


def delete_turn(state: ApplicationState, index: int) -> bool:
    # the streaming job writes into the last turn, so leave the list alone meanwhile
    if state.chat_in_flight:
        return False
    if index < 0 or index >= len(state.turns):
        return False
    del state.turns[index]
    state.turn_cursor = clamp_index(index, state.turns)
    return True


def handle_model_list_key(state: ApplicationState, key: str, dispatcher: "TaskDispatcher") -> None:
    if key == keys.ENTER:
        select_model(state)
        return
    if key == "d":
        delete_model_at(state, state.model_cursor, dispatcher)
        return
    if key == "r":
        refresh_models(state, dispatcher)
        return

    moved = _navigate(state.model_cursor, state.models, key)
    if moved is not None:
        state.model_cursor = moved


def select_model(state: ApplicationState) -> bool:
    if state.model_cursor < 0 or state.model_cursor >= len(state.models):
        return False
    state.selected_model = state.models[state.model_cursor].identifier
    state.view = View.CONVERSATION
    return True


def delete_model_at(state: ApplicationState, index: int, dispatcher: "TaskDispatcher") -> bool:
    if index < 0 or index >= len(state.models):
        return False
    name = state.models[index].name
    if name in state.deleting:
        return False
    state.deleting.add(name)
    set_status(state, f"Deleting {name}...")
    dispatcher.delete_model(name)
    return True


def refresh_models(state: ApplicationState, dispatcher: "TaskDispatcher") -> None:
    generation = begin_model_refresh(state)
    dispatcher.refresh_models(generation)


def handle_search_key(state: ApplicationState, key: str, dispatcher: "TaskDispatcher") -> None:
    if key == keys.ENTER:
        submit_search(state, dispatcher)
        return
    if key == keys.CTRL_P:
        pull_selected(state, dispatcher)
        return
    if key == keys.BACKSPACE:
        state.search_query = state.search_query[:-1]
        return
    if key == keys.ESC:
        state.search_query = ""
        return
    if keys.is_printable_key(key):
        state.search_query += key
        return

    # letters belong to the query here, so only the dedicated keys navigate
    if key in (keys.UP, keys.DOWN, keys.PGUP, keys.PGDN, keys.HOME, keys.END):
        moved = _navigate(state.search_cursor, state.search_results, key)
        if moved is not None:
            state.search_cursor = moved


def submit_search(state: ApplicationState, dispatcher: "TaskDispatcher") -> bool:
    if state.search_in_flight:
        return False
    generation = begin_search(state)
    dispatcher.search(state.search_query, generation)
    return True


def pull_selected(state: ApplicationState, dispatcher: "TaskDispatcher") -> bool:
    if state.pulling is not None:
        return False
    if state.search_cursor < 0 or state.search_cursor >= len(state.search_results):
        return False
    name = state.search_results[state.search_cursor].name
    state.pulling = name
    set_status(state, f"Pulling {name}...")
    dispatcher.pull_model(name)
    return True
