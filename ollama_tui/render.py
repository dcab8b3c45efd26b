from __future__ import annotations

import textwrap
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser
from rich.console import Group
from rich.layout import Layout
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import VIEW_ORDER, VIEW_TITLES, ConversationMode, View
from .state import ApplicationState, clamp_index, is_busy

SPINNER = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
ROLE_LABELS = {"user": "You", "assistant": "AI"}
FOOTER_HINTS = {
    View.CONVERSATION: "i: type | Esc: stop typing | Enter: send | j/k: select | g/G: top/bottom | d: delete turn",
    View.MODEL_LIST: "j/k: select | Enter: use | d: delete | r: refresh",
    View.SEARCH: "type to filter | Enter: search (empty = popular) | Up/Down: select | Ctrl+P: pull | Esc: clear",
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = date_parser.parse(str(raw))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def humanize_bytes(num: int | float | None) -> str:
    if not num:
        return "-"
    value = float(num)
    units = ["B", "KB", "MB", "GB", "TB"]
    for unit in units:
        if value < 1024.0 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return "-"


def human_age(published_at: datetime) -> str:
    delta = now_utc() - published_at
    seconds = max(int(delta.total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h"
    return f"{hours // 24}d"


def truncate(value: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(value) <= width:
        return value
    if width <= 3:
        return value[:width]
    return value[: width - 3] + "..."


def spinner_frame(tick: int) -> str:
    return SPINNER[tick % len(SPINNER)]


def render_tabs(active: View) -> Text:
    text = Text()
    for index, view in enumerate(VIEW_ORDER):
        if index:
            text.append(" | ", style="dim")
        style = "bold yellow" if view == active else "white"
        text.append(f" {VIEW_TITLES[view]} ", style=style)
    return text


def turn_rows(state: ApplicationState, width: int) -> tuple[list[tuple[str, str]], list[int]]:
    rows: list[tuple[str, str]] = []
    starts: list[int] = []
    wrap_width = max(10, width - 2)
    cursor = clamp_index(state.turn_cursor, state.turns)
    for index, turn in enumerate(state.turns):
        starts.append(len(rows))
        selected = index == cursor and state.conversation_mode == ConversationMode.NORMAL
        label = ROLE_LABELS.get(turn.role, turn.role)
        header_style = "bold cyan" if turn.role == "user" else "bold green"
        if selected:
            header_style += " reverse"
        rows.append((header_style, f"{'> ' if selected else ''}{label}:"))
        content = turn.content
        if not content and turn.role == "assistant" and state.chat_in_flight and index == len(state.turns) - 1:
            content = "..."
        for raw_line in content.splitlines() or [""]:
            for line in textwrap.wrap(raw_line, wrap_width) or [""]:
                rows.append(("", line))
        rows.append(("", ""))
    return rows, starts


def visible_window(total: int, anchor_start: int, height: int, follow_tail: bool) -> tuple[int, int]:
    if height <= 0 or total <= 0:
        return 0, 0
    tail_start = max(0, total - height)
    start = tail_start if follow_tail else min(anchor_start, tail_start)
    return start, min(total, start + height)


def render_conversation(state: ApplicationState, width: int, height: int) -> Group:
    inner_width = max(10, width - 4)
    message_rows = max(1, height - 5)
    rows, starts = turn_rows(state, inner_width)
    anchor = starts[clamp_index(state.turn_cursor, state.turns)] if starts else 0
    start, end = visible_window(len(rows), anchor, message_rows, state.follow_tail)

    body = Text()
    if not rows:
        body.append("Select a model in the Models tab, then press i to type.", style="dim")
    for style, line in rows[start:end]:
        body.append(line + "\n", style=style)

    title = " Messages "
    if state.selected_model:
        title = f" Messages \\[{escape(state.selected_model)}] "
    messages = Panel(body, title=title, border_style="cyan", height=message_rows + 2)

    insert = state.conversation_mode == ConversationMode.INSERT
    prompt = Text(truncate(state.input_buffer, inner_width - 2), style="white")
    if insert:
        prompt.append("_", style="blink")
    input_title = " Input (INSERT) " if insert else " Input (NORMAL) "
    input_panel = Panel(prompt, title=input_title, border_style="magenta" if insert else "blue", height=3)
    return Group(messages, input_panel)


def render_models_table(state: ApplicationState, height: int) -> Table:
    table = Table(title="Installed Models", expand=True)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Model", no_wrap=True, overflow="ellipsis")
    table.add_column("Size", justify="right", width=10)
    table.add_column("Digest", width=12)
    table.add_column("Age", justify="right", width=6)

    visible = max(1, height - 6)
    cursor = clamp_index(state.model_cursor, state.models)
    first = max(0, cursor - visible + 1)
    for idx in range(first, min(len(state.models), first + visible)):
        model = state.models[idx]
        marker = ""
        if state.selected_model and state.selected_model in (model.name, model.identifier):
            marker = " *"
        if model.name in state.deleting:
            marker += " (deleting)"
        modified = parse_date(model.modified_at)
        table.add_row(
            str(idx + 1),
            escape(f"{'> ' if idx == cursor else ''}{model.name}{marker}"),
            humanize_bytes(model.size),
            model.digest[:12] or "-",
            human_age(modified) if modified else "-",
            style="bold yellow" if idx == cursor else None,
        )

    if not state.models:
        empty = "Loading..." if state.models_loading else "No models installed. Use the Search tab to find one."
        table.add_row("-", empty, "-", "-", "-")
    return table


def render_search(state: ApplicationState, width: int, height: int) -> Group:
    query = Text(f"Search: {state.search_query}")
    if state.search_in_flight:
        query.append("  Searching...", style="yellow")
    query_panel = Panel(query, title=" Search Online Models ", border_style="magenta", height=3)

    visible = max(1, height - 5)
    if not state.search_results:
        hint = Text("Press Enter to load popular models, or type and press Enter to search.", style="dim")
        return Group(query_panel, Panel(hint, border_style="blue"))

    cursor = clamp_index(state.search_cursor, state.search_results)
    first = max(0, cursor - visible + 1)
    body = Text()
    for idx in range(first, min(len(state.search_results), first + visible)):
        entry = state.search_results[idx]
        selected = idx == cursor
        line = f"{'> ' if selected else '  '}{entry.name}"
        if entry.description:
            line += f"  {entry.description}"
        if state.pulling == entry.name:
            line += "  (pulling)"
        body.append(truncate(line, max(10, width - 4)) + "\n", style="bold yellow" if selected else "")
    title = f" Search Results ({len(state.search_results)}) "
    return Group(query_panel, Panel(body, title=title, border_style="blue"))


def footer_text(state: ApplicationState, tick: int, width: int) -> Text:
    max_chars = max(20, width - 4)
    if state.status_message:
        return Text(truncate(state.status_message, max_chars), style="yellow")
    if state.chat_in_flight:
        return Text(f"{spinner_frame(tick)} Generating...", style="yellow")
    if is_busy(state):
        return Text(f"{spinner_frame(tick)} Working...", style="yellow")
    hint = f"{FOOTER_HINTS[state.view]} | Tab: switch | Ctrl+C: quit"
    return Text(truncate(hint, max_chars), style="dim")


def build_frame(state: ApplicationState, width: int, height: int, tick: int = 0) -> Layout:
    body_height = max(6, height - 4)
    layout = Layout()
    layout.split_column(
        Layout(render_tabs(state.view), name="tabs", size=1),
        Layout(name="body", size=body_height),
        Layout(name="footer", size=3),
    )
    if state.view == View.CONVERSATION:
        layout["body"].update(render_conversation(state, width, body_height))
    elif state.view == View.MODEL_LIST:
        layout["body"].update(render_models_table(state, body_height))
    else:
        layout["body"].update(render_search(state, width, body_height))

    last_activity = state.activity_log[-1] if state.activity_log else ""
    layout["footer"].update(
        Panel(
            footer_text(state, tick, width),
            subtitle=escape(truncate(last_activity, max(10, width - 8))),
            border_style="dim",
        )
    )
    return layout
