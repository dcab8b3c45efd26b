from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

LIBRARY_BASE_URL = "https://ollama.com/library"


class View(Enum):
    CONVERSATION = "conversation"
    MODEL_LIST = "models"
    SEARCH = "search"


VIEW_ORDER = (View.CONVERSATION, View.MODEL_LIST, View.SEARCH)
VIEW_TITLES = {
    View.CONVERSATION: "Chat",
    View.MODEL_LIST: "Models",
    View.SEARCH: "Search",
}


class ConversationMode(Enum):
    NORMAL = "normal"
    INSERT = "insert"


def cycle_view(current: View, step: int) -> View:
    index = VIEW_ORDER.index(current)
    return VIEW_ORDER[(index + step) % len(VIEW_ORDER)]


@dataclass
class ChatTurn:
    role: str
    content: str = ""

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class LocalModel:
    name: str
    model: str
    size: int
    digest: str
    modified_at: str | None = None

    @property
    def identifier(self) -> str:
        return self.model or self.name

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "LocalModel":
        name = str(payload.get("name", "") or "").strip()
        modified_at = payload.get("modified_at")
        return cls(
            name=name,
            model=str(payload.get("model", "") or name).strip(),
            size=int(payload.get("size", 0) or 0),
            digest=str(payload.get("digest", "") or ""),
            modified_at=str(modified_at) if modified_at else None,
        )


@dataclass
class RemoteEntry:
    name: str
    description: str | None = None
    url: str = ""

    @classmethod
    def from_name(cls, name: str) -> "RemoteEntry":
        return cls(name=name, description=None, url=f"{LIBRARY_BASE_URL}/{name}")
