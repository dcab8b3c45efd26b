from __future__ import annotations

import logging
import re
from typing import Any, Callable

import requests

from .models import LocalModel
from .stream import StreamError, decode_stream

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
CONNECT_TIMEOUT_SECONDS = 5
ERROR_TEXT_MAX = 160

WHITESPACE_RE = re.compile(r"\s+")

log = logging.getLogger(__name__)


def sanitize_ollama_host(host: str) -> str:
    base = host.strip().rstrip("/")
    if base and "://" not in base:
        base = f"http://{base}"
    return base


def short_error(exc: BaseException | str) -> str:
    text = WHITESPACE_RE.sub(" ", str(exc)).strip()
    return text[:ERROR_TEXT_MAX] or exc.__class__.__name__


def _server_error(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return short_error(str(payload["error"]))
    return f"HTTP {response.status_code}"


class OllamaClient:
    """Per-job client for the local Ollama REST API.

    Each instance owns its own ``requests.Session``; use it as a context
    manager so the session is closed when the job finishes.
    """

    def __init__(self, host: str = DEFAULT_OLLAMA_HOST, timeout_seconds: int = 120):
        self.base_url = sanitize_ollama_host(host) or DEFAULT_OLLAMA_HOST
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _timeout(self) -> tuple[int, int]:
        return (CONNECT_TIMEOUT_SECONDS, self.timeout_seconds)

    def list_models(self) -> dict[str, Any]:
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=self._timeout())
        except requests.ConnectionError as exc:
            return {
                "models": [],
                "error": f"Failed to connect to {self.base_url}: {short_error(exc)}. Make sure Ollama is running.",
                "unreachable": True,
            }
        except requests.RequestException as exc:
            return {"models": [], "error": short_error(exc), "unreachable": False}

        if not response.ok:
            return {"models": [], "error": _server_error(response), "unreachable": False}
        try:
            payload = response.json()
        except ValueError:
            return {"models": [], "error": "Invalid model list response.", "unreachable": False}

        models: list[LocalModel] = []
        for entry in payload.get("models", []) or []:
            if not isinstance(entry, dict):
                continue
            model = LocalModel.from_payload(entry)
            if model.name:
                models.append(model)
        return {"models": models, "error": "", "unreachable": False}

    def chat(self, model: str, messages: list[dict[str, str]]) -> tuple[str, str]:
        if not model:
            return "", "No chat model selected."
        payload = {"model": model, "messages": messages, "stream": False}
        try:
            response = self.session.post(
                f"{self.base_url}/api/chat",
                json=payload,
                timeout=self._timeout(),
            )
        except requests.RequestException as exc:
            return "", short_error(exc)
        if not response.ok:
            return "", _server_error(response)
        try:
            result = response.json()
        except ValueError:
            return "", "Invalid chat response."
        message = result.get("message") if isinstance(result, dict) else None
        if not isinstance(message, dict):
            return "", "Chat response had no message."
        return str(message.get("content", "") or ""), ""

    def chat_stream(
        self,
        model: str,
        messages: list[dict[str, str]],
        on_update: Callable[[str], None],
    ) -> tuple[str, str]:
        if not model:
            return "", "No chat model selected."
        payload = {"model": model, "messages": messages, "stream": True}
        try:
            with self.session.post(
                f"{self.base_url}/api/chat",
                json=payload,
                stream=True,
                timeout=self._timeout(),
            ) as response:
                if not response.ok:
                    return "", _server_error(response)
                text = decode_stream(response.iter_lines(), on_update)
        except StreamError as exc:
            return "", short_error(exc)
        except requests.RequestException as exc:
            return "", short_error(exc)
        return text, ""

    def delete_model(self, name: str) -> str:
        try:
            response = self.session.delete(
                f"{self.base_url}/api/delete",
                json={"name": name},
                timeout=self._timeout(),
            )
        except requests.RequestException as exc:
            return short_error(exc)
        if not response.ok:
            return _server_error(response)
        return ""

    def pull_model(self, name: str) -> tuple[dict[str, Any], str]:
        try:
            response = self.session.post(
                f"{self.base_url}/api/pull",
                json={"name": name, "stream": False},
                timeout=(CONNECT_TIMEOUT_SECONDS, None),
            )
        except requests.RequestException as exc:
            return {}, short_error(exc)
        if not response.ok:
            return {}, _server_error(response)
        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}
        if result.get("error"):
            return result, short_error(str(result["error"]))
        log.info("pull %s -> %s", name, result.get("status", "?"))
        return {"status": result.get("status"), "digest": result.get("digest")}, ""
