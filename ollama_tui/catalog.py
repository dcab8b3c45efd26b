from __future__ import annotations

import logging
import re
from typing import Any

import requests

from . import __version__
from .client import short_error
from .models import LIBRARY_BASE_URL, RemoteEntry

SEARCH_LIMIT = 50
POPULAR_LIMIT = 30
CATALOG_TIMEOUT_SECONDS = 15
LIBRARY_PREFIX = "/library/"

HREF_RE = re.compile(r'href="([^"]*)"')

log = logging.getLogger(__name__)


def extract_model_name(line: str) -> str | None:
    for match in HREF_RE.finditer(line):
        href = match.group(1)
        if not href.startswith(LIBRARY_PREFIX):
            continue
        name = href[len(LIBRARY_PREFIX):]
        if not name or "/" in name or "?" in name:
            continue
        return name
    return None


def scan_catalog(body: str, query: str = "", limit: int = SEARCH_LIMIT) -> list[RemoteEntry]:
    needle = query.lower()
    seen: set[str] = set()
    entries: list[RemoteEntry] = []
    for line in body.splitlines():
        if LIBRARY_PREFIX not in line or "<a " not in line:
            continue
        name = extract_model_name(line)
        if not name or name in seen:
            continue
        if needle and needle not in name.lower():
            continue
        seen.add(name)
        entries.append(RemoteEntry.from_name(name))
        if len(entries) >= limit:
            break
    return entries


class CatalogClient:
    def __init__(self, base_url: str = LIBRARY_BASE_URL, timeout_seconds: int = CATALOG_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()
        self.session.headers["User-Agent"] = f"ollama-tui/{__version__}"

    def __enter__(self) -> "CatalogClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.session.close()

    def _fetch(self, params: dict[str, str] | None = None) -> tuple[str, str]:
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            return "", short_error(exc)
        return response.text, ""

    def search(self, query: str) -> tuple[list[RemoteEntry], str]:
        body, error = self._fetch()
        if error:
            return [], error
        return scan_catalog(body, query, SEARCH_LIMIT), ""

    def popular(self) -> tuple[list[RemoteEntry], str]:
        body, error = self._fetch({"sort": "popular"})
        if error:
            return [], error
        return scan_catalog(body, "", POPULAR_LIMIT), ""

    def resolve(self, query: str) -> tuple[list[RemoteEntry], str]:
        log.info("catalog resolve %r", query or "<popular>")
        if not query:
            return self.popular()
        return self.search(query)
