"""
Skill Router — Guidance Resource Locators

Phase guidance is fetched by reference and handed to the caller as an
opaque blob. The router never parses it; it only needs to know the
payload exists, is non-empty, and how large it is.

Locators:
  - DictResourceLocator:      in-memory (tests, embedded catalogs)
  - FileResourceLocator:      paths relative to a base directory
  - HTTPResourceLocator:      http(s) URLs via httpx
  - CompositeResourceLocator: routes by scheme (http/https vs. file)

Any failure (missing file, HTTP error, timeout, empty payload)
surfaces as ResourceUnavailable.

Usage:
    from engine.resources import build_locator

    locator = build_locator({"base_dir": "registry/guidance"})
    blob = locator.fetch("security.md")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from router.errors import ResourceUnavailable

logger = logging.getLogger("skill_router.resources")


class ResourceLocator:
    """Base interface. Subclasses implement _fetch()."""

    def fetch(self, ref: str) -> bytes:
        if not ref:
            raise ResourceUnavailable("Empty resource reference")
        data = self._fetch(ref)
        if not data:
            raise ResourceUnavailable(f"Resource is empty: {ref}")
        return data

    def _fetch(self, ref: str) -> bytes:
        raise NotImplementedError


class DictResourceLocator(ResourceLocator):
    """In-memory payloads keyed by reference."""

    def __init__(self, payloads: dict[str, bytes | str] | None = None):
        self.payloads: dict[str, bytes] = {}
        for ref, data in (payloads or {}).items():
            self.put(ref, data)

    def put(self, ref: str, data: bytes | str):
        self.payloads[ref] = data.encode("utf-8") if isinstance(data, str) else data

    def _fetch(self, ref: str) -> bytes:
        if ref not in self.payloads:
            raise ResourceUnavailable(f"Resource not found: {ref}")
        return self.payloads[ref]


class FileResourceLocator(ResourceLocator):
    """Reads payloads from disk. Relative refs resolve against base_dir."""

    def __init__(self, base_dir: str | Path = "."):
        self.base_dir = Path(base_dir)

    def resolve(self, ref: str) -> Path:
        if ref.startswith("file://"):
            ref = ref[len("file://"):]
        path = Path(ref)
        return path if path.is_absolute() else self.base_dir / path

    def _fetch(self, ref: str) -> bytes:
        path = self.resolve(ref)
        try:
            return path.read_bytes()
        except OSError as e:
            raise ResourceUnavailable(f"Cannot read {path}: {e}") from e


class HTTPResourceLocator(ResourceLocator):
    """Fetches payloads over HTTP. Accepts an injected httpx.Client."""

    def __init__(self, timeout_seconds: float = 10.0, client: httpx.Client | None = None):
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _fetch(self, ref: str) -> bytes:
        try:
            if self._client is not None:
                resp = self._client.get(ref)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    resp = client.get(ref)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ResourceUnavailable(f"Cannot fetch {ref}: {e}") from e
        return resp.content


class CompositeResourceLocator(ResourceLocator):
    """Routes http(s) refs to the HTTP locator, everything else to files."""

    def __init__(self, files: ResourceLocator, http: ResourceLocator):
        self.files = files
        self.http = http

    def _fetch(self, ref: str) -> bytes:
        if ref.startswith(("http://", "https://")):
            return self.http.fetch(ref)
        return self.files.fetch(ref)


def build_locator(config: dict[str, Any] | None = None, root: str | Path = ".") -> ResourceLocator:
    """
    Build the default locator from the `resources` config section.

    Keys:
        base_dir:        directory for relative refs (relative to root)
        timeout_seconds: HTTP timeout
    """
    config = config or {}
    base_dir = Path(config.get("base_dir", "registry/guidance"))
    if not base_dir.is_absolute():
        base_dir = Path(root) / base_dir
    logger.debug("Resource locator base_dir=%s", base_dir)
    return CompositeResourceLocator(
        files=FileResourceLocator(base_dir),
        http=HTTPResourceLocator(timeout_seconds=float(config.get("timeout_seconds", 10.0))),
    )
