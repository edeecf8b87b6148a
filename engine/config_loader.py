"""
Skill Router — Configuration Loader

Three layers, later ones winning:

  1. base YAML files        router/config.yaml unless told otherwise
  2. environment overlay    config/{env}.yaml under the project root
  3. SR_* variables         named keys (SR_DB_PATH, SR_MAX_LOOPS, ...)
                            plus SR_CONFIG__section__key=value

Dicts merge recursively; lists and scalars are replaced whole. The
merged dict carries a `_config_meta` entry naming the layers it saw.

Usage:
    from engine.config_loader import ConfigLoader

    config = ConfigLoader(env="prod", project_root=".").load()
    config["loop_back"]["max_loops"]
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("skill_router.config")

DEFAULT_BASE_FILES = ["router/config.yaml"]

FREE_FORM_PREFIX = "SR_CONFIG__"

# Variable → dotted config key
ENV_KEYS: dict[str, str] = {
    "SR_REGISTRY_PATH": "registry_path",
    "SR_DB_PATH": "db_path",
    "SR_MAX_LOOPS": "loop_back.max_loops",
    "SR_REPAIR_THROUGH": "repair.revalidate_through",
    "SR_ROUTER_SUMMARY_CAP": "budget.router_summary_cap_bytes",
    "SR_MAX_MODULE_UNITS": "budget.max_module_units",
    "SR_SHARED_WINDOW": "budget.shared_window",
    "SR_RESOURCE_DIR": "resources.base_dir",
    "SR_RESOURCE_TIMEOUT": "resources.timeout_seconds",
    "SR_LOG_LEVEL": "logging.level",
}


class ConfigLoader:
    """Builds the router's config dict from YAML layers and SR_* variables."""

    def __init__(
        self,
        env: str = "dev",
        project_root: str | Path = ".",
        base_files: list[str] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = base_files or list(DEFAULT_BASE_FILES)
        self.sources: list[str] = []

    def load(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        self.sources = []

        for name in self.base_files:
            data = self._read(Path(name))
            if data is not None:
                merged = _deep_merge(merged, data)
                self.sources.append(f"base:{name}")

        overlay = Path("config") / f"{self.env}.yaml"
        data = self._read(overlay)
        if data is not None:
            merged = _deep_merge(merged, data)
            self.sources.append(f"overlay:{overlay.as_posix()}")

        overrides = env_overrides(os.environ)
        if overrides:
            merged = _deep_merge(merged, overrides)
            self.sources.append(f"env_vars({len(overrides)} keys)")

        merged["_config_meta"] = {
            "env": self.env,
            "sources": list(self.sources),
            "project_root": str(self.project_root),
        }
        logger.info("Config loaded: env=%s sources=%s", self.env, self.sources)
        return merged

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.is_absolute():
            path = self.project_root / path
        if not path.exists():
            return None
        with open(path) as f:
            return yaml.safe_load(f) or {}


def _deep_merge(base: dict, overlay: dict) -> dict:
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    """Nested overrides from SR_* variables, values converted by _auto_convert."""
    flat: dict[str, str] = {}
    for name, key in ENV_KEYS.items():
        if name in environ:
            flat[key] = environ[name]
    for name, value in environ.items():
        if name.startswith(FREE_FORM_PREFIX):
            flat[name[len(FREE_FORM_PREFIX):].lower().replace("__", ".")] = value

    nested: dict[str, Any] = {}
    for dotted, raw in flat.items():
        *parents, leaf = dotted.split(".")
        node = nested
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = _auto_convert(raw)
    return nested


def _auto_convert(value: str) -> Any:
    # Digits stay numbers: SR_MAX_LOOPS=1 means one loop, not True
    lowered = value.strip().lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value
