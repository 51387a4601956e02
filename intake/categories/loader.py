"""Load JSONL category definitions into CategoryConfig objects.

The file holds one practice area per line. Structural invariants are
checked at load time and reported together, so a broken file fails startup
with every problem listed instead of surfacing one at a time mid-chat.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from intake.categories.schema import (
    CategoryConfig,
    CategoryConfigSet,
    FieldDefinition,
    FieldSource,
    FieldType,
)
from intake.errors import ConfigurationError

log = logging.getLogger("intake.categories")


def load_categories_jsonl(path: str | Path) -> CategoryConfigSet:
    """Load every category from a JSONL file (one per line), validated."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read category config {path}: {exc}") from exc

    categories: dict[str, CategoryConfig] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"{path}:{lineno}: invalid JSON: {exc}") from exc
        category = _parse_category(data, where=f"{path}:{lineno}")
        if category.key in categories:
            raise ConfigurationError(f"{path}:{lineno}: duplicate category {category.key!r}")
        categories[category.key] = category

    if not categories:
        raise ConfigurationError(f"No categories found in {path}")

    config_set = CategoryConfigSet(
        categories=categories, source_path=str(path), loaded_at=time.time(),
    )
    problems = validate_config_set(config_set)
    if problems:
        raise ConfigurationError(
            "Invalid category config:\n  " + "\n  ".join(problems)
        )
    return config_set


def _parse_category(data: Any, where: str) -> CategoryConfig:
    """Parse a raw dict into a CategoryConfig."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: expected a JSON object per line")
    if not data.get("key"):
        raise ConfigurationError(f"{where}: category is missing 'key'")

    # Parse nested field definitions so errors name the offending field
    raw_fields = data.get("required_fields", {})
    if not isinstance(raw_fields, dict):
        raise ConfigurationError(f"{where}: 'required_fields' must be an object")
    fields: dict[str, FieldDefinition] = {}
    for name, fd in raw_fields.items():
        try:
            fields[name] = FieldDefinition(**fd) if isinstance(fd, dict) else fd
        except (PydanticValidationError, TypeError) as exc:
            raise ConfigurationError(
                f"{where}: field {name!r} in {data['key']!r} is malformed: {exc}"
            ) from exc

    data = dict(data, required_fields=fields)
    try:
        return CategoryConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"{where}: category {data['key']!r} is malformed: {exc}"
        ) from exc


def validate_config_set(config_set: CategoryConfigSet) -> list[str]:
    """Return every structural invariant violation in the set (empty if valid)."""
    problems: list[str] = []
    for key, cat in config_set.categories.items():
        if not cat.name.strip():
            problems.append(f"{key}: missing display name")
        if cat.lead_prosper_config is None:
            problems.append(f"{key}: missing lead_prosper_config routing triple")
        if not cat.required_fields:
            problems.append(f"{key}: required_fields is empty")
        for step in cat.chat_flow:
            if step.field not in cat.required_fields:
                problems.append(
                    f"{key}: chat_flow field {step.field!r} has no field definition"
                )
        for name, fd in cat.required_fields.items():
            if fd.type == FieldType.ENUM and not fd.allowed_values:
                problems.append(f"{key}.{name}: enum field has no allowed_values")
            if fd.required and fd.source == FieldSource.CONFIG and fd.value in (None, ""):
                problems.append(f"{key}.{name}: config-sourced field has no value")
    return problems


# ── Cached loader ────────────────────────────────────────────────


class CategoryConfigLoader:
    """Owns the parsed config and re-reads it once the TTL lapses.

    A slightly stale read is acceptable, so there is no lock: the worst case
    is two concurrent requests both re-parsing the file.
    """

    def __init__(
        self,
        path: str | Path,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: CategoryConfigSet | None = None
        self._cached_at: float = 0.0
        self._listeners: list[Callable[[], None]] = []
        self.generation = 0
        self.load_count = 0

    @property
    def path(self) -> Path:
        return self._path

    def on_invalidate(self, callback: Callable[[], None]) -> None:
        """Register a callback run whenever cached config is replaced or dropped."""
        self._listeners.append(callback)

    def load(self) -> CategoryConfigSet:
        """Return the cached set, re-reading the file once it is older than the TTL."""
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached

        config_set = load_categories_jsonl(self._path)
        had_previous = self._cached is not None
        self._cached = config_set
        self._cached_at = now
        self.generation += 1
        self.load_count += 1
        log.info(
            "Category config loaded from %s (%d categories, generation %d)",
            self._path, len(config_set.categories), self.generation,
        )
        if had_previous:
            self._notify()
        return config_set

    def invalidate(self) -> None:
        """Drop the cache so the next load() re-reads the file."""
        self._cached = None
        self._cached_at = 0.0
        log.info("Category config cache invalidated")
        self._notify()

    def get_category(self, key: str | None) -> CategoryConfig | None:
        if not key:
            return None
        return self.load().get(key)

    def category_keys(self) -> list[str]:
        return self.load().keys()

    def summaries(self) -> list[dict[str, Any]]:
        """Key, name, description and sub-categories of every category."""
        return [
            {
                "key": cat.key,
                "name": cat.name,
                "description": cat.description,
                "subcategories": list(cat.subcategories),
            }
            for cat in self.load().categories.values()
        ]

    def stats(self) -> dict[str, Any]:
        config_set = self.load()
        age = self._clock() - self._cached_at
        return {
            "source_path": config_set.source_path,
            "generation": self.generation,
            "cache_age_seconds": round(age, 1),
            "cache_ttl_seconds": self._ttl,
            "categories": {
                key: {
                    "name": cat.name,
                    "fields": len(cat.required_fields),
                    "user_fields": len(cat.user_fields()),
                    "chat_flow_steps": len(cat.chat_flow),
                    "subcategories": len(cat.subcategories),
                }
                for key, cat in config_set.categories.items()
            },
        }

    def _notify(self) -> None:
        for callback in self._listeners:
            callback()
