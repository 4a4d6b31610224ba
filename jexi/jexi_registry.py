"""
Registry composition: builtin + extension callable tables -> global environment.

A registry table is partitioned by calling convention. Entries from the
special_forms, keyword_args and macros categories are tagged with their
convention before merging; plain functions and globals go in as-is.
Extension entries replace same-named builtin entries wholesale.
"""
from __future__ import annotations

import collections.abc
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from jexi.jexi_datatypes import Convention, Env, tag
from jexi.jexi_symbols import reference_to_name

CATEGORIES = (
    "special_forms",
    "macros",
    "keyword_args",
    "plain_functions",
    "handlers",
    "globals",
)

# The camelCase spellings hosts coming from the JSON world tend to use
CATEGORY_ALIASES = {
    "specialForms": "special_forms",
    "keywordArgs": "keyword_args",
    "plainFunctions": "plain_functions",
}

CATEGORY_CONVENTIONS = {
    "special_forms": Convention.SPECIAL,
    "macros": Convention.MACRO,
    "keyword_args": Convention.KEYWORD,
}

HANDLER_NAMES = ("on_not_found", "on_plain_json")

_HANDLER_ALIASES = {
    "onNotFound": "on_not_found",
    "onPlainJson": "on_plain_json",
}


def _frozen(table: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(table or {}))


@dataclass(frozen=True)
class Registry:
    """An immutable table of callables and values, partitioned by category."""
    special_forms: Mapping[str, Any] = field(default_factory=_frozen)
    macros: Mapping[str, Any] = field(default_factory=_frozen)
    keyword_args: Mapping[str, Any] = field(default_factory=_frozen)
    plain_functions: Mapping[str, Any] = field(default_factory=_frozen)
    handlers: Mapping[str, Any] = field(default_factory=_frozen)
    globals: Mapping[str, Any] = field(default_factory=_frozen)

    @classmethod
    def from_tables(cls, tables: Optional[Mapping[str, Any]] = None) -> 'Registry':
        """Build a Registry from a plain mapping of category -> {name: value}."""
        if tables is None:
            return cls()
        if isinstance(tables, Registry):
            return tables
        normalized: Dict[str, Dict[str, Any]] = {}
        for category, entries in tables.items():
            category = CATEGORY_ALIASES.get(category, category)
            if category not in CATEGORIES:
                raise ValueError(f"Unknown registry category: {category!r}")
            if not isinstance(entries, collections.abc.Mapping):
                raise TypeError(f"Registry category {category!r} must be a mapping")
            if category == "handlers":
                table = {_HANDLER_ALIASES.get(k, k): v for k, v in entries.items()}
            else:
                table = {reference_to_name(k): v for k, v in entries.items()}
            normalized.setdefault(category, {}).update(table)
        return cls(**{c: _frozen(t) for c, t in normalized.items()})

    def category(self, name: str) -> Mapping[str, Any]:
        return getattr(self, CATEGORY_ALIASES.get(name, name))

    def tagged_entries(self, category: str) -> Dict[str, Any]:
        """The category's entries with their convention tag applied."""
        convention = CATEGORY_CONVENTIONS.get(category)
        entries = self.category(category)
        if convention is None:
            return dict(entries)
        return {name: tag(value, convention, name) for name, value in entries.items()}

    def names(self):
        out = set()
        for category in CATEGORIES:
            if category != "handlers":
                out.update(self.category(category).keys())
        return out


def merge_registries(builtins: Any, extensions: Any = None) -> Registry:
    """Merge per category; extension entries replace builtin ones of the same name."""
    base = Registry.from_tables(builtins)
    ext = Registry.from_tables(extensions)
    merged = {}
    for category in CATEGORIES:
        table = dict(base.category(category))
        table.update(ext.category(category))
        merged[category] = _frozen(table)
    return Registry(**merged)


def build_global_environment(builtins: Any, extensions: Any = None) -> Env:
    """Compose the root Env of an interpreter from builtin and extension tables.

    For each category, builtin then extension entries are tagged and merged into
    one flat table. A name defined in several categories resolves to the entry
    of the later category in CATEGORIES order, with extensions always winning
    over builtins.
    """
    base = Registry.from_tables(builtins)
    ext = Registry.from_tables(extensions)
    root = Env()
    overridden = set(ext.names())
    for registry, skip in ((base, overridden), (ext, set())):
        for category in CATEGORIES:
            if category == "handlers":
                continue
            for name, value in registry.tagged_entries(category).items():
                if name in skip:
                    continue
                root.set(name, value)
    return root
