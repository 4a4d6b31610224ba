"""
Defines the core data types for the Jexi runtime.

This module provides the environment (scope) chain, the tagged callable
variant used for dispatch, and the ABSENT sentinel that marks an unresolved
lookup.
"""

import collections.abc
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from jexi.jexi_symbols import is_reference, reference_to_name, name_to_reference, split_path

if TYPE_CHECKING:
    from jexi.jexi_runtime import Interpreter


class JexiError(Exception):
    """A language-level fault (malformed special form payload, bad call, ...)."""
    def __init__(self, message: str, form: Any = None):
        super().__init__(message)
        self.form = form


class _Absent:
    """The outcome of looking up a name that nothing binds.

    Distinct from None, which is JSON null and a perfectly good bound value.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "ABSENT"

    def __reduce__(self):
        return (_Absent, ())


ABSENT = _Absent()


def is_absent(value: Any) -> bool:
    return value is ABSENT


# =================================================================
# Callables
# =================================================================

class Convention(Enum):
    """How a callable wants its invocation form handed to it."""
    MACRO = "macro"
    SPECIAL = "special"
    KEYWORD = "keyword"
    POSITIONAL = "positional"
    PLAIN = "plain"


class JexiCallable:
    """A host function tagged with exactly one calling convention.

    Untagged Python callables found in an environment are treated as PLAIN;
    wrapping one in a JexiCallable is how it opts into another convention.
    """
    def __init__(self, func: Callable, convention: Convention, name: Optional[str] = None):
        if isinstance(func, JexiCallable):
            raise TypeError(f"{func!r} already carries the {func.convention.value} convention")
        self.func = func
        self.convention = convention
        self.name = name or getattr(func, "__name__", None)

    def __call__(self, *args, **kwargs):
        return self.func(*args, **kwargs)

    def __repr__(self) -> str:
        return f"<{self.convention.value} {self.name or 'anonymous'}>"


def tag(func: Any, convention: Convention, name: Optional[str] = None) -> Any:
    """Tag `func` with `convention` unless it already carries a tag."""
    if isinstance(func, JexiCallable):
        return func
    if not callable(func):
        return func
    return JexiCallable(func, convention, name)


def convention_of(value: Any) -> Optional[Convention]:
    """The convention a value is called with, or None when it isn't callable."""
    if isinstance(value, JexiCallable):
        return value.convention
    if callable(value):
        return Convention.PLAIN
    return None


class Closure(JexiCallable):
    """A function defined in Jexi with `$fn`.

    Bundles the parameter spec, the unevaluated body form and the environment
    in which it was defined. Object parameter specs make a KEYWORD callable,
    a single token or an array of tokens a POSITIONAL one.
    """
    def __init__(self, params: Any, body: Any, env: Optional['Env'], interpreter: 'Interpreter',
                 name: Optional[str] = None):
        if isinstance(params, collections.abc.Mapping):
            convention = Convention.KEYWORD
            self.params: Any = dict(params)
        else:
            convention = Convention.POSITIONAL
            self.params = list(params) if isinstance(params, list) else [params]
            for p in self.params:
                if not isinstance(p, str):
                    raise JexiError(f"fn parameter names must be strings, got {p!r}", params)
        super().__init__(self._invoke, convention, name or "fn")
        self.body = body
        self.env = env
        self.interpreter = interpreter

    def bind_arguments(self, args: Any, call_env: 'Env') -> 'Env':
        """Create the call scope: a child of the defining env with the parameters bound."""
        parent = self.env if self.env is not None else self.interpreter.globals
        local = Env(parent=parent)
        if self.convention is Convention.KEYWORD:
            payload = args if isinstance(args, collections.abc.Mapping) else {}
            primary_keys = [k for k in payload.keys() if is_reference(k)]
            primary = payload[primary_keys[0]] if primary_keys else ABSENT
            for key, param in self.params.items():
                if is_reference(key):
                    # The invoking key's payload, whatever name we were bound under
                    value = primary
                else:
                    value = payload.get(key, ABSENT)
                local.set(reference_to_name(param), value)
        else:
            for i, param in enumerate(self.params):
                local.set(reference_to_name(param), args[i] if i < len(args) else ABSENT)
        return local

    async def _invoke(self, args, call_env=None, interpreter=None):
        local = self.bind_arguments(args, call_env)
        return await self.interpreter.evaluate(self.body, local)

    def __call__(self, *args, **kwargs):
        """Host-side invocation: `await closure(1, 2)` or `await closure(x=1)`."""
        if self.convention is Convention.KEYWORD:
            payload = {name_to_reference(self.name): args[0]} if args else {}
            payload.update(kwargs)
            return self._invoke(payload)
        return self._invoke(list(args))

    def __repr__(self) -> str:
        return f"<fn {self.name} {self.convention.value} params={self.params!r}>"


# =================================================================
# Environments
# =================================================================

class Env:
    """A Jexi scope: unprefixed name -> value bindings plus a parent pointer.

    Lookups walk the parent chain explicitly; the nearest binding wins. The
    root environment of an interpreter also carries the exit flag.
    """
    def __init__(self, parent: Optional['Env'] = None):
        self.bindings: Dict[str, Any] = {}
        self.parent: Optional['Env'] = parent
        self.exit_requested: bool = False

    # --- chain helpers ---
    @property
    def root(self) -> 'Env':
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def find_owner(self, name: str) -> Optional['Env']:
        """The nearest Env in the chain (self -> parent -> ...) that binds `name`."""
        env: Optional[Env] = self
        while env is not None:
            if name in env.bindings:
                return env
            env = env.parent
        return None

    def create_child(self) -> 'Env':
        return Env(parent=self)

    # --- single names ---
    def lookup(self, name: str) -> Any:
        """Resolve one unprefixed (or prefixed) name, or ABSENT."""
        key = reference_to_name(name)
        owner = self.find_owner(key)
        if owner is None:
            return ABSENT
        return owner.bindings[key]

    def set(self, name: str, value: Any):
        """Bind in this env, shadowing any binding further up the chain."""
        self.bindings[reference_to_name(name)] = value

    # --- dotted paths ---
    def get_path(self, path: str) -> Any:
        """Resolve '$a.b.0.c' through the chain and then into nested values."""
        segments = split_path(path)
        if not segments:
            return ABSENT
        value = self.lookup(segments[0])
        for seg in segments[1:]:
            if value is ABSENT:
                return ABSENT
            value = _read_segment(value, seg)
        return value

    def set_path(self, path: str, value: Any):
        """Write to '$a.b.c', creating intermediate mappings on demand.

        The first segment is written where it is already bound (possibly an
        ancestor), otherwise in this env.
        """
        segments = split_path(path)
        if not segments:
            raise JexiError(f"cannot assign to empty path {path!r}")
        head = segments[0]
        owner = self.find_owner(head) or self
        if len(segments) == 1:
            owner.bindings[head] = value
            return
        container = owner.bindings.get(head)
        if not _is_container(container):
            container = {}
            owner.bindings[head] = container
        for seg in segments[1:-1]:
            nxt = _read_segment(container, seg)
            if not _is_container(nxt):
                nxt = {}
                _write_segment(container, seg, nxt)
            container = nxt
        _write_segment(container, segments[-1], value)

    # --- mapping-style access ---
    def __getitem__(self, name: str) -> Any:
        value = self.lookup(name)
        if value is ABSENT:
            raise KeyError(name)
        return value

    def __setitem__(self, name: str, value: Any):
        self.set(name, value)

    def __contains__(self, name: Any) -> bool:
        return isinstance(name, str) and self.find_owner(reference_to_name(name)) is not None

    def keys(self) -> collections.abc.KeysView:
        """Keys bound in this env only."""
        return self.bindings.keys()

    def flatten(self) -> Dict[str, Any]:
        """All visible bindings, nearest winning."""
        chain: List[Env] = []
        env: Optional[Env] = self
        while env is not None:
            chain.append(env)
            env = env.parent
        out: Dict[str, Any] = {}
        for e in reversed(chain):
            out.update(e.bindings)
        return out

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Env bindings=[{keys}]{parent_id}>"


def create_child(parent: Optional[Env]) -> Env:
    return Env(parent=parent)


def _is_container(value: Any) -> bool:
    return isinstance(value, (collections.abc.MutableMapping, list))


def _alternate_key(seg: str) -> str:
    return reference_to_name(seg) if is_reference(seg) else name_to_reference(seg)


def _read_segment(value: Any, seg: str) -> Any:
    if isinstance(value, Env):
        return value.lookup(seg)
    if isinstance(value, collections.abc.Mapping):
        if seg in value:
            return value[seg]
        alt = _alternate_key(seg)
        if alt in value:
            return value[alt]
        return ABSENT
    if isinstance(value, (list, tuple)):
        try:
            return value[int(seg)]
        except (ValueError, IndexError):
            return ABSENT
    if isinstance(value, str) or seg.startswith("_"):
        return ABSENT
    return getattr(value, seg, ABSENT)


def _write_segment(container: Any, seg: str, value: Any):
    if isinstance(container, list):
        try:
            index = int(seg)
        except ValueError:
            raise JexiError(f"cannot index a list with {seg!r}")
        if index == len(container):
            container.append(value)
        elif -len(container) <= index < len(container):
            container[index] = value
        else:
            raise JexiError(f"list index {index} out of range for a list of length {len(container)}")
        return
    if seg not in container:
        alt = _alternate_key(seg)
        if alt in container:
            seg = alt
    container[seg] = value
