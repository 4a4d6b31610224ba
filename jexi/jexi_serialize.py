from __future__ import annotations

import json
import re
from typing import Any, Optional
import collections.abc

# Relaxed Jexi text is read as YAML flow syntax, which is a superset of JSON
import yaml

from jexi.jexi_datatypes import ABSENT, JexiCallable, Env


class JexiSyntaxError(ValueError):
    """Malformed source text.

    `incomplete` is True when the text simply ended before the form did, so an
    interactive caller can ask for more input instead of giving up.
    """
    def __init__(self, message: str, *, incomplete: bool = False, line: Optional[int] = None,
                 col: Optional[int] = None):
        super().__init__(message)
        self.incomplete = incomplete
        self.line = line
        self.col = col


class RelaxedLoader(yaml.SafeLoader):
    """YAML flow syntax that only produces JSON scalar types.

    Timestamps stay strings, only true/false are booleans (not yes/no/on/off),
    and '=' and '<<' are ordinary strings.
    """


_DROPPED_TAGS = {
    'tag:yaml.org,2002:timestamp',
    'tag:yaml.org,2002:bool',
    'tag:yaml.org,2002:value',
    'tag:yaml.org,2002:merge',
}

RelaxedLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _DROPPED_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
RelaxedLoader.add_implicit_resolver(
    'tag:yaml.org,2002:bool',
    re.compile(r'^(?:true|True|TRUE|false|False|FALSE)$'),
    list('tTfF'),
)


def load_yaml(text: str) -> Any:
    return yaml.load(text, Loader=RelaxedLoader)


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc, errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def to_builtin(obj: Any) -> Any:
    """Convert an evaluation result into plain JSON-compatible Python data.

    ABSENT becomes None; callables and environments become descriptive strings.
    """
    if obj is ABSENT:
        return None
    if isinstance(obj, (list, tuple)):
        return [to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (JexiCallable, Env)) or callable(obj):
        return repr(obj)
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct or 'x-yaml' in ct:
        return 'yaml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


def _syntax_error_from_yaml(e: yaml.YAMLError, text: str) -> JexiSyntaxError:
    mark = getattr(e, 'problem_mark', None)
    line = col = None
    incomplete = False
    if mark is not None:
        line, col = mark.line + 1, mark.column + 1
        # The parser ran off the end of the input: more text could still fix it
        incomplete = mark.index >= len(text.rstrip())
    problem = getattr(e, 'problem', None) or str(e)
    context = getattr(e, 'context', None)
    message = f"{context}, {problem}" if context else problem
    return JexiSyntaxError(message, incomplete=incomplete, line=line, col=col)


# --------------------------
# Public API
# --------------------------

def parse_relaxed(text: str) -> Any:
    """Read relaxed Jexi text (unquoted keys and strings, comments) into JSON forms."""
    if not text.strip():
        raise JexiSyntaxError("empty input", incomplete=True)
    try:
        return load_yaml(text)
    except yaml.YAMLError as e:
        raise _syntax_error_from_yaml(e, text) from e


def parse_json(text: str) -> Any:
    """Strict JSON."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        incomplete = e.pos >= len(text.rstrip())
        raise JexiSyntaxError(e.msg, incomplete=incomplete, line=e.lineno, col=e.colno) from e


def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to JSON-compatible Python structures.
    Supported fmt: 'json', 'yaml', 'jexi' (relaxed).
    If fmt is None, uses content_type, then sniffing.
    Returns dict/list/scalars for structured formats; returns raw text for others.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Fallback to YAML if declared JSON but content is actually YAML-like
            try:
                return load_yaml(text)
            except yaml.YAMLError:
                return text
    if f == 'yaml':
        try:
            return load_yaml(text)
        except yaml.YAMLError:
            return text
    if f == 'jexi':
        return parse_relaxed(text)
    return text


def serialize(value: Any,
              *,
              fmt: str = 'json',
              pretty: bool = True) -> str:
    """
    Convert an evaluation result into text.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "JexiSyntaxError",
    "RelaxedLoader",
    "load_yaml",
    "parse_relaxed",
    "parse_json",
    "deserialize",
    "serialize",
    "detect_format",
    "to_builtin",
]
