"""
Reference ("$symbol") classification for Jexi forms.

References are JSON strings marked with a "$" prefix. Money such as "$1.50" and
syntax from other expression languages embedded in the data, e.g. JSONPath
("$.prop", "$[0]") or JSONata ("$max(array)"), must stay plain strings.
"""
import re
from typing import Any, List

MARKER = "$"

REFERENCE_RE = re.compile(r"^\$[^$0-9.\[][^(){}]*$")


def is_reference(token: Any) -> bool:
    """True when `token` is a string naming something to resolve."""
    return isinstance(token, str) and REFERENCE_RE.match(token) is not None


def reference_to_name(token: Any) -> str:
    """'$x' -> 'x'. Anything that isn't a reference is just stringified."""
    if is_reference(token):
        return token[1:]
    return str(token)


def name_to_reference(name: Any) -> str:
    """'x' -> '$x'. Already-prefixed strings are returned unchanged."""
    text = str(name).strip()
    if text.startswith(MARKER):
        return text
    return f"{MARKER}{text}"


def find_reference_keys(obj: dict) -> List[str]:
    """The reference-shaped keys of an object, in iteration order."""
    return [k for k in obj.keys() if is_reference(k)]


def split_path(path: str) -> List[str]:
    """Split a dotted path, dropping the leading marker: '$a.b.$c' -> ['a', 'b', '$c']."""
    name = reference_to_name(path)
    return [seg for seg in name.split(".") if seg]
