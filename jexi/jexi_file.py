from __future__ import annotations
import os
from typing import Optional, Dict, Any
from jexi.jexi_serialize import deserialize, serialize, parse_json

RELAXED_EXTENSIONS = ("", ".jexi")


def resolve_path(locator: str, base_dir: Optional[str] = None) -> str:
    """Turn a path or 'file://' locator into an absolute filesystem path."""
    rest = locator.strip()
    if rest.startswith("file://"):
        rest = rest[7:]
    # Absolute filesystem root
    if rest.startswith("/"):
        return "/" + rest.lstrip("/")
    # Home directory
    if rest.startswith("~"):
        return os.path.expanduser(rest)
    # Empty → source file dir or CWD
    if rest == "":
        return base_dir or os.getcwd()
    # Default: relative to the source file dir (or CWD)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, rest))


def format_for(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in RELAXED_EXTENSIONS:
        # Relaxed syntax also reads plain JSON unchanged
        return "jexi"
    if ext == ".json":
        return "json"
    if ext in (".yaml", ".yml"):
        return "yaml"
    return "text"


async def read_forms(locator: str, config: Optional[Dict[str, Any]] = None, *, base_dir: Optional[str] = None):
    """Read a .json/.jexi/.yaml file's contents as JSON forms (unevaluated)."""
    path = resolve_path(locator, base_dir)
    cfg = dict(config or {})
    encoding = cfg.get("encoding", "utf-8")
    try:
        with open(path, "r", encoding=encoding) as f:
            text = f.read()
    except OSError as e:
        raise FileNotFoundError(f"Could not read file '{locator}': {e}") from e

    fmt = cfg.get("format") or format_for(path)
    if fmt == "text":
        return text
    if fmt == "json":
        # Strict: a .json file that isn't JSON is an error, not YAML
        try:
            return parse_json(text)
        except ValueError as e:
            raise ValueError(f"The file '{locator}' contains invalid JSON: {e}") from e
    try:
        return deserialize(text, fmt=fmt)
    except ValueError as e:
        raise ValueError(f"The file '{locator}' contains invalid {fmt}: {e}") from e


async def write_value(locator: str, data: Any, config: Optional[Dict[str, Any]] = None, *, base_dir: Optional[str] = None):
    """Write a value as JSON (or YAML for .yaml/.yml); strings go to other files verbatim."""
    path = resolve_path(locator, base_dir)
    cfg = dict(config or {})
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fmt = cfg.get("format") or format_for(path)
    if fmt in ("json", "jexi"):
        text = serialize(data, fmt="json", pretty=True)
    elif fmt == "yaml":
        text = serialize(data, fmt="yaml")
    else:
        text = str(data)
    with open(path, "w", encoding=cfg.get("encoding", "utf-8")) as f:
        f.write(text)
    return path
