"""
A pretty-printer for Jexi values.

Output is JSON wherever the value is plain data, so whatever the REPL prints
can be pasted back in. Functions print as the form that would recreate them.
"""
import collections.abc
import json

from jexi.jexi_datatypes import ABSENT, Closure, Env, JexiCallable


class Printer:
    """Formats Jexi values into readable JSON source strings."""

    def __init__(self, indent_width=2, inline_width=60):
        self._indent_char = " " * indent_width
        self._inline_width = inline_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        if obj is ABSENT: return self._pformat_absent

        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Closure): return self._pformat_closure
        if isinstance(obj, JexiCallable): return self._pformat_callable
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        if callable(obj): return self._pformat_host_function
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            dict: self._pformat_dict,
            list: self._pformat_list,
            Closure: self._pformat_closure,
            Env: self._pformat_env,
        }

    def _pformat_primitive(self, obj, level):
        return json.dumps(obj)

    def _pformat_str(self, obj, level):
        return json.dumps(obj, ensure_ascii=False)

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_absent(self, obj, level):
        return 'absent'

    def _pformat_list(self, obj, level):
        if not obj:
            return "[]"
        items = [self.pformat(item, level + 1) for item in obj]
        return self._wrap("[", "]", items, level)

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        items = [f"{json.dumps(str(k), ensure_ascii=False)}: {self.pformat(v, level + 1)}"
                 for k, v in obj.items()]
        return self._wrap("{", "}", items, level)

    def _wrap(self, open_, close, items, level):
        inline = f"{open_}{', '.join(items)}{close}"
        if len(inline) <= self._inline_width and '\n' not in inline:
            return inline
        indent = self._indent_char * (level + 1)
        body = ",\n".join(f"{indent}{item}" for item in items)
        return f"{open_}\n{body}\n{self._indent_char * level}{close}"

    def _pformat_closure(self, obj, level):
        return self._pformat_dict({"$fn": obj.params, "=>": obj.body}, level)

    def _pformat_callable(self, obj, level):
        return f"<{obj.convention.value} {obj.name or 'anonymous'}>"

    def _pformat_host_function(self, obj, level):
        return f"<plain {getattr(obj, '__name__', 'anonymous')}>"

    def _pformat_env(self, obj, level):
        return repr(obj)
