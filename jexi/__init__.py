"""Jexi: a JSON-embedded expression evaluator."""
from jexi.jexi_datatypes import (
    ABSENT, is_absent, Env, create_child, Convention, JexiCallable, Closure, JexiError, tag
)
from jexi.jexi_symbols import is_reference, reference_to_name, name_to_reference
from jexi.jexi_registry import Registry, build_global_environment, merge_registries
from jexi.jexi_runtime import Interpreter, InterpreterOptions, ExecutionResult, StdLib, jexi_builtin
from jexi.jexi_serialize import JexiSyntaxError, parse_relaxed, parse_json, serialize, deserialize
from jexi.jexi_printer import Printer

__all__ = [
    "ABSENT", "is_absent", "Env", "create_child", "Convention", "JexiCallable", "Closure",
    "JexiError", "tag", "is_reference", "reference_to_name", "name_to_reference",
    "Registry", "build_global_environment", "merge_registries",
    "Interpreter", "InterpreterOptions", "ExecutionResult", "StdLib", "jexi_builtin",
    "JexiSyntaxError", "parse_relaxed", "parse_json", "serialize", "deserialize", "Printer",
]
