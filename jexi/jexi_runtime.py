# jexi_runtime.py

import inspect
import math
import os
import collections.abc
from dataclasses import dataclass, field
from typing import Any, List, Optional, Literal, Dict

import pystache

from jexi.jexi_datatypes import (
    ABSENT, Env, Closure, Convention, JexiCallable, JexiError
)
from jexi.jexi_interpreter import Evaluator
from jexi.jexi_registry import CATEGORIES, merge_registries, build_global_environment
from jexi.jexi_serialize import JexiSyntaxError, parse_relaxed, parse_json
from jexi.jexi_symbols import (
    is_reference, reference_to_name, name_to_reference, find_reference_keys
)
from jexi.jexi_file import read_forms, write_value
from jexi.jexi_http import http_request

# ===================================================================
# 1. Configuration
# ===================================================================

FAULT_POLICIES = ("propagate", "isolate")
TEMPLATE_EVALUATION = ("sequential", "concurrent")

_OPTION_ALIASES = {
    "faultPolicy": "fault_policy",
    "templateEvaluation": "template_evaluation",
    "sourceDir": "source_dir",
}


@dataclass
class InterpreterOptions:
    """Interpreter-wide settings.

    fault_policy: 'propagate' lets a callable's exception escape every kind of
        evaluation; 'isolate' drops a failing array element (with a stderr
        diagnostic) and keeps going. Scalar evaluation always propagates.
    template_evaluation: whether plain-object property values settle one at a
        time ('sequential') or together ('concurrent').
    """
    trace: bool = False
    fault_policy: str = "propagate"
    template_evaluation: str = "sequential"
    source_dir: Optional[str] = None

    def __post_init__(self):
        if self.fault_policy not in FAULT_POLICIES:
            raise ValueError(f"fault_policy must be one of {FAULT_POLICIES}, got {self.fault_policy!r}")
        if self.template_evaluation not in TEMPLATE_EVALUATION:
            raise ValueError(
                f"template_evaluation must be one of {TEMPLATE_EVALUATION}, got {self.template_evaluation!r}"
            )
        if not self.trace and os.environ.get("JEXI_DEBUG"):
            self.trace = True

    @classmethod
    def coerce(cls, options: Any = None) -> 'InterpreterOptions':
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, collections.abc.Mapping):
            return cls(**{_OPTION_ALIASES.get(k, k): v for k, v in options.items()})
        raise TypeError(f"options must be a mapping or InterpreterOptions, not {type(options).__name__}")


# ===================================================================
# 2. Builtin registration
# ===================================================================

def jexi_builtin(category: str, name: Optional[str] = None, convention: Optional[Convention] = None):
    """Mark a StdLib method as a builtin of the given registry category."""
    if category not in CATEGORIES:
        raise ValueError(f"Unknown registry category: {category!r}")

    def decorate(func):
        func._jexi_category = category
        func._jexi_name = name
        func._jexi_convention = convention
        return func
    return decorate


def _payload(form: collections.abc.Mapping) -> Any:
    """The value under the form's (first) reference key."""
    keys = find_reference_keys(form)
    return form[keys[0]] if keys else ABSENT


def _bindings(payload: Any, form: Any = None) -> List[tuple]:
    """Normalize {"$x": 1, "$y": 2} / ["$x", 1] / [["$x", 1], ["$y", 2]] into pairs."""
    if isinstance(payload, collections.abc.Mapping):
        return list(payload.items())
    if isinstance(payload, list) and payload:
        if all(isinstance(p, list) and len(p) == 2 for p in payload):
            return [tuple(p) for p in payload]
        if len(payload) == 2 and isinstance(payload[0], str):
            return [tuple(payload)]
    raise JexiError(f"expected name/value bindings, got {payload!r}", form)


def _template_value(v):
    """Convert values into plain Python types for Mustache."""
    if isinstance(v, collections.abc.Mapping):
        return {str(k): _template_value(x) for k, x in v.items()}
    if isinstance(v, list):
        return [_template_value(x) for x in v]
    if v is ABSENT:
        return None
    return v


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def strict_equals(a, b) -> bool:
    """Same type and equal; ints and floats count as one number type."""
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def loose_equals(a, b) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return a == b
    if isinstance(a, (int, float)) and isinstance(b, str):
        a, b = b, a
    if isinstance(a, str) and isinstance(b, (int, float)):
        try:
            return float(a) == b
        except ValueError:
            return False
    if a is ABSENT or b is ABSENT:
        return (a is ABSENT or a is None) and (b is ABSENT or b is None)
    return a == b


# ===================================================================
# 3. The Standard Library
# ===================================================================
class StdLib:
    """Contains Python implementations for all Jexi built-ins."""
    def __init__(self, interpreter: 'Interpreter'):
        self.interpreter = interpreter

    def registry_tables(self) -> Dict[str, Dict[str, Any]]:
        """The builtin registry: every decorated method, grouped by category."""
        tables: Dict[str, Dict[str, Any]] = {c: {} for c in CATEGORIES}
        for attr, member in inspect.getmembers(self):
            category = getattr(member, "_jexi_category", None)
            if category is None:
                continue
            name = member._jexi_name or attr.lstrip('_').replace('_', '-')
            if member._jexi_convention is not None:
                member = JexiCallable(member, member._jexi_convention, name)
            tables[category][name] = member
        tables["globals"]["pi"] = math.pi
        return tables

    # --- Scoping and assignment ---
    @jexi_builtin("special_forms")
    async def _var(self, form, env: Env, interp):
        """{ $var: { $x: 1 } } binds in the current env and evaluates to ABSENT."""
        for name, expr in _bindings(_payload(form), form):
            value = await interp.evaluate(expr, env)
            if isinstance(value, Closure) and value.name == "fn":
                value.name = reference_to_name(name)
            env.set(name, value)
        return ABSENT

    @jexi_builtin("special_forms")
    async def _set(self, form, env: Env, interp):
        """{ $set: { $a.b.c: 1 } } writes through a path, creating structure on demand."""
        for path, expr in _bindings(_payload(form), form):
            value = await interp.evaluate(expr, env)
            env.set_path(path, value)
        return ABSENT

    async def _scoped(self, bindings, body, env: Env, interp, form):
        # Every binding sees the outer env, not its siblings (let, not letrec)
        values = []
        for name, expr in _bindings(bindings, form):
            values.append((name, await interp.evaluate(expr, env)))
        local = env.create_child()
        for name, value in values:
            local.set(name, value)
        return await interp.evaluate(body, local)

    @jexi_builtin("special_forms")
    async def _local(self, form, env: Env, interp):
        """{ $local: { var: { $x: 1 }, in: body } }"""
        spec = _payload(form)
        if not isinstance(spec, collections.abc.Mapping) or "in" not in spec:
            raise JexiError("local expects { var: {...}, in: body }", form)
        return await self._scoped(spec.get("var", {}), spec["in"], env, interp, form)

    @jexi_builtin("special_forms")
    async def _let(self, form, env: Env, interp):
        """{ $let: { $x: 1 }, in: body }"""
        if "in" not in form:
            raise JexiError("let expects an 'in' body", form)
        return await self._scoped(_payload(form), form["in"], env, interp, form)

    # --- Functions ---
    @jexi_builtin("special_forms")
    def _fn(self, form, env: Env, interp):
        """{ $fn: [ $x, $y ], =>: body } or { $fn: { $name: $x, key: $y }, =>: body }"""
        if "=>" not in form:
            raise JexiError("fn expects a '=>' body", form)
        return Closure(_payload(form), form["=>"], env, interp)

    @jexi_builtin("special_forms", name="lambda")
    def _lambda(self, form, env: Env, interp):
        return self._fn(form, env, interp)

    @jexi_builtin("macros")
    def _function(self, form):
        """{ $function: { $name: params }, =>: body } -> { $var: { $name: { $fn: params, =>: body }}}

        The expansion refers to $var and $fn by name; rebinding either in the
        caller's scope changes what this expands into.
        """
        decl = _payload(form)
        names = find_reference_keys(decl) if isinstance(decl, collections.abc.Mapping) else []
        if not names:
            raise JexiError("function expects { $name: params }", form)
        name = names[0]
        params = decl[name] if len(decl) == 1 else dict(decl)
        return {"$var": {name: {"$fn": params, "=>": form.get("=>")}}}

    # --- Control flow ---
    @jexi_builtin("special_forms", name="if")
    async def _if(self, form, env: Env, interp):
        """{ $if: cond, then: a, else: b } evaluates only the chosen branch."""
        branch = "then" if await interp.evaluate(_payload(form), env) else "else"
        if branch not in form:
            return ABSENT
        return await interp.evaluate(form[branch], env)

    @jexi_builtin("special_forms")
    def _quote(self, form, env: Env, interp):
        return _payload(form)

    @jexi_builtin("special_forms")
    async def _exit(self, form, env: Env, interp):
        """Ask the host loop to stop after the current top-level form."""
        env.root.exit_requested = True
        payload = _payload(form)
        return await interp.evaluate(payload, env) if payload not in ([], None) else ABSENT

    @jexi_builtin("plain_functions")
    def _do(self, *evaled_forms):
        return evaled_forms[-1] if evaled_forms else []

    @jexi_builtin("plain_functions", convention=Convention.POSITIONAL)
    async def _eval(self, args, env: Env, interp):
        """{ $eval: [ "$forms" ] } evaluates data produced at runtime as a form."""
        return await interp.evaluate(args[0] if args else ABSENT, env)

    # --- Collections ---
    @jexi_builtin("keyword_args")
    async def _map(self, obj, env: Env, interp):
        """{ $map: [ 0, 1, 2 ], to: fn } applies fn to each element in order."""
        items = _payload(obj)
        fn = obj.get("to", ABSENT)
        if fn is ABSENT:
            raise JexiError("map expects a 'to' function", obj)
        if not isinstance(items, list):
            items = [items]
        results = []
        for item in items:
            results.append(await interp.call(fn, [item], env))
        return results

    @jexi_builtin("plain_functions")
    def _first(self, seq):
        return seq[0] if seq else ABSENT

    @jexi_builtin("plain_functions")
    def _last(self, seq):
        return seq[-1] if seq else ABSENT

    @jexi_builtin("plain_functions")
    def _rest(self, seq):
        return list(seq[1:]) if seq else []

    @jexi_builtin("plain_functions")
    def _count(self, seq): return len(seq)

    # --- Math and Logic ---
    @jexi_builtin("plain_functions", name="!")
    def _not(self, x): return not x
    @jexi_builtin("plain_functions", name="&&")
    def _and(self, a, b): return a and b
    @jexi_builtin("plain_functions", name="||")
    def _or(self, a, b): return a or b
    @jexi_builtin("plain_functions", name="+")
    def _add(self, a, b): return a + b
    @jexi_builtin("plain_functions", name="-")
    def _sub(self, a, b): return a - b
    @jexi_builtin("plain_functions", name="*")
    def _mul(self, a, b): return a * b
    @jexi_builtin("plain_functions", name="/")
    def _div(self, a, b): return a / b
    @jexi_builtin("plain_functions", name="%")
    def _mod(self, a, b): return a % b
    @jexi_builtin("plain_functions", name="==")
    def _loose_eq(self, a, b): return loose_equals(a, b)
    @jexi_builtin("plain_functions", name="!=")
    def _loose_neq(self, a, b): return not loose_equals(a, b)
    @jexi_builtin("plain_functions", name="===")
    def _eq(self, a, b): return strict_equals(a, b)
    @jexi_builtin("plain_functions", name="!==")
    def _neq(self, a, b): return not self._eq(a, b)
    @jexi_builtin("plain_functions", name=">")
    def _gt(self, a, b): return a > b
    @jexi_builtin("plain_functions", name=">=")
    def _gte(self, a, b): return a >= b
    @jexi_builtin("plain_functions", name="<")
    def _lt(self, a, b): return a < b
    @jexi_builtin("plain_functions", name="<=")
    def _lte(self, a, b): return a <= b

    # --- Output ---
    @jexi_builtin("plain_functions")
    def _print(self, *parts):
        """Generates a stdout side-effect event for the host application."""
        message = " ".join(map(str, parts))
        self.interpreter.side_effects.append({"topics": ["stdout"], "message": message})
        return ABSENT

    @jexi_builtin("keyword_args")
    def _render(self, obj, env: Env, interp):
        """{ $render: "Hello {{name}}", with: { name: ... } } (defaults to the visible bindings)."""
        template = _payload(obj)
        data = obj.get("with", ABSENT)
        if data is ABSENT:
            data = {k: v for k, v in env.flatten().items() if not callable(v)}
        renderer = pystache.Renderer(escape=lambda u: u)
        return renderer.render(str(template), _template_value(data))

    # --- Files and network ---
    @jexi_builtin("plain_functions")
    async def _read(self, filepath):
        """Read a .json/.jexi/.yaml file's contents as (unevaluated) JSON."""
        return await read_forms(filepath, base_dir=self.interpreter.options.source_dir)

    @jexi_builtin("plain_functions", convention=Convention.POSITIONAL)
    async def _run(self, args, env: Env, interp):
        """{ $run: "file.jexi" } reads a file and evaluates it here."""
        if not args:
            raise JexiError("run expects a file path")
        forms = await read_forms(args[0], base_dir=interp.options.source_dir)
        return await interp.evaluate(forms, env)

    @jexi_builtin("special_forms")
    async def _load(self, form, env: Env, interp):
        """{ $load: "file.jexi", as: "name" } binds the file's forms unevaluated."""
        if "as" not in form:
            raise JexiError("load expects an 'as' name", form)
        path = await interp.evaluate(_payload(form), env)
        name = form["as"]
        forms = await read_forms(path, base_dir=interp.options.source_dir)
        env.set(reference_to_name(name), forms)
        return ABSENT

    @jexi_builtin("keyword_args")
    async def _write(self, obj, env: Env, interp):
        """{ $write: "out.json", value: data }"""
        return await write_value(_payload(obj), obj.get("value"), base_dir=interp.options.source_dir)

    @jexi_builtin("keyword_args")
    async def _fetch(self, obj, env: Env, interp):
        """{ $fetch: url, method: POST, body: {...}, headers: {...}, params: {...} }"""
        config = {k: obj[k] for k in ("headers", "params", "timeout", "retries", "full") if k in obj}
        method = str(obj.get("method", "GET"))
        data = obj.get("body")
        return await http_request(method, _payload(obj), config=config, data=data)


# ===================================================================
# 4. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of evaluating source text."""
    status: Literal['success', 'error', 'incomplete']
    value: Any = None
    error_message: Optional[str] = None
    error_line: Optional[int] = None
    error_col: Optional[int] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status == 'success':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_line is not None and not msg.startswith("Error on line "):
            col_info = f", col {self.error_col}" if self.error_col is not None else ""
            return f"Error on line {self.error_line}{col_info}: {msg}"
        return msg


class Interpreter:
    """A Jexi interpreter: the builtin + extension registry and its evaluator.

    extensions: registry tables by category (special_forms/specialForms,
        macros, keyword_args/keywordArgs, plain_functions/plainFunctions,
        handlers, globals); entries override builtins of the same name.
    options: InterpreterOptions or a mapping of its fields.
    """

    is_reference = staticmethod(is_reference)
    reference_to_name = staticmethod(reference_to_name)
    name_to_reference = staticmethod(name_to_reference)

    def __init__(self, extensions: Optional[Any] = None, options: Optional[Any] = None):
        self.options = InterpreterOptions.coerce(options)
        builtins = StdLib(self).registry_tables()
        self.registry = merge_registries(builtins, extensions)
        self.globals = build_global_environment(builtins, extensions)
        self.evaluator = Evaluator(self, self.options, handlers=self.registry.handlers)

    @property
    def side_effects(self) -> List[Dict[str, Any]]:
        """Effects recorded so far. run_source starts each run with an empty list."""
        return self.evaluator.side_effects

    def create_env(self, parent: Optional[Env] = None) -> Env:
        """A fresh scope under `parent` (the globals by default)."""
        return Env(parent=parent if parent is not None else self.globals)

    async def evaluate(self, form: Any, env: Optional[Env] = None) -> Any:
        return await self.evaluator.eval(form, env if env is not None else self.globals)

    async def call(self, fn: Any, args: Any, env: Optional[Env] = None) -> Any:
        return await self.evaluator.call(fn, args, env)

    def _format_stacktrace(self, stack: List[Dict[str, Any]]) -> str:
        if not stack:
            return ""
        return "Jexi stacktrace: " + " ".join(f"({frame['name']})" for frame in stack)

    def _format_runtime_error(self, e: Exception) -> str:
        stack = self.evaluator.stack_at(e)
        match e:
            case JexiError():
                msg = f"JexiError: {e}"
            case FileNotFoundError():
                msg = f"FileNotFound: {e}"
            case TypeError() | AttributeError() | ValueError() | ZeroDivisionError() | KeyError():
                name = stack[-1]["name"] if stack else None
                msg = f"{type(e).__name__}: {e}" + (f" in ({name})" if name else "")
            case _:
                msg = f"InternalError: {e}"
        st = self._format_stacktrace(stack)
        if st:
            msg += "\n" + st
        return msg

    async def run_source(self, source: str, env: Optional[Env] = None, *, relaxed: bool = True,
                         allow_incomplete: bool = True) -> ExecutionResult:
        """Parse and evaluate source text; every outcome comes back as a value.

        With allow_incomplete=False, text that ends before its form does is
        reported as an error rather than as 'incomplete'.
        """
        self.evaluator.side_effects.clear()
        self.evaluator.call_stack.clear()
        self.evaluator.last_fault = None
        try:
            form = parse_relaxed(source) if relaxed else parse_json(source)
        except JexiSyntaxError as e:
            status = 'incomplete' if e.incomplete and allow_incomplete else 'error'
            msg = f"SyntaxError: {e}"
            if status == 'error':
                self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status=status,
                error_message=msg,
                error_line=e.line,
                error_col=e.col,
                side_effects=list(self.evaluator.side_effects),
            )

        try:
            value = await self.evaluate(form, env)
        except Exception as e:
            err_msg = self._format_runtime_error(e)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                side_effects=list(self.evaluator.side_effects),
            )
        return ExecutionResult(status='success', value=value, side_effects=list(self.evaluator.side_effects))

    async def run_file(self, path: str, env: Optional[Env] = None) -> Any:
        """Read a file and evaluate its forms."""
        forms = await read_forms(path, base_dir=self.options.source_dir)
        return await self.evaluate(forms, env)
