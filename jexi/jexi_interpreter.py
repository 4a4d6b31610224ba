"""
The core Jexi evaluator: form dispatch, calling conventions and fallback hooks.
"""
import asyncio
import collections.abc
import inspect
import os
import sys
from typing import Any, Callable, Dict, List, Mapping, Optional

from jexi.jexi_datatypes import (
    ABSENT, Env, JexiCallable, JexiError, Convention, convention_of
)
from jexi.jexi_symbols import is_reference, find_reference_keys, name_to_reference


async def settle(value: Any) -> Any:
    """Await `value` if it is pending; plain values pass straight through."""
    while inspect.isawaitable(value):
        value = await value
    return value


class Evaluator:
    """The Jexi execution engine.

    Evaluation is a coroutine: every sub-form is fully settled before the
    enclosing form continues, so list elements and call arguments run strictly
    left to right. Only literal-template siblings may run concurrently, and
    only when the interpreter is configured with template_evaluation="concurrent".

    call_stack holds one frame per invocation in flight. Concurrent template
    siblings share it, so while they run their frames interleave; each call
    still removes only its own frame.
    """
    def __init__(self, interpreter, options, handlers: Optional[Dict[str, Callable]] = None):
        self.interpreter = interpreter
        self.options = options
        self.handlers = dict(handlers or {})
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_form = None
        self.last_fault: Optional[BaseException] = None
        self.fault_stack: List[Dict[str, Any]] = []

    # --- diagnostics ---
    def _dbg(self, *parts):
        if self.options.trace or os.environ.get("JEXI_DEBUG"):
            try:
                print("[TRACE]", *parts, file=sys.stderr)
            except Exception:
                pass

    def diagnostic(self, message: str):
        """Record a non-fatal problem as a stderr side effect."""
        self._dbg(message)
        self.side_effects.append({"topics": ["stderr"], "message": message})

    def _push_frame(self, name, convention, form) -> Dict[str, Any]:
        frame = {"name": name, "convention": convention, "form": form}
        self.call_stack.append(frame)
        return frame

    def _pop_frame(self, frame: Optional[Dict[str, Any]] = None):
        if frame is None:
            if self.call_stack:
                self.call_stack.pop()
            return
        for i in range(len(self.call_stack) - 1, -1, -1):
            if self.call_stack[i] is frame:
                del self.call_stack[i]
                return

    def _note_fault(self, exc: BaseException):
        # The innermost frame sees the exception first, with the deepest stack
        if self.last_fault is not exc:
            self.last_fault = exc
            self.fault_stack = list(self.call_stack)

    def stack_at(self, exc: BaseException) -> List[Dict[str, Any]]:
        """The frames that were active when `exc` was raised."""
        if exc is self.last_fault:
            return list(self.fault_stack)
        return list(self.call_stack)

    # --- evaluation ---
    async def eval(self, form: Any, env: Env) -> Any:
        """Recursive dispatcher for evaluating any JSON form."""
        self.current_form = form
        if is_reference(form):
            value = env.get_path(form)
            if value is ABSENT:
                self._dbg(f"eval: {form} is not bound")
            return value

        if isinstance(form, list):
            return await self._eval_list(form, env)

        if isinstance(form, collections.abc.Mapping):
            keys = find_reference_keys(form)
            if keys:
                return await self._eval_object_form(form, keys, env)
            return await self._run_hook("on_plain_json", form, env)

        self._dbg(f"eval: passing {form!r} through as plain data")
        return form

    async def _eval_list(self, forms: list, env: Env) -> list:
        results = []
        for index, element in enumerate(forms):
            if self.options.fault_policy != "isolate":
                results.append(await self.eval(element, env))
                continue
            try:
                results.append(await self.eval(element, env))
            except Exception as e:
                self.diagnostic(f"dropped element {index}: {type(e).__name__}: {e}")
        return results

    async def eval_template(self, obj: Mapping, env: Env) -> dict:
        """Evaluate every property value of a plain object into a new object."""
        if self.options.template_evaluation == "concurrent":
            values = await asyncio.gather(*(self.eval(v, env) for v in obj.values()))
            return dict(zip(obj.keys(), values))
        out = {}
        for key, value in obj.items():
            out[key] = await self.eval(value, env)
        return out

    async def eval_arguments(self, payload: Any, env: Env) -> list:
        """Coerce a payload to an argument list and evaluate it left to right."""
        args = payload if isinstance(payload, list) else [payload]
        out = []
        for arg in args:
            out.append(await self.eval(arg, env))
        return out

    async def _eval_object_form(self, form: Mapping, keys: List[str], env: Env) -> Any:
        key = keys[0]
        if len(keys) > 1:
            self.diagnostic(
                f"ambiguous object form with multiple \"$function\" keys {keys!r} (using {key})"
            )
        # Resolve through the evaluator so "$console.log" reaches into structure
        fn = await self.eval(key, env)
        convention = convention_of(fn)
        if convention is None:
            return await self._run_hook("on_not_found", form, env)
        return await self._invoke(fn, convention, key, form, env)

    async def _invoke(self, fn: Any, convention: Convention, key: str, form: Mapping, env: Env) -> Any:
        self._dbg(f"calling {key} ({convention.value})")
        frame = self._push_frame(key, convention, form)
        interp = self.interpreter
        fn = fn.func if isinstance(fn, JexiCallable) else fn
        try:
            match convention:
                case Convention.MACRO:
                    result = await settle(fn(form))
                    self._dbg(f"{key} expanded to", result)
                case Convention.SPECIAL:
                    result = await settle(fn(form, env, interp))
                case Convention.KEYWORD:
                    evaluated = await self.eval_template(form, env)
                    result = await settle(fn(evaluated, env, interp))
                case Convention.POSITIONAL:
                    args = await self.eval_arguments(form[key], env)
                    result = await settle(fn(args, env, interp))
                case _:
                    args = await self.eval_arguments(form[key], env)
                    result = await settle(fn(*args))
        except Exception as e:
            self._note_fault(e)
            raise
        finally:
            self._pop_frame(frame)
        if convention is Convention.MACRO:
            # The expansion runs in place of the macro call, outside its frame
            return await self.eval(result, env)
        return result

    async def call(self, fn: Any, args: Any, env: Optional[Env] = None) -> Any:
        """Apply a callable to already evaluated arguments.

        A list goes to positional and plain callables as-is; keyword callables
        get it wrapped as their primary payload.
        """
        env = env if env is not None else self.interpreter.globals
        interp = self.interpreter
        convention = convention_of(fn)
        name = getattr(fn, "name", None) or "it"
        fn = fn.func if isinstance(fn, JexiCallable) else fn
        match convention:
            case Convention.KEYWORD:
                if not isinstance(args, collections.abc.Mapping):
                    args = {name_to_reference(name): args[0] if len(args) == 1 else list(args)}
                return await settle(fn(args, env, interp))
            case Convention.POSITIONAL:
                return await settle(fn(list(args), env, interp))
            case Convention.PLAIN:
                return await settle(fn(*args))
            case Convention.SPECIAL | Convention.MACRO:
                raise JexiError(f"cannot apply {fn!r} to evaluated arguments")
            case _:
                raise JexiError(f"Object is not callable: {fn!r}")

    # --- hooks ---
    async def _run_hook(self, name: str, form: Mapping, env: Env) -> Any:
        handler = self.handlers.get(name)
        if handler is not None:
            result = await settle(handler(form, env, self.interpreter))
            if result is not NotImplemented:
                return result
            self._dbg(f"{name} handler has no opinion, using the default")
        default = getattr(self, f"default_{name}")
        return await default(form, env)

    async def default_on_not_found(self, form: Mapping, env: Env) -> Any:
        key = find_reference_keys(form)[0]
        self.diagnostic(f"passing thru object with unrecognized symbol key \"{key}\"")
        return form

    async def default_on_plain_json(self, form: Mapping, env: Env) -> Any:
        self._dbg("evaluating key values of plain object as a template")
        return await self.eval_template(form, env)
