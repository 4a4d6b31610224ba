import asyncio

import pytest

from jexi import Interpreter, ABSENT, JexiError, Closure, Convention, JexiCallable


async def run(form, interp=None, env=None):
    interp = interp or Interpreter()
    env = env or interp.create_env()
    return await interp.evaluate(form, env)


def stderr_messages(interp):
    return [e["message"] for e in interp.side_effects if e["topics"] == ["stderr"]]


@pytest.mark.asyncio
async def test_literals_pass_through():
    assert await run(5) == 5
    assert await run("plain text") == "plain text"
    assert await run("$1.50") == "$1.50"
    assert await run(None) is None
    assert await run(True) is True


@pytest.mark.asyncio
async def test_unbound_reference_is_absent_not_an_error():
    assert await run("$nothing") is ABSENT


@pytest.mark.asyncio
async def test_var_then_reference():
    interp = Interpreter()
    env = interp.create_env()
    assert await interp.evaluate({"$var": {"$x": 1}}, env) is ABSENT
    assert await interp.evaluate("$x", env) == 1
    await interp.evaluate({"$var": ["$y", None]}, env)
    assert await interp.evaluate("$y", env) is None


@pytest.mark.asyncio
async def test_arrays_evaluate_each_element_in_order():
    interp = Interpreter()
    result = await run([{"$var": {"$x": 2}}, {"$*": ["$x", 3]}, "$x"], interp)
    assert result == [ABSENT, 6, 2]


@pytest.mark.asyncio
async def test_plain_objects_are_templates():
    interp = Interpreter()
    env = interp.create_env()
    env.set("name", "Ada")
    form = {"who": "$name", "sum": {"$+": [1, 2]}, "nested": {"list": ["$name", 1]}}
    result = await interp.evaluate(form, env)
    assert result == {"who": "Ada", "sum": 3, "nested": {"list": ["Ada", 1]}}
    # The input form is untouched
    assert form["who"] == "$name"


@pytest.mark.asyncio
async def test_if_picks_one_branch():
    assert await run({"$if": True, "then": "yes", "else": "no"}) == "yes"
    assert await run({"$if": False, "then": "yes", "else": "no"}) == "no"
    assert await run({"$if": False, "then": "yes"}) is ABSENT


@pytest.mark.asyncio
async def test_if_does_not_evaluate_the_other_branch():
    interp = Interpreter()
    await run({"$if": {"$>": [2, 1]}, "then": "ok", "else": {"$print": "nope"}}, interp)
    assert interp.side_effects == []


@pytest.mark.asyncio
async def test_positional_closure():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate(
        {"$var": {"$add": {"$fn": ["$x", "$y"], "=>": {"$+": ["$x", "$y"]}}}}, env
    )
    add = env.lookup("add")
    assert isinstance(add, Closure)
    assert add.convention is Convention.POSITIONAL
    assert add.name == "add"
    assert await interp.evaluate({"$add": [1, 2]}, env) == 3
    # Host code can await the closure directly
    assert await add(4, 5) == 9


@pytest.mark.asyncio
async def test_keyword_closure():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate(
        {"$var": {"$add": {"$fn": {"$add": "$x", "y": "$y"}, "=>": {"$+": ["$x", "$y"]}}}}, env
    )
    assert env.lookup("add").convention is Convention.KEYWORD
    assert await interp.evaluate({"$add": 1, "y": 2}, env) == 3
    assert await env.lookup("add")(1, y=5) == 6


@pytest.mark.asyncio
async def test_missing_arguments_bind_absent():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate({"$var": {"$second": {"$fn": ["$a", "$b"], "=>": "$b"}}}, env)
    assert await interp.evaluate({"$second": [1]}, env) is ABSENT


@pytest.mark.asyncio
async def test_closures_capture_their_defining_env():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate([
        {"$var": {"$make": {"$fn": "$n", "=>": {"$fn": "$m", "=>": {"$+": ["$n", "$m"]}}}}},
        {"$var": {"$add10": {"$make": 10}}},
    ], env)
    assert await interp.evaluate({"$add10": 5}, env) == 15
    assert await interp.evaluate("$n", env) is ABSENT


@pytest.mark.asyncio
async def test_lambda_alias():
    interp = Interpreter()
    env = interp.create_env()
    f = await interp.evaluate({"$lambda": "$x", "=>": {"$*": ["$x", "$x"]}}, env)
    assert await interp.call(f, [7], env) == 49


@pytest.mark.asyncio
async def test_fn_requires_a_body():
    with pytest.raises(JexiError):
        await run({"$fn": ["$x"]})
    with pytest.raises(JexiError):
        await run({"$fn": [1], "=>": 1})


@pytest.mark.asyncio
async def test_map_applies_a_lambda():
    form = {"$map": [0, 1, 2], "to": {"$fn": ["$n"], "=>": {"$+": ["$n", 1]}}}
    assert await run(form) == [1, 2, 3]


@pytest.mark.asyncio
async def test_map_with_a_keyword_closure():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate(
        {"$var": {"$double": {"$fn": {"$double": "$v"}, "=>": {"$*": ["$v", 2]}}}}, env
    )
    assert await interp.evaluate({"$map": [1, 2], "to": "$double"}, env) == [2, 4]


@pytest.mark.asyncio
async def test_local_does_not_leak():
    interp = Interpreter()
    env = interp.create_env()
    assert await interp.evaluate({"$local": {"var": {"$x": 1}, "in": "$x"}}, env) == 1
    assert await interp.evaluate("$x", env) is ABSENT


@pytest.mark.asyncio
async def test_let_binds_against_the_outer_env():
    interp = Interpreter()
    env = interp.create_env()
    assert await interp.evaluate({"$let": {"$x": 1, "$y": 2}, "in": {"$+": ["$x", "$y"]}}, env) == 3
    # Not letrec: $y cannot see the sibling $x
    assert await interp.evaluate({"$let": {"$x": 1, "$y": "$x"}, "in": "$y"}, env) is ABSENT
    env.set("x", 100)
    assert await interp.evaluate({"$let": {"$x": 1, "$y": "$x"}, "in": "$y"}, env) == 100


@pytest.mark.asyncio
async def test_set_writes_nested_paths():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate({"$set": {"$config.db.host": "localhost"}}, env)
    assert await interp.evaluate("$config.db", env) == {"host": "localhost"}


@pytest.mark.asyncio
async def test_set_inside_a_closure_updates_the_outer_binding():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate([
        {"$var": {"$count": 0}},
        {"$var": {"$bump": {"$fn": [], "=>": {"$set": {"$count": {"$+": ["$count", 1]}}}}}},
        {"$bump": []},
        {"$bump": []},
    ], env)
    assert env.lookup("count") == 2


@pytest.mark.asyncio
async def test_quote_and_eval():
    assert await run({"$quote": {"$+": [1, 2]}}) == {"$+": [1, 2]}
    assert await run({"$eval": {"$quote": {"$+": [1, 2]}}}) == 3


@pytest.mark.asyncio
async def test_unrecognized_key_passes_through_with_a_diagnostic():
    interp = Interpreter()
    form = {"$bogus": 1}
    result = await run(form, interp)
    assert result == {"$bogus": 1}
    assert stderr_messages(interp) == ['passing thru object with unrecognized symbol key "$bogus"']


@pytest.mark.asyncio
async def test_non_callable_key_is_treated_like_absent():
    interp = Interpreter()
    env = interp.create_env()
    env.set("five", 5)
    assert await interp.evaluate({"$five": []}, env) == {"$five": []}
    assert len(stderr_messages(interp)) == 1


@pytest.mark.asyncio
async def test_ambiguous_object_uses_the_first_key():
    interp = Interpreter()
    assert await run({"$+": [1, 2], "$-": [5, 1]}, interp) == 3
    assert any("ambiguous" in m for m in stderr_messages(interp))


@pytest.mark.asyncio
async def test_dotted_keys_resolve_through_structure():
    seen = []
    interp = Interpreter()
    env = interp.create_env()
    env.set("console", {"log": lambda *parts: seen.append(parts)})
    await interp.evaluate({"$console.log": ["hi", 1]}, env)
    assert seen == [("hi", 1)]


@pytest.mark.asyncio
async def test_async_host_functions_are_awaited():
    async def slow_double(x):
        await asyncio.sleep(0)
        return x * 2

    interp = Interpreter({"plain_functions": {"double": slow_double}})
    assert await run({"$double": 21}, interp) == 42


@pytest.mark.asyncio
async def test_calling_conventions_receive_the_right_arguments():
    received = {}

    def special(form, env, interp):
        received["special"] = form
        return "s"

    def keyword(obj, env, interp):
        received["keyword"] = obj
        return "k"

    def positional(args, env, interp):
        received["positional"] = args
        return "p"

    interp = Interpreter({
        "special_forms": {"sp": special},
        "keyword_args": {"kw": keyword},
        "plain_functions": {"pos": JexiCallable(positional, Convention.POSITIONAL, "pos")},
        "globals": {"v": 10},
    })
    env = interp.create_env()
    assert await interp.evaluate({"$sp": "$v", "extra": "$v"}, env) == "s"
    assert received["special"] == {"$sp": "$v", "extra": "$v"}
    assert await interp.evaluate({"$kw": "$v", "extra": "$v"}, env) == "k"
    assert received["keyword"] == {"$kw": 10, "extra": 10}
    assert await interp.evaluate({"$pos": "$v"}, env) == "p"
    assert received["positional"] == [10]


@pytest.mark.asyncio
async def test_macros_rewrite_forms_without_hygiene():
    def twice(form):
        body = form["$twice"]
        return {"$do": [body, body]}

    def use_x(form):
        return "$x"

    interp = Interpreter({"macros": {"twice": twice, "use-x": use_x}})
    env = interp.create_env()
    await interp.evaluate({"$twice": {"$print": "hi"}}, env)
    assert [e["message"] for e in interp.side_effects] == ["hi", "hi"]
    env.set("x", "captured")
    assert await interp.evaluate({"$use-x": []}, env) == "captured"


@pytest.mark.asyncio
async def test_function_macro_positional_and_keyword():
    interp = Interpreter()
    env = interp.create_env()
    await interp.evaluate({"$function": {"$inc": "$n"}, "=>": {"$+": ["$n", 1]}}, env)
    assert await interp.evaluate({"$inc": 4}, env) == 5
    assert env.lookup("inc").name == "inc"

    await interp.evaluate(
        {"$function": {"$greet": "$who", "greeting": "$g"}, "=>": {"$render": "{{g}} {{who}}"}}, env
    )
    assert env.lookup("greet").convention is Convention.KEYWORD
    assert await interp.evaluate({"$greet": "Bob", "greeting": "Hi"}, env) == "Hi Bob"


@pytest.mark.asyncio
async def test_interpreter_call():
    interp = Interpreter()
    plus = interp.globals.lookup("+")
    assert await interp.call(plus, [1, 2]) == 3
    with pytest.raises(JexiError):
        await interp.call(interp.globals.lookup("if"), [True])
    with pytest.raises(JexiError):
        await interp.call(5, [])


@pytest.mark.asyncio
async def test_faults_propagate_by_default():
    def boom():
        raise ValueError("kaboom")

    interp = Interpreter({"plain_functions": {"boom": boom}})
    with pytest.raises(ValueError, match="kaboom"):
        await run([1, {"$boom": []}, 3], interp)


@pytest.mark.asyncio
async def test_isolate_policy_drops_failing_elements():
    def boom():
        raise ValueError("kaboom")

    interp = Interpreter({"plain_functions": {"boom": boom}}, {"fault_policy": "isolate"})
    assert await run([1, {"$boom": []}, 3], interp) == [1, 3]
    assert stderr_messages(interp) == ["dropped element 1: ValueError: kaboom"]
    assert interp.evaluator.call_stack == []
    # Scalars still propagate
    with pytest.raises(ValueError):
        await run({"$boom": []}, interp)


@pytest.mark.asyncio
async def test_template_evaluation_order():
    async def make_interp(mode):
        order = []

        async def slow(tag):
            await asyncio.sleep(0.05)
            order.append(tag)
            return tag

        async def fast(tag):
            order.append(tag)
            return tag

        interp = Interpreter(
            {"plain_functions": {"slow": slow, "fast": fast}},
            {"template_evaluation": mode},
        )
        result = await run({"a": {"$slow": "a"}, "b": {"$fast": "b"}}, interp)
        return result, order

    result, order = await make_interp("sequential")
    assert result == {"a": "a", "b": "b"}
    assert order == ["a", "b"]
    result, order = await make_interp("concurrent")
    assert result == {"a": "a", "b": "b"}
    assert list(result) == ["a", "b"]
    assert order == ["b", "a"]


@pytest.mark.asyncio
async def test_on_not_found_hook():
    def resolve_remote(form, env, interp):
        return {"remote": list(form)}

    interp = Interpreter({"handlers": {"on_not_found": resolve_remote}})
    assert await run({"$unknown": 1}, interp) == {"remote": ["$unknown"]}
    assert stderr_messages(interp) == []


@pytest.mark.asyncio
async def test_hook_without_an_opinion_falls_back():
    calls = []

    def no_opinion(form, env, interp):
        calls.append(form)
        return NotImplemented

    interp = Interpreter({"handlers": {"onNotFound": no_opinion, "onPlainJson": no_opinion}})
    assert await run({"$bogus": 1}, interp) == {"$bogus": 1}
    assert await run({"x": {"$+": [1, 1]}}, interp) == {"x": 2}
    assert len(calls) == 2
    assert len(stderr_messages(interp)) == 1


@pytest.mark.asyncio
async def test_on_plain_json_hook_can_keep_objects_literal():
    def literal(form, env, interp):
        return form

    interp = Interpreter({"handlers": {"on_plain_json": literal}})
    assert await run({"x": "$y"}, interp) == {"x": "$y"}


@pytest.mark.asyncio
async def test_extensions_override_builtins():
    interp = Interpreter({"plain_functions": {"+": lambda a, b: f"{a}{b}"}})
    assert await run({"$+": [1, 2]}, interp) == "12"
    assert await run({"$-": [5, 2]}, interp) == 3
    assert await run({"$if": True, "then": 1}, interp) == 1


@pytest.mark.asyncio
async def test_failed_calls_leave_no_frames_behind():
    def expand_to_fault(form):
        return {"$/": [1, 0]}

    interp = Interpreter({"macros": {"bad-macro": expand_to_fault}})
    env = interp.create_env()
    for _ in range(5):
        with pytest.raises(ZeroDivisionError):
            await interp.evaluate({"$/": [1, 0]}, env)
    with pytest.raises(ZeroDivisionError):
        await interp.evaluate({"$do": [{"$bad-macro": []}]}, env)
    with pytest.raises(JexiError):
        await interp.evaluate({"$fn": ["$x"]}, env)
    assert interp.evaluator.call_stack == []
    assert await interp.evaluate({"$+": [1, 2]}, env) == 3


@pytest.mark.asyncio
async def test_fault_stack_records_the_frames_at_the_raise():
    interp = Interpreter()
    with pytest.raises(ZeroDivisionError) as excinfo:
        await run({"$do": [1, {"$/": [1, 0]}]}, interp)
    assert [f["name"] for f in interp.evaluator.stack_at(excinfo.value)] == ["$do", "$/"]
    assert interp.evaluator.call_stack == []


@pytest.mark.asyncio
async def test_concurrent_siblings_remove_only_their_own_frames():
    seen = {}

    async def quick(tag):
        await asyncio.sleep(0)
        return tag

    async def slow(tag):
        await asyncio.sleep(0.05)
        seen["frames"] = [f["name"] for f in interp.evaluator.call_stack]
        return tag

    interp = Interpreter(
        {"plain_functions": {"quick": quick, "slow": slow}},
        {"template_evaluation": "concurrent"},
    )
    result = await run({"a": {"$quick": "a"}, "b": {"$slow": "b"}}, interp)
    assert result == {"a": "a", "b": "b"}
    assert seen["frames"] == ["$slow"]
    assert interp.evaluator.call_stack == []


@pytest.mark.asyncio
async def test_closures_compare_by_identity():
    interp = Interpreter()
    form = {"$fn": ["$x"], "=>": "$x"}
    first = await run(form, interp)
    second = await run(form, interp)
    assert first == first
    assert first != second
    assert len({first, second}) == 2
