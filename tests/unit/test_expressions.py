"""
Unit tests for the inline script engine.
"""

import pytest

from callmachines.errors import ActionConfigError, DefinitionError, ScriptError
from callmachines.expressions import ScriptEngine


def run_script(source, variables=None, functions=None, engine=None):
    engine = engine or ScriptEngine()
    script = engine.compile(source, name="test")
    return engine.run(script, variables or {}, functions)


class TestCompile:

    def test_syntax_error(self):
        with pytest.raises(DefinitionError, match="Invalid script syntax"):
            ScriptEngine().compile("fsm.x = ", name="broken")

    @pytest.mark.parametrize("source", [
        "import os",
        "def f():\n    pass",
        "for i in [1]:\n    pass",
        "lambda: 1",
    ])
    def test_unsupported_constructs(self, source):
        with pytest.raises(DefinitionError, match="Unsupported construct"):
            ScriptEngine().compile(source)

    def test_unknown_function(self):
        with pytest.raises(DefinitionError, match="not available"):
            ScriptEngine().compile("open('/etc/passwd')")

    def test_method_calls_are_rejected(self):
        with pytest.raises(DefinitionError, match="not available"):
            ScriptEngine().compile("fsm.items.clear()")

    def test_capabilities_and_extra_functions_are_callable(self):
        engine = ScriptEngine(extra_functions={"upper": str.upper})
        engine.compile("fire('x')\nlog(upper('a'))")


class TestRun:

    @pytest.mark.asyncio
    async def test_attribute_assignment_mutates_mapping(self):
        fsm = {}
        await run_script("fsm.attempts = (fsm.attempts or 0) + 1", {"fsm": fsm})
        assert fsm == {"attempts": 1}

    @pytest.mark.asyncio
    async def test_augmented_and_subscript_assignment(self):
        fsm = {"attempts": 2, "menu": {}}
        await run_script("fsm.attempts += 3\nfsm['menu']['last'] = payload.digit", {
            "fsm": fsm,
            "payload": {"digit": "4"},
        })
        assert fsm == {"attempts": 5, "menu": {"last": "4"}}

    @pytest.mark.asyncio
    async def test_locals_are_returned(self):
        result = await run_script("choice = int(payload.digit) * 2", {"payload": {"digit": "4"}})
        assert result == {"choice": 8}

    @pytest.mark.asyncio
    async def test_if_elif_else(self):
        source = (
            "if payload.digit == '1':\n"
            "    route = 'sales'\n"
            "elif payload.digit in ['2', '3']:\n"
            "    route = 'support'\n"
            "else:\n"
            "    route = 'operator'\n"
        )
        assert (await run_script(source, {"payload": {"digit": "3"}}))["route"] == "support"
        assert (await run_script(source, {"payload": {"digit": "9"}}))["route"] == "operator"

    @pytest.mark.asyncio
    async def test_expressions(self):
        source = (
            "a = not fsm.flag and 'yes'\n"
            "b = 'big' if fsm.n > 10 else 'small'\n"
            "c = f'{fsm.n}-{fsm.name}'\n"
            "d = {'k': [1, 2], 'n': -fsm.n}\n"
            "e = fsm.missing is None\n"
            "f = 1 < fsm.n <= 5\n"
            "g = true and null\n"
            "h = 7 // 2 + 7 % 2"
        )
        result = await run_script(source, {"fsm": {"flag": False, "n": 5, "name": "x"}})
        assert result == {
            "a": "yes",
            "b": "small",
            "c": "5-x",
            "d": {"k": [1, 2], "n": -5},
            "e": True,
            "f": True,
            "g": None,
            "h": 4,
        }

    @pytest.mark.asyncio
    async def test_async_functions_are_awaited(self):
        calls = []

        async def control(operation, **parameters):
            calls.append((operation, parameters))
            return {"success": True}

        result = await run_script(
            "r = control('playAudio', media='sound:' + payload.digit)",
            {"payload": {"digit": "1"}},
            {"control": control},
        )
        assert calls == [("playAudio", {"media": "sound:1"})]
        assert result["r"] == {"success": True}

    @pytest.mark.asyncio
    async def test_rebinding_a_variable_fails(self):
        with pytest.raises(ScriptError, match="Cannot rebind 'fsm'"):
            await run_script("fsm = 1", {"fsm": {}})

    @pytest.mark.asyncio
    async def test_runtime_errors_become_script_errors(self):
        with pytest.raises(ScriptError, match="Script 'test' failed"):
            await run_script("x = 1 / 0")

    @pytest.mark.asyncio
    async def test_unknown_variable(self):
        with pytest.raises(ScriptError, match="Unknown variable"):
            await run_script("x = nothing + 1")

    @pytest.mark.asyncio
    async def test_action_failures_propagate_unchanged(self):
        def external_call(request):
            raise ActionConfigError("API call configuration 'x' not found", action_type="externalApi")

        with pytest.raises(ActionConfigError) as exc_info:
            await run_script("external_call('x')", {}, {"external_call": external_call})
        assert not isinstance(exc_info.value, ScriptError)
