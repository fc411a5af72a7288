"""
Unit tests for MachineService and DOT rendering.
"""

import pytest

from callmachines import MachineDefinition, MachineRegistry, MachineService, MemoryDefinitionStore, render_dot
from callmachines.errors import DefinitionError


def get_simple_definition():
    return {
        "id": "simple",
        "initial": "a",
        "terminal": ["b"],
        "transitions": [
            {"name": "go", "from": "a", "to": "b"},
            {"name": "stay", "from": "*"},
        ],
    }


@pytest.fixture
def service(runtime):
    store = MemoryDefinitionStore({"simple": get_simple_definition()})
    return MachineService(MachineRegistry(store, runtime))


class TestRenderDot:

    def test_graph(self):
        dot = render_dot(MachineDefinition.from_dict(get_simple_definition()))
        assert dot == (
            'digraph "simple" {\n'
            '  rankdir=LR;\n'
            '  "none" [shape=point];\n'
            '  "a";\n'
            '  "b" [shape=doublecircle];\n'
            '  "none" -> "a" [ label=" init " ];\n'
            '  "a" -> "b" [ label=" go " ];\n'
            '  "a" -> "a" [ label=" stay " ];\n'
            '  "b" -> "b" [ label=" stay " ];\n'
            '}\n'
        )

    def test_quotes_are_escaped(self):
        definition = MachineDefinition.from_dict({
            "id": "q",
            "initial": 'say "hi"',
            "transitions": [{"name": "t", "from": 'say "hi"', "to": "end"}],
        })
        assert '"say \\"hi\\""' in render_dot(definition)


class TestRunTransition:

    @pytest.mark.asyncio
    async def test_accepted(self, service):
        result = await service.run_transition("simple", "go")
        assert result == {
            "machineId": "simple",
            "accepted": True,
            "possibleTransitions": ["stay"],
            "newState": "b",
            "followUps": [],
            "message": "Transition 'go' successful.",
        }

    @pytest.mark.asyncio
    async def test_refused(self, service):
        result = await service.run_transition("simple", "go", current_state="b")
        assert result == {
            "machineId": "simple",
            "accepted": False,
            "possibleTransitions": ["stay"],
            "currentState": "b",
            "error": "Transition 'go' is not possible from state 'b'.",
        }

    @pytest.mark.asyncio
    async def test_unknown_machine(self, service):
        with pytest.raises(DefinitionError, match="not found"):
            await service.run_transition("nope", "go")


class TestDefinitions:

    @pytest.mark.asyncio
    async def test_list_get_and_graph(self, service):
        assert await service.list_machines() == ["simple"]
        assert (await service.get_definition("simple"))["initial"] == "a"
        assert (await service.graph("simple")).startswith('digraph "simple" {')
        with pytest.raises(DefinitionError):
            await service.get_definition("nope")

    @pytest.mark.asyncio
    async def test_save_replaces_cached_machine(self, service):
        await service.registry.init()
        changed = get_simple_definition()
        changed["initial"] = "b"

        await service.save_definition("simple", changed)

        assert (await service.registry.get("simple")).state == "b"

    @pytest.mark.asyncio
    async def test_save_accepts_json_text(self, service):
        await service.save_definition("fresh", '{"id": "fresh", "initial": "x", "transitions": []}')
        assert "fresh" in service.registry
        assert await service.list_machines() == ["fresh", "simple"]

    @pytest.mark.asyncio
    async def test_save_rejects_mismatched_id(self, service):
        with pytest.raises(DefinitionError, match="must match"):
            await service.save_definition("simple", {"id": "other", "initial": "a"})

    @pytest.mark.asyncio
    async def test_save_rejects_invalid_definition(self, service):
        broken = get_simple_definition()
        broken["initial"] = "nowhere"
        broken["transitions"].append({"from": "a"})
        with pytest.raises(DefinitionError, match="missing a name"):
            await service.save_definition("simple", broken)
        assert (await service.get_definition("simple"))["initial"] == "a"

    @pytest.mark.asyncio
    async def test_save_rejects_invalid_script_without_writing(self, service):
        await service.registry.init()
        scripted = get_simple_definition()
        scripted["methods"] = {"onGo": "import os"}
        with pytest.raises(DefinitionError, match="Unsupported construct"):
            await service.save_definition("simple", scripted)

        assert "methods" not in await service.get_definition("simple")
        assert "simple" in service.registry

    @pytest.mark.asyncio
    async def test_delete(self, service):
        await service.registry.init()
        assert await service.delete_definition("simple") is True
        assert "simple" not in service.registry
        assert await service.delete_definition("simple") is False


class TestEdits:

    @pytest.mark.asyncio
    async def test_add_state_transition_and_initial(self, service):
        await service.add_state("simple", "c")
        await service.add_transition("simple", "jump", "c", "a")
        definition = await service.set_initial("simple", "c")

        assert definition["states"] == [{"name": "c"}]
        assert definition["transitions"][-1] == {"name": "jump", "from": "c", "to": "a"}
        result = await service.run_transition("simple", "jump")
        assert result["newState"] == "a"

    @pytest.mark.asyncio
    async def test_duplicate_state(self, service):
        await service.add_state("simple", "c")
        with pytest.raises(DefinitionError, match="already exists"):
            await service.add_state("simple", "c")

    @pytest.mark.asyncio
    async def test_invalid_edits(self, service):
        with pytest.raises(DefinitionError):
            await service.add_state("simple", " ")
        with pytest.raises(DefinitionError):
            await service.add_transition("simple", "", "a")
        with pytest.raises(DefinitionError, match="required"):
            await service.set_initial("simple", "")
