"""
Unit tests for SessionRouter and MachineSelector.
"""

import pytest

from callmachines import (
    MachineRegistry,
    MemoryDefinitionStore,
    RouterSettings,
    SessionEnd,
    SessionInput,
    SessionRouter,
    SessionStart,
)
from callmachines.errors import SessionBindingMissing
from callmachines.router import MachineSelector


def get_dtmf_machine():
    return {
        "id": "dtmf_machine",
        "initial": "waiting",
        "transitions": [{
            "name": "handleDtmf",
            "from": "waiting",
            "to": "got_digit",
            "actions": [{"type": "assign", "values": {"digit": "payload.digit"}}],
        }],
    }


def get_no_start_machine():
    return {
        "id": "no_start",
        "initial": "idle",
        "transitions": [{"name": "disconnect", "from": "*", "to": "gone"}],
    }


@pytest.fixture
def registry(ivr_definition, runtime):
    store = MemoryDefinitionStore({
        "ari_example_ivr": ivr_definition,
        "dtmf_machine": get_dtmf_machine(),
        "no_start": get_no_start_machine(),
    })
    return MachineRegistry(store, runtime)


@pytest.fixture
def router(registry):
    return SessionRouter(registry)


def start_event(session_id="chan-1", args=None, context="from-internal", exten="100"):
    return SessionStart(
        session_id=session_id,
        caller_id="5551234",
        dialplan={"context": context, "exten": exten, "priority": 1},
        args=list(args or []),
        raw={"type": "StasisStart"},
    )


class TestSessionStart:

    @pytest.mark.asyncio
    async def test_binds_answers_and_starts(self, router, control_client):
        instance = await router.handle_session_start(start_event())

        assert instance is not None
        assert router.sessions == ["chan-1"]
        assert router.binding("chan-1").machine_id == "ari_example_ivr"
        assert instance.state == "main_menu"
        assert instance.data["callerId"] == "5551234"
        assert control_client.calls[0] == ("answer", "chan-1")
        assert control_client.played("chan-1") == ["sound:hello-world", "sound:main-menu"]

    @pytest.mark.asyncio
    async def test_duplicate_start_is_ignored(self, router, control_client):
        first = await router.handle_session_start(start_event())
        assert await router.handle_session_start(start_event()) is None
        assert router.binding("chan-1").instance is first
        assert control_client.names().count("answer") == 1

    @pytest.mark.asyncio
    async def test_missing_start_transition_keeps_initial_state(self, registry, router):
        await registry.init()
        instance = await router.handle_session_start(start_event(args=["no_start"]))
        assert instance.id == "no_start"
        assert instance.state == "idle"

    @pytest.mark.asyncio
    async def test_failure_hangs_up_and_unbinds(self, registry, control_client):
        router = SessionRouter(registry, RouterSettings(default_machine="does_not_exist"))

        assert await router.handle_session_start(start_event()) is None

        assert control_client.calls == [("hangup", "chan-1")]
        assert router.sessions == []

    @pytest.mark.asyncio
    async def test_start_transition_failure_hangs_up(self, router, control_client):
        control_client.fail_on.add("play")

        assert await router.handle_session_start(start_event()) is None

        assert control_client.names() == ["answer", "play", "hangup"]
        assert router.binding("chan-1") is None

    def test_require_binding(self, router):
        with pytest.raises(SessionBindingMissing):
            router.require_binding("nobody")


class TestSessionInput:

    @pytest.mark.asyncio
    async def test_digit_transition(self, router, control_client):
        await router.handle_session_start(start_event())

        result = await router.handle_input(SessionInput("chan-1", "2"))

        assert result.accepted
        assert result.state == "transfer"
        assert ("set_variable", "chan-1", "TRANSFER_REASON", "menu") in control_client.calls
        assert router.binding("chan-1").instance.data["transferredFrom"] == "main_menu"

    @pytest.mark.asyncio
    async def test_generic_input_transition(self, registry, router):
        await registry.init()
        await router.handle_session_start(start_event(args=["dtmf_machine"]))

        result = await router.handle_input(SessionInput("chan-1", "5"))

        assert result.transition == "handleDtmf"
        assert router.binding("chan-1").instance.data["digit"] == "5"

    @pytest.mark.asyncio
    async def test_invalid_input_fallback(self, router, control_client):
        await router.handle_session_start(start_event())

        result = await router.handle_input(SessionInput("chan-1", "9"))

        assert result.transition == "invalid_input"
        assert result.state == "main_menu"
        assert "sound:option-is-invalid" in control_client.played()

    @pytest.mark.asyncio
    async def test_no_candidate_transition(self, registry, router):
        await registry.init()
        await router.handle_session_start(start_event(args=["no_start"]))
        assert await router.handle_input(SessionInput("chan-1", "1")) is None

    @pytest.mark.asyncio
    async def test_unbound_session(self, router):
        assert await router.handle_input(SessionInput("ghost", "1")) is None

    @pytest.mark.asyncio
    async def test_failed_transition_is_logged_not_raised(self, router, http, http_failure):
        await router.handle_session_start(start_event())
        http.responses["https://crm.example.com/accounts?caller=5551234"] = http_failure

        assert await router.handle_input(SessionInput("chan-1", "1")) is None
        # onFailure ran lookupFailed from main_menu
        assert router.binding("chan-1").instance.state == "main_menu"


class TestSessionEnd:

    @pytest.mark.asyncio
    async def test_disconnect_runs_in_background(self, router):
        instance = await router.handle_session_start(start_event())

        await router.handle_session_end(SessionEnd("chan-1"))
        assert router.sessions == []
        assert instance.discarded

        await router.close()
        assert instance.state == "call_ended"

    @pytest.mark.asyncio
    async def test_terminal_state_skips_disconnect(self, router, control_client):
        instance = await router.handle_session_start(start_event())
        await instance.fire("hangupCall")
        assert instance.state == "call_ended"

        await router.handle_session_end(SessionEnd("chan-1"))
        await router.close()

        assert router._background_tasks == set()
        assert control_client.names().count("hangup") == 1

    @pytest.mark.asyncio
    async def test_unbound_session_end(self, router):
        await router.handle_session_end(SessionEnd("ghost"))
        assert router.sessions == []


class TestDispatch:

    @pytest.mark.asyncio
    async def test_ari_events(self, router):
        await router.handle_ari_event({
            "type": "StasisStart",
            "channel": {
                "id": "chan-9",
                "caller": {"number": "100"},
                "dialplan": {"context": "default", "exten": "s", "priority": 1},
            },
            "args": [],
        })
        result = await router.handle_ari_event({
            "type": "ChannelDtmfReceived",
            "digit": "2",
            "channel": {"id": "chan-9"},
        })
        assert result.state == "transfer"

        assert await router.handle_ari_event({"type": "ChannelVarset", "channel": {"id": "chan-9"}}) is None

        await router.handle_ari_event({"type": "StasisEnd", "channel": {"id": "chan-9"}})
        await router.close()
        assert router.sessions == []

    @pytest.mark.asyncio
    async def test_unsupported_event(self, router):
        with pytest.raises(TypeError):
            await router.dispatch({"type": "StasisStart"})


class TestMachineSelector:

    @pytest.mark.asyncio
    async def test_first_argument_when_known(self, registry):
        await registry.init()
        selector = MachineSelector("ari_example_ivr")
        assert await selector.select(start_event(args=["dtmf_machine"]), registry) == "dtmf_machine"
        assert await selector.select(start_event(args=["unknown"]), registry) == "ari_example_ivr"

    @pytest.mark.asyncio
    async def test_first_argument_loads_uncached_machine(self, registry):
        selector = MachineSelector("ari_example_ivr")
        assert "dtmf_machine" not in registry
        assert await selector.select(start_event(args=["dtmf_machine"]), registry) == "dtmf_machine"
        assert "dtmf_machine" in registry

        registry.invalidate("dtmf_machine")
        assert await selector.select(start_event(args=["dtmf_machine"]), registry) == "dtmf_machine"

    @pytest.mark.asyncio
    async def test_channel_variable(self, registry, control_client):
        control_client.variables["FSM_ID"] = "no_start"
        selector = MachineSelector("ari_example_ivr", machine_variable="FSM_ID", control=control_client)
        assert await selector.select(start_event(), registry) == "no_start"
        assert control_client.calls == [("get_variable", "chan-1", "FSM_ID")]

    @pytest.mark.asyncio
    async def test_dialplan_map(self, registry):
        selector = MachineSelector(
            "ari_example_ivr",
            dialplan_map={"from-internal/100": "dtmf_machine", "sales": "no_start"},
        )
        assert await selector.select(start_event(), registry) == "dtmf_machine"
        assert await selector.select(start_event(context="sales", exten="7"), registry) == "no_start"
        assert await selector.select(start_event(context="other"), registry) == "ari_example_ivr"
