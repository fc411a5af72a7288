"""
Integration tests: the example IVR driven end to end through the session
router with ARI-shaped events, loaded from the definitions directory.
"""

import shutil

import pytest

from callmachines import (
    ActionRuntime,
    LocalDefinitionStore,
    MachineRegistry,
    MetricsHooks,
    SessionRouter,
)

CRM_URL = "https://crm.example.com/accounts?caller=5551234"


def stasis_start(channel_id="chan-1"):
    return {
        "type": "StasisStart",
        "args": [],
        "channel": {
            "id": channel_id,
            "caller": {"number": "5551234"},
            "dialplan": {"context": "from-internal", "exten": "100", "priority": 1},
        },
    }


def dtmf(digit, channel_id="chan-1"):
    return {"type": "ChannelDtmfReceived", "digit": digit, "channel": {"id": channel_id}}


def stasis_end(channel_id="chan-1"):
    return {"type": "StasisEnd", "channel": {"id": channel_id}}


@pytest.fixture
def metrics():
    return MetricsHooks()


@pytest.fixture
def router(tmp_path, ivr_definition_path, http, control_client, metrics):
    shutil.copy(ivr_definition_path, tmp_path / ivr_definition_path.name)
    runtime = ActionRuntime(http=http, control=control_client, default_timeout_ms=4000)
    registry = MachineRegistry(LocalDefinitionStore(str(tmp_path)), runtime, hooks=metrics)
    return SessionRouter(registry)


class TestIvrFlow:

    @pytest.mark.asyncio
    async def test_account_lookup_flow(self, router, http, control_client):
        await router.registry.init()
        http.responses[CRM_URL] = {"name": "Ada Lovelace"}

        instance = await router.handle_ari_event(stasis_start())
        assert instance.state == "main_menu"

        result = await router.handle_ari_event(dtmf("1"))

        assert result.follow_ups == ["accountFound"]
        assert instance.state == "account_info"
        assert instance.data["account"] == {"name": "Ada Lovelace"}
        assert http.requests[0]["url"] == CRM_URL
        assert http.requests[0]["headers"] == {"Accept": "application/json"}
        assert http.requests[0]["timeout_ms"] == 3000
        assert ("set_variable", "chan-1", "ACCOUNT_NAME", "Ada Lovelace") in control_client.calls
        assert control_client.played("chan-1")[-1] == "sound:account-info"

        result = await router.handle_ari_event(dtmf("0"))
        assert result.state == "main_menu"

        await router.handle_ari_event(stasis_end())
        await router.close()

        assert instance.state == "call_ended"
        assert router.sessions == []

    @pytest.mark.asyncio
    async def test_lookup_failure_returns_to_menu(self, router, http, control_client, http_failure):
        http.responses[CRM_URL] = http_failure

        instance = await router.handle_ari_event(stasis_start())
        assert await router.handle_ari_event(dtmf("1")) is None

        assert instance.state == "main_menu"
        assert "account" not in instance.data
        assert control_client.played("chan-1")[-2:] == ["sound:try-again-later", "sound:main-menu"]

    @pytest.mark.asyncio
    async def test_three_invalid_inputs_hang_up(self, router, control_client, metrics):
        instance = await router.handle_ari_event(stasis_start())

        for digit in ("7", "8"):
            result = await router.handle_ari_event(dtmf(digit))
            assert result.transition == "invalid_input"
            assert result.state == "main_menu"

        result = await router.handle_ari_event(dtmf("9"))

        assert result.follow_ups == ["hangupCall"]
        assert instance.state == "call_ended"
        assert instance.data["invalidAttempts"] == 3
        assert ("hangup", "chan-1") in control_client.calls

        # already terminal: no disconnect transition on session end
        await router.handle_ari_event(stasis_end())
        await router.close()
        assert metrics.state_counts["call_ended"] == 1
        assert metrics.error_count == 0

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, router, control_client):
        first = await router.handle_ari_event(stasis_start("chan-1"))
        second = await router.handle_ari_event(stasis_start("chan-2"))

        await router.handle_ari_event(dtmf("2", "chan-1"))

        assert first.state == "transfer"
        assert second.state == "main_menu"
        assert sorted(router.sessions) == ["chan-1", "chan-2"]
        assert ("set_variable", "chan-1", "TRANSFER_REASON", "menu") in control_client.calls
