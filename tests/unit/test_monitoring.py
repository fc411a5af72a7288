"""
Unit tests for logging helpers, operation tracking and observer hooks.
"""

import json
import logging

import pytest

from callmachines.hooks import LoggingHooks, MachineHooks, run_hook
from callmachines.monitoring import JSONFormatter, get_logger, track_async_operation, track_operation


class TestJSONFormatter:

    def test_includes_session_fields(self):
        record = logging.LogRecord("callmachines.router", logging.INFO, __file__, 1, "bound %s", ("chan-1",), None)
        record.session_id = "chan-1"
        record.machine_id = "ivr"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "bound chan-1"
        assert entry["level"] == "INFO"
        assert entry["session_id"] == "chan-1"
        assert entry["machine_id"] == "ivr"
        assert "state" not in entry


class TestTracking:

    def test_get_logger_is_cached(self):
        assert get_logger("callmachines.test") is get_logger("callmachines.test")

    def test_track_operation_reraises(self):
        with pytest.raises(KeyError):
            with track_operation("compile", machine="x"):
                raise KeyError("boom")

    @pytest.mark.asyncio
    async def test_track_async_operation(self):
        async with track_async_operation("external_call", method="GET"):
            value = 1
        assert value == 1


class TestRunHook:

    @pytest.mark.asyncio
    async def test_sync_and_async_hooks(self):
        class Hooks(MachineHooks):
            def on_state_enter(self, instance, state_name):
                return f"sync:{state_name}"

            async def on_state_exit(self, instance, state_name):
                return f"async:{state_name}"

        hooks = Hooks()
        assert await run_hook(hooks, "on_state_enter", None, "a") == "sync:a"
        assert await run_hook(hooks, "on_state_exit", None, "b") == "async:b"
        assert await run_hook(hooks, "on_error", None, {}, RuntimeError()) is None

    @pytest.mark.asyncio
    async def test_logging_hooks(self, caplog):
        class Instance:
            session_id = "chan-1"

        with caplog.at_level(logging.INFO, logger="callmachines.hooks"):
            await run_hook(LoggingHooks(), "on_transition", Instance(), {"transition": "go", "from": "a", "to": "b"})
        assert "[chan-1] Transition go: a -> b" in caplog.text
