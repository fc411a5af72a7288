"""
Unit tests for runtime settings and the CLI wiring.
"""

import json
import logging

import pytest

from callmachines import monitoring
from callmachines.config import RuntimeSettings, load_settings
from callmachines.run import build_runtime, main


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings(env={})
        assert settings == RuntimeSettings()
        assert settings.http_timeout_ms == 5000
        assert not settings.ari_configured

    def test_file_then_environment(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "definitions_dir: /srv/machines\n"
            "default_machine: main_ivr\n"
            "http_timeout_ms: 8000\n"
            "dialplan_map:\n"
            "  from-internal/100: sales_ivr\n"
            "router:\n"
            "  start_transition: begin\n"
            "  terminal_states: [done, hung_up]\n"
            "colour: blue\n"
        )
        env = {
            "CALLMACHINES_HTTP_TIMEOUT_MS": "2500",
            "ASTERISK_URL": "http://pbx:8088",
            "ASTERISK_USERNAME": "ari",
            "ASTERISK_PASSWORD": "secret",
            "ASTERISK_APP_NAME": "ivr-app",
        }

        settings = load_settings(str(path), env=env)

        assert settings.definitions_dir == "/srv/machines"
        assert settings.http_timeout_ms == 2500
        assert settings.ari_configured

        router = settings.router_settings()
        assert router.start_transition == "begin"
        assert router.terminal_states == ("done", "hung_up")
        assert router.default_machine == "main_ivr"
        assert router.dialplan_map == {"from-internal/100": "sales_ivr"}
        assert router.input_prefix == "input_"

    @pytest.mark.parametrize("value", ["-1", "0", "soon"])
    def test_invalid_timeout(self, value):
        with pytest.raises(ValueError, match="http_timeout_ms"):
            load_settings(env={"CALLMACHINES_HTTP_TIMEOUT_MS": value})

    def test_unknown_router_setting(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"router": {"start_transition": "begin", "bogus": 1}}))
        with pytest.raises(ValueError, match="bogus"):
            load_settings(str(path), env={})

    def test_settings_file_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_settings(str(path), env={})


@pytest.fixture
def isolated_logging(monkeypatch):
    """Let main() configure logging, then drop its handlers and level."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(monitoring, "_logging_configured", False)
    yield
    for handler in list(root.handlers):
        # pytest's capture handlers subclass these and are left alone
        if handler not in handlers and type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestCli:

    @pytest.mark.asyncio
    async def test_build_runtime_without_ari(self):
        runtime, http, ari = build_runtime(RuntimeSettings(http_timeout_ms=1200))
        assert ari is None
        assert runtime.default_timeout_ms == 1200
        assert runtime.control.client is None
        await http.close()

    def test_list_and_transition(self, tmp_path, capsys, ivr_definition, monkeypatch, isolated_logging):
        for var in ("ASTERISK_URL", "ASTERISK_USERNAME", "ASTERISK_PASSWORD", "ASTERISK_APP_NAME"):
            monkeypatch.delenv(var, raising=False)
        (tmp_path / "ari_example_ivr.json").write_text(json.dumps(ivr_definition))

        with pytest.raises(SystemExit) as exc_info:
            main(["--definitions", str(tmp_path), "list"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip() == "ari_example_ivr"

        with pytest.raises(SystemExit) as exc_info:
            main(["--definitions", str(tmp_path), "transition", "ari_example_ivr", "input_0"])
        assert exc_info.value.code == 2
        result = json.loads(capsys.readouterr().out)
        assert result["accepted"] is False
        assert result["currentState"] == "new_call"

        with pytest.raises(SystemExit) as exc_info:
            main(["--definitions", str(tmp_path), "dot", "ari_example_ivr"])
        assert exc_info.value.code == 0
        assert '"none" -> "new_call"' in capsys.readouterr().out
