"""
Shared fixtures: in-memory collaborators and the example IVR definition.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from callmachines import (
    ActionRuntime,
    ControlClient,
    ExternalCallError,
    HttpCollaborator,
    HttpResponse,
)

EXAMPLE_DEFINITION = Path(__file__).parent.parent / "fsm_definitions" / "ari_example_ivr.json"


class FakeControlClient(ControlClient):
    """Records every call; methods listed in ``fail_on`` raise."""

    def __init__(self, variables: Optional[Dict[str, Any]] = None, fail_on=()):
        self.calls: List[Tuple] = []
        self.variables = dict(variables or {})
        self.fail_on = set(fail_on)
        self.connected = True
        self._playbacks = 0

    @property
    def available(self) -> bool:
        return self.connected

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def played(self, channel_id: Optional[str] = None) -> List[str]:
        return [c[2] for c in self.calls if c[0] == "play" and (channel_id is None or c[1] == channel_id)]

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def answer(self, channel_id):
        self._record("answer", channel_id)

    async def hangup(self, channel_id):
        self._record("hangup", channel_id)

    async def play(self, channel_id, media):
        self._record("play", channel_id, media)
        self._playbacks += 1
        return {"id": f"pb-{self._playbacks}"}

    async def get_variable(self, channel_id, variable):
        self._record("get_variable", channel_id, variable)
        return self.variables.get(variable)

    async def set_variable(self, channel_id, variable, value):
        self._record("set_variable", channel_id, variable, value)
        self.variables[variable] = value

    async def originate(self, params):
        self._record("originate", dict(params))
        return {"id": "chan-out", "name": f"PJSIP/{params['endpoint']}", "state": "Down"}


class FakeHttp(HttpCollaborator):
    """Answers by URL; a response that is an exception is raised instead."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = dict(responses or {})
        self.requests: List[Dict[str, Any]] = []

    async def request(self, method, url, body=None, headers=None, timeout_ms=5000):
        self.requests.append({
            "method": method,
            "url": url,
            "body": body,
            "headers": headers,
            "timeout_ms": timeout_ms,
        })
        response = self.responses.get(url, {})
        if isinstance(response, Exception):
            raise response
        return HttpResponse(status=200, body=response)


@pytest.fixture
def control_client():
    return FakeControlClient()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def runtime(http, control_client):
    return ActionRuntime(http=http, control=control_client)


@pytest.fixture
def ivr_definition_path() -> Path:
    return EXAMPLE_DEFINITION


@pytest.fixture
def ivr_definition(ivr_definition_path) -> Dict[str, Any]:
    return json.loads(ivr_definition_path.read_text())


@pytest.fixture
def http_failure():
    return ExternalCallError("GET https://crm.example.com returned status 503", status_code=503)
