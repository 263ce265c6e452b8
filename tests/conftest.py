"""Shared fixtures for reqchain tests."""

import json
import logging

import pytest
from click.testing import CliRunner

from reqchain import core
from reqchain.executor import HttpResponse, RequestResult
from reqchain.plugins import PluginRegistry
from reqchain.resolver import VariableContext, VariableResolver


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqchain_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqchain directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqchain"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def tmp_project(tmp_path, monkeypatch, global_reqchain_dir):
    """A temporary project directory as CWD, isolated from ~/.reqchain."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


@pytest.fixture(autouse=True)
def reset_cli_logging():
    """Drop the stderr handler a CLI run installs on the root logger."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
    root.setLevel(logging.WARNING)


@pytest.fixture
def resolver():
    return VariableResolver()


@pytest.fixture
def registry():
    return PluginRegistry()


@pytest.fixture
def context(registry):
    """Empty context with an empty environment."""
    return VariableContext(env={}, plugins=registry)


def make_request_result(
    status_code=200,
    body=None,
    headers=None,
    status_text="OK",
    elapsed_ms=42.0,
    error=None,
):
    """Factory for mock RequestResult objects."""
    r = RequestResult()
    r.status_code = status_code
    r.status_text = status_text
    r.headers = headers or {}
    r.elapsed_ms = elapsed_ms
    r.error = error
    r.raw_text = json.dumps(body) if isinstance(body, dict | list) else str(body or "")
    return r


def make_response(status=200, body=None, status_text="OK", headers=None):
    """Factory for HttpResponse objects; dict/list bodies are JSON-encoded."""
    return HttpResponse(
        status=status,
        status_text=status_text,
        headers=headers or {},
        body=json.dumps(body) if isinstance(body, dict | list) else str(body or ""),
    )


class FakeHttp:
    """Stands in for HttpClient: records requests, replays scripted responses.

    ``responses`` items may be HttpResponse objects or exceptions to raise.
    Once the script runs out, every request gets a 200 with an empty body.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def execute(self, request):
        self.requests.append(request)
        if not self.responses:
            return make_response()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_http():
    return FakeHttp()
