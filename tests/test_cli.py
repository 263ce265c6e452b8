"""Scenario tests for the reqchain CLI (api and chain commands)."""

import json
import textwrap
from unittest.mock import patch

import pytest
import yaml

from reqchain.cli import main
from tests.conftest import make_request_result

CONFIG = {
    "config": {"defaultProfile": "dev", "envFile": ".env"},
    "profiles": {
        "dev": {"host": "dev.example.com"},
        "prod": {"host": "prod.example.com"},
    },
    "globalVariables": {"apiVersion": "v2"},
    "apis": {
        "users": {
            "baseUrl": "https://{{host}}/{{apiVersion}}",
            "headers": {"Authorization": "Bearer {{secret.API_TOKEN}}", "X-Trace": "{{traceId?}}"},
            "endpoints": {
                "get": {"method": "GET", "path": "/users/{{userId}}"},
                "list": {"method": "GET", "path": "/users", "params": {"page": "{{page?}}"}},
                "create": {"method": "POST", "path": "/users", "body": {"name": "{{name}}"}},
            },
        },
    },
    "chains": {
        "createAndFetch": {
            "description": "Create a user then fetch it",
            "vars": {"name": "Ada"},
            "steps": [
                {"id": "create", "call": "users.create"},
                {
                    "id": "fetch",
                    "call": "users.get",
                    "with": {"pathParams": {"userId": "{{steps.create.response.body.id}}"}},
                },
            ],
        },
        "fetchOne": {
            "vars": {"userId": 5},
            "steps": [{"id": "fetch", "call": "users.get"}],
        },
    },
}


@pytest.fixture
def project(tmp_project):
    (tmp_project / ".reqchain.yaml").write_text(yaml.dump(CONFIG))
    (tmp_project / ".env").write_text("API_TOKEN=s3cr3t-token\n")
    return tmp_project


# ── api command ──────────────────────────────────────────────────────────


class TestApiCommand:
    @patch("reqchain.executor.execute_request")
    def test_sends_resolved_request(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(body={"id": 7, "name": "Ada"})
        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=7"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"id": 7, "name": "Ada"}
        method, url, headers, body, timeout = mock_exec.call_args.args
        assert method == "GET"
        assert url == "https://dev.example.com/v2/users/7"
        assert headers == {"Authorization": "Bearer s3cr3t-token"}
        assert body is None

    @patch("reqchain.executor.execute_request")
    def test_optional_param_omitted_and_included(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(body=[])
        runner.invoke(main, ["api", "users", "list"])
        assert mock_exec.call_args.args[1] == "https://dev.example.com/v2/users"

        runner.invoke(main, ["api", "users", "list", "-v", "page=2"])
        assert mock_exec.call_args.args[1] == "https://dev.example.com/v2/users?page=2"

    @patch("reqchain.executor.execute_request")
    def test_profile_selection(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(body={})
        runner.invoke(main, ["api", "users", "get", "-v", "userId=1", "-p", "prod"])
        assert mock_exec.call_args.args[1].startswith("https://prod.example.com/")

        runner.invoke(main, ["api", "users", "get", "-v", "userId=1", "--no-default-profile", "-v", "host=h"])
        assert mock_exec.call_args.args[1].startswith("https://h/")

    @patch("reqchain.executor.execute_request")
    def test_json_output(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(
            status_code=201,
            status_text="Created",
            body={"id": 1},
            headers={"Content-Type": "application/json"},
        )
        result = runner.invoke(main, ["api", "users", "create", "-v", "name=x", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == 201
        assert data["statusText"] == "Created"
        assert data["body"] == {"id": 1}
        assert data["headers"]["Content-Type"] == "application/json"
        assert data["elapsed_ms"] == 42

    @patch("reqchain.executor.execute_request")
    def test_http_error_exits_nonzero(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(status_code=404, status_text="Not Found", body={"e": 1})
        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=9"])
        assert result.exit_code == 1
        assert "HTTP 404: Not Found" in result.output

    @patch("reqchain.executor.execute_request")
    def test_dry_run_masks_secrets(self, mock_exec, runner, project):
        result = runner.invoke(main, ["api", "users", "create", "-v", "name=Ada", "--dry-run"])
        assert result.exit_code == 0, result.output
        mock_exec.assert_not_called()
        assert "[DRY RUN] POST https://dev.example.com/v2/users" in result.output
        assert "Authorization: Bearer [SECRET]" in result.output
        assert "s3cr3t-token" not in result.output
        assert '"name": "Ada"' in result.output

    @patch("reqchain.executor.execute_request")
    def test_transport_error(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(error="Connection error: refused")
        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=1"])
        assert result.exit_code == 1
        assert "ERROR: Connection error: refused" in result.output


class TestApiErrors:
    def test_missing_variable(self, runner, project):
        result = runner.invoke(main, ["api", "users", "get"])
        assert result.exit_code == 1
        assert "Variable Error:" in result.output
        assert "userId" in result.output

    def test_unknown_api_and_endpoint(self, runner, project):
        result = runner.invoke(main, ["api", "nope", "get"])
        assert result.exit_code == 1
        assert "Configuration Error: API 'nope' not found" in result.output

        result = runner.invoke(main, ["api", "users", "nope"])
        assert "Configuration Error: Endpoint 'nope' not found in API 'users'" in result.output

    def test_unknown_profile(self, runner, project):
        result = runner.invoke(main, ["api", "users", "get", "-p", "staging"])
        assert result.exit_code == 1
        assert "Profile 'staging' not found" in result.output

    def test_no_config(self, runner, tmp_project):
        result = runner.invoke(main, ["api", "users", "get"])
        assert result.exit_code == 1
        assert "Configuration Error: No reqchain config file found" in result.output

    def test_explicit_missing_config(self, runner, project):
        result = runner.invoke(main, ["api", "users", "get", "-c", "missing.yaml"])
        assert result.exit_code == 1
        assert "Config file not found: missing.yaml" in result.output


# ── chain command ────────────────────────────────────────────────────────


class TestChainCommand:
    @patch("reqchain.executor.execute_request")
    def test_prints_last_body(self, mock_exec, runner, project):
        mock_exec.side_effect = [
            make_request_result(status_code=201, body={"id": 11}),
            make_request_result(body={"id": 11, "name": "Ada"}),
        ]
        result = runner.invoke(main, ["chain", "createAndFetch"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"id": 11, "name": "Ada"}
        first, second = mock_exec.call_args_list
        assert first.args[3] == {"name": "Ada"}
        assert second.args[1] == "https://dev.example.com/v2/users/11"

    @patch("reqchain.executor.execute_request")
    def test_full_output(self, mock_exec, runner, project):
        mock_exec.side_effect = [
            make_request_result(status_code=201, body={"id": 3}),
            make_request_result(body={"id": 3}),
        ]
        result = runner.invoke(main, ["chain", "createAndFetch", "--chain-output", "full"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["chainName"] == "createAndFetch"
        assert data["success"] is True
        assert [s["stepId"] for s in data["steps"]] == ["create", "fetch"]

    @patch("reqchain.executor.execute_request")
    def test_failure_stops_chain(self, mock_exec, runner, project):
        mock_exec.return_value = make_request_result(status_code=500, status_text="Internal Server Error")
        result = runner.invoke(main, ["chain", "createAndFetch"])

        assert result.exit_code == 1
        assert mock_exec.call_count == 1
        assert "Chain Error: Step 'create' failed: HTTP 500: Internal Server Error" in result.output

    @patch("reqchain.executor.execute_request")
    def test_dry_run_full_output_masks_secrets(self, mock_exec, runner, project):
        result = runner.invoke(main, ["chain", "fetchOne", "--dry-run", "--chain-output", "full"])

        assert result.exit_code == 0, result.output
        mock_exec.assert_not_called()
        data = json.loads(result.output)
        step = data["steps"][0]
        assert step["request"]["url"] == "https://dev.example.com/v2/users/5"
        assert step["request"]["headers"]["Authorization"] == "Bearer [SECRET]"
        assert step["response"]["statusText"] == "OK (DRY RUN)"

    @patch("reqchain.executor.execute_request")
    def test_dry_run_dependent_step_fails(self, mock_exec, runner, project):
        result = runner.invoke(main, ["chain", "createAndFetch", "--dry-run"])
        mock_exec.assert_not_called()
        assert result.exit_code == 1
        assert "Step 'fetch' failed: Variable resolution failed" in result.output

    def test_unknown_chain(self, runner, project):
        result = runner.invoke(main, ["chain", "nope"])
        assert result.exit_code == 1
        assert "Configuration Error: Chain 'nope' not found" in result.output

    @patch("reqchain.executor.execute_request")
    def test_verbose_logs_steps_without_secrets(self, mock_exec, runner, project):
        mock_exec.side_effect = [
            make_request_result(status_code=201, body={"id": 1}),
            make_request_result(body={"id": 1}),
        ]
        result = runner.invoke(main, ["chain", "createAndFetch", "--verbose"])
        assert "Starting chain 'createAndFetch'" in result.output
        assert "Step 2/2: fetch" in result.output
        assert "s3cr3t-token" not in result.output


# ── Plugins from config ──────────────────────────────────────────────────


class TestConfigPlugins:
    @patch("reqchain.executor.execute_request")
    def test_plugin_sources_and_config(self, mock_exec, runner, project, monkeypatch):
        (project / "tenant_plugin.py").write_text(
            textwrap.dedent(
                """
                def setup(context):
                    tenant = context.config["tenant"]
                    context.register_variable_source("tenant", lambda: tenant)
                    context.register_parameterized_variable_source("scoped", lambda p: f"{tenant}:{p}")
                """,
            ),
        )
        monkeypatch.syspath_prepend(str(project))
        config = dict(CONFIG)
        config["plugins"] = [{"name": "tenant", "module": "tenant_plugin:setup", "config": {"tenant": "{{host}}"}}]
        config["apis"] = {
            "svc": {
                "baseUrl": "http://h",
                "headers": {"X-Tenant": "{{plugins.tenant.tenant}}"},
                "endpoints": {"ping": {"path": "/ping", "params": {"s": '{{plugins.tenant.scoped("read")}}'}}},
            },
        }
        (project / ".reqchain.yaml").write_text(yaml.dump(config))
        mock_exec.return_value = make_request_result(body="pong")

        result = runner.invoke(main, ["api", "svc", "ping"])

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "pong"
        _, url, headers, _, _ = mock_exec.call_args.args
        assert headers == {"X-Tenant": "dev.example.com"}
        assert url == "http://h/ping?s=dev.example.com%3Aread"

    def test_bad_plugin_module(self, runner, project):
        config = dict(CONFIG)
        config["plugins"] = [{"name": "x", "module": "definitely_missing_mod:setup"}]
        (project / ".reqchain.yaml").write_text(yaml.dump(config))
        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=1"])
        assert result.exit_code == 1
        assert "Failed to load plugin 'x'" in result.output

    @patch("reqchain.executor.execute_request")
    def test_failing_hook_reports_error(self, mock_exec, runner, project, monkeypatch):
        (project / "broken_hooks.py").write_text(
            textwrap.dedent(
                """
                def setup(context):
                    def hook(request):
                        raise RuntimeError("hook exploded")

                    context.register_pre_request_hook(hook)
                """,
            ),
        )
        monkeypatch.syspath_prepend(str(project))
        config = dict(CONFIG)
        config["plugins"] = [{"name": "hooks", "module": "broken_hooks:setup"}]
        (project / ".reqchain.yaml").write_text(yaml.dump(config))

        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=1"])

        assert result.exit_code == 1
        assert "ERROR: hook exploded" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)
        mock_exec.assert_not_called()

    def test_failing_plugin_setup_reports_error(self, runner, project, monkeypatch):
        (project / "broken_setup.py").write_text("def setup(context):\n    raise KeyError('tenant')\n")
        monkeypatch.syspath_prepend(str(project))
        config = dict(CONFIG)
        config["plugins"] = [{"name": "bad", "module": "broken_setup:setup"}]
        (project / ".reqchain.yaml").write_text(yaml.dump(config))

        result = runner.invoke(main, ["api", "users", "get", "-v", "userId=1"])

        assert result.exit_code == 1
        assert "ERROR: 'tenant'" in result.output
