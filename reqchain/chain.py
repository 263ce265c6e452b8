"""reqchain chain - run a chain's steps in order, feeding each step's results forward."""

import logging
import os
from dataclasses import dataclass
from typing import Any

from reqchain.assembler import assemble_request
from reqchain.executor import HttpClient, HttpRequest, HttpResponse
from reqchain.plugins import PluginRegistry
from reqchain.resolver import (
    VariableContext,
    VariableResolutionError,
    VariableResolver,
    mask_secrets,
)

logger = logging.getLogger(__name__)

DRY_RUN_STATUS_TEXT = "OK (DRY RUN)"
DRY_RUN_BODY = '{"message": "This is a dry run response"}'


class StepCallError(ValueError):
    """Malformed ``api.endpoint`` call, or a name missing from configuration."""


@dataclass(frozen=True)
class StepExecutionResult:
    step_id: str
    request: HttpRequest
    response: HttpResponse
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "stepId": self.step_id,
            "request": self.request.to_dict(),
            "response": self.response.to_dict(),
            "success": self.success,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class ChainExecutionResult:
    chain_name: str
    success: bool
    steps: tuple[StepExecutionResult, ...]
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "chainName": self.chain_name,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def parse_step_call(call: str) -> tuple[str, str]:
    """Split ``"api_name.endpoint_name"``."""
    parts = (call or "").split(".")
    if len(parts) != 2:
        raise StepCallError(f"Invalid step call format '{call}'. Expected format: 'api_name.endpoint_name'")
    api_name, endpoint_name = parts
    if not api_name or not endpoint_name:
        raise StepCallError(
            f"Invalid step call format '{call}'. API name and endpoint name cannot be empty",
        )
    return api_name, endpoint_name


def dry_run_response() -> HttpResponse:
    return HttpResponse(status=200, status_text=DRY_RUN_STATUS_TEXT, headers={}, body=DRY_RUN_BODY)


class ChainExecutor:
    """Sequential, fail-fast chain runner.

    The HTTP client, resolver and plugin registry are injected; nothing
    here touches module-level state.
    """

    def __init__(
        self,
        http: HttpClient | None = None,
        resolver: VariableResolver | None = None,
        plugins: PluginRegistry | None = None,
    ):
        self.plugins = plugins
        self.http = http or HttpClient(plugins=plugins)
        self.resolver = resolver or VariableResolver()

    async def execute_chain(
        self,
        chain_name: str,
        chain: dict,
        config: dict,
        cli_vars: dict[str, str] | None = None,
        profile_vars: dict[str, Any] | None = None,
        global_vars: dict[str, Any] | None = None,
        env: dict[str, str] | None = None,
        dry_run: bool = False,
        secret_values: set[str] | None = None,
    ) -> ChainExecutionResult:
        """Run every step in order, stopping at the first failure.

        Secrets resolved during the run are added to *secret_values* when
        given, so callers can mask output afterwards.
        """
        base = VariableContext(
            cli=dict(cli_vars or {}),
            chain_vars=dict(chain.get("vars") or {}),
            profile=dict(profile_vars or {}),
            global_vars=dict(global_vars if global_vars is not None else config.get("globalVariables") or {}),
            env=dict(env) if env is not None else dict(os.environ),
            plugins=self.plugins,
            secret_values=secret_values if secret_values is not None else set(),
        )
        steps = chain.get("steps") or []
        results: list[StepExecutionResult] = []

        logger.info("Starting chain '%s' (%d steps)", chain_name, len(steps))
        if chain.get("description"):
            logger.info("  %s", chain["description"])

        for index, step in enumerate(steps, start=1):
            step_id = str(step.get("id", f"step{index}"))
            logger.info("Step %d/%d: %s (%s)", index, len(steps), step_id, step.get("call"))
            try:
                result = await self._execute_step(step_id, step, config, base, dry_run)
            except VariableResolutionError as e:
                result = self._failed(step_id, f"Variable resolution failed: {e}")
            except Exception as e:
                result = self._failed(step_id, str(e))

            results.append(result)
            base.steps[step_id] = {
                "request": result.request.to_dict(),
                "response": result.response.to_dict(),
            }

            if not result.success:
                error = f"Step '{step_id}' failed: {result.error}"
                logger.error(mask_secrets(error, base))
                return ChainExecutionResult(chain_name, False, tuple(results), error)
            logger.info("Step %s succeeded (%d %s)", step_id, result.response.status, result.response.status_text)

        logger.info("Chain '%s' completed successfully", chain_name)
        return ChainExecutionResult(chain_name, True, tuple(results))

    async def _execute_step(
        self,
        step_id: str,
        step: dict,
        config: dict,
        base: VariableContext,
        dry_run: bool,
    ) -> StepExecutionResult:
        api_name, endpoint_name = parse_step_call(step.get("call", ""))
        api = (config.get("apis") or {}).get(api_name)
        if api is None:
            raise StepCallError(f"API '{api_name}' not found in configuration")
        endpoint = (api.get("endpoints") or {}).get(endpoint_name)
        if endpoint is None:
            raise StepCallError(f"Endpoint '{endpoint_name}' not found in API '{api_name}'")

        context = base.replace(
            api=dict(api.get("variables") or {}),
            endpoint=dict(endpoint.get("variables") or {}),
            steps=dict(base.steps),
        )
        request = await assemble_request(api, endpoint, self.resolver, context, step.get("with"))
        logger.info("  %s %s", request.method, mask_secrets(request.url, context))

        if dry_run:
            return StepExecutionResult(step_id, request, dry_run_response(), True)

        response = await self.http.execute(request)
        logger.debug("  Response: %d %s", response.status, response.status_text)
        success = response.status < 400
        return StepExecutionResult(
            step_id,
            request,
            response,
            success,
            None if success else f"HTTP {response.status}: {response.status_text}",
        )

    def _failed(self, step_id: str, reason: str) -> StepExecutionResult:
        return StepExecutionResult(
            step_id=step_id,
            request=HttpRequest(method="", url=""),
            response=HttpResponse(status=0, status_text=""),
            success=False,
            error=reason,
        )
