"""reqchain CLI - run configured API requests and request chains."""

import asyncio
import json
import logging
import sys

import click

TOOL_HELP = """\
reqchain - configuration-driven HTTP requests and request chains.

APIs, endpoints, profiles and chains are declared in a YAML config.
Values in the config may reference variables with {{...}} placeholders.

\b
COMMANDS
────────
  reqchain api API ENDPOINT [options]     Send one endpoint request
  reqchain chain CHAIN [options]          Run a chain of requests in order

\b
CONFIG
──────
  Resolution order:
    1. -c/--config flag (no fallthrough if missing)
    2. .reqchain.yaml / .reqchain.yml / reqchain.yaml / reqchain.yml in CWD
    3. ~/.reqchain/config.yaml

\b
  config:
    defaultProfile: dev          # string or list
    envFile: .env                # relative to the config file
  profiles:
    dev: {apiHost: localhost:3000}
  globalVariables:
    version: v1
  apis:
    users:
      baseUrl: http://{{apiHost}}/api
      headers: {Authorization: "Bearer {{secret.TOKEN}}"}
      endpoints:
        get: {method: GET, path: "/users/{{userId}}"}
  chains:
    lookup:
      vars: {userId: 1}
      steps:
        - id: first
          call: users.get
        - id: second
          call: users.get
          with:
            pathParams: {userId: "{{steps.first.response.body.next_id}}"}

\b
VARIABLES
─────────
  Unqualified {{name}} lookup, highest precedence first:
    -v/--var, step pathParams, chain vars, endpoint, API, profile,
    globalVariables, environment.

  Scoped forms:
    {{env.NAME}} {{secret.NAME}} {{profile.NAME}} {{api.NAME}}
    {{endpoint.NAME}} {{global.NAME}} {{chain.vars.NAME}}
    {{steps.ID.response.body.path}} {{steps.ID.request.headers.X}}
    {{plugins.NAME.VAR}} {{plugins.NAME.fn("arg", 1, {{other}})}}
    {{$timestamp}} {{$isoTimestamp}} {{$randomInt}} {{$randomInt(1,10)}} {{$guid}}

  A trailing ? makes a reference optional: a header or param whose
  optional values are all undefined is omitted from the request.
    params: {format: "{{format?}}"}

\b
PROFILES
────────
  reqchain api users get -p dev -p local      # defaults, then dev, then local
  reqchain api users get --no-default-profile -p prod

\b
OUTPUT
──────
  api:    response body on stdout; --json for status, headers and timing
  chain:  last step's body; --chain-output full for every step as JSON
  --dry-run resolves everything but sends nothing.
  --verbose logs resolution and each step to stderr. Secrets are masked.
"""


def _common_options(f):
    options = [
        click.option(
            "-c",
            "--config",
            "config_file",
            default=None,
            help="Config file path. Default: .reqchain.yaml in CWD, then ~/.reqchain/config.yaml.",
        ),
        click.option(
            "-v",
            "--var",
            multiple=True,
            help="Variable as key=value. Highest precedence. Repeatable.",
        ),
        click.option(
            "-p",
            "--profile",
            "profiles",
            multiple=True,
            help="Profile to apply after the default profiles. Repeatable; later wins.",
        ),
        click.option(
            "--no-default-profile",
            is_flag=True,
            default=False,
            help="Ignore config.defaultProfile.",
        ),
        click.option(
            "--dry-run",
            is_flag=True,
            default=False,
            help="Resolve the request(s) without sending anything.",
        ),
        click.option(
            "--verbose",
            is_flag=True,
            default=False,
            help="Log resolution and request details to stderr.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group(
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
def main():
    """Configuration-driven HTTP requests and chains."""


@main.command("api")
@click.argument("api_name")
@click.argument("endpoint_name")
@_common_options
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print status, headers, body and timing as JSON.",
)
def api_cmd(
    api_name,
    endpoint_name,
    config_file,
    var,
    profiles,
    no_default_profile,
    dry_run,
    verbose,
    as_json,
):
    """Send a single endpoint request."""
    _configure_logging(verbose)
    response = _run(
        _cmd_api(api_name, endpoint_name, config_file, var, profiles, no_default_profile, dry_run),
    )
    if response is None:
        return

    if as_json:
        click.echo(
            json.dumps(
                {**response.to_dict(), "body": _decode(response.body), "elapsed_ms": round(response.elapsed_ms)},
                indent=2,
            ),
        )
    else:
        click.echo(_format_body(response.body))
    if response.status >= 400:
        click.echo(f"HTTP {response.status}: {response.status_text}", err=True)
        sys.exit(1)


@main.command("chain")
@click.argument("chain_name")
@_common_options
@click.option(
    "--chain-output",
    type=click.Choice(["default", "full"]),
    default="default",
    help="default: last step's response body. full: every step as JSON.",
)
def chain_cmd(
    chain_name,
    config_file,
    var,
    profiles,
    no_default_profile,
    dry_run,
    verbose,
    chain_output,
):
    """Run the steps of a chain in order."""
    from reqchain.resolver import mask_secrets

    _configure_logging(verbose)
    result, context = _run(_cmd_chain(chain_name, config_file, var, profiles, no_default_profile, dry_run))

    if chain_output == "full":
        click.echo(mask_secrets(json.dumps(result.to_dict(), indent=2), context))
    elif result.steps and result.success:
        click.echo(_format_body(result.steps[-1].response.body))

    if not result.success:
        click.echo(f"Chain Error: {mask_secrets(result.error, context)}", err=True)
        sys.exit(1)


# ── Command implementations ──────────────────────────────────────────────


async def _cmd_api(api_name, endpoint_name, config_file, var, profiles, no_default_profile, dry_run):
    from reqchain.assembler import assemble_request
    from reqchain.core import ConfigError
    from reqchain.executor import HttpClient
    from reqchain.resolver import VariableResolver, mask_secrets

    config, context, registry = await _prepare(config_file, var, profiles, no_default_profile)

    api = (config.get("apis") or {}).get(api_name)
    if api is None:
        raise ConfigError(f"API '{api_name}' not found in configuration")
    endpoint = (api.get("endpoints") or {}).get(endpoint_name)
    if endpoint is None:
        raise ConfigError(f"Endpoint '{endpoint_name}' not found in API '{api_name}'")

    context = context.replace(
        api=dict(api.get("variables") or {}),
        endpoint=dict(endpoint.get("variables") or {}),
    )
    request = await assemble_request(api, endpoint, VariableResolver(), context)

    if dry_run:
        click.echo(f"[DRY RUN] {request.method} {mask_secrets(request.url, context)}", err=True)
        for key, value in request.headers.items():
            click.echo(f"  {key}: {mask_secrets(value, context)}", err=True)
        if request.body is not None:
            body = request.body if isinstance(request.body, str) else json.dumps(request.body, indent=2)
            click.echo(mask_secrets(body, context), err=True)
        return None

    return await HttpClient(plugins=registry).execute(request)


async def _cmd_chain(chain_name, config_file, var, profiles, no_default_profile, dry_run):
    from reqchain.chain import ChainExecutor
    from reqchain.core import ConfigError

    config, context, registry = await _prepare(config_file, var, profiles, no_default_profile)

    chain = (config.get("chains") or {}).get(chain_name)
    if chain is None:
        raise ConfigError(f"Chain '{chain_name}' not found in configuration")

    result = await ChainExecutor(plugins=registry).execute_chain(
        chain_name,
        chain,
        config,
        cli_vars=context.cli,
        profile_vars=context.profile,
        global_vars=context.global_vars,
        env=context.env,
        dry_run=dry_run,
        secret_values=context.secret_values,
    )
    return result, context


async def _prepare(config_file, var, profiles, no_default_profile):
    """Load config, env, profiles and plugins into a base variable context."""
    from reqchain.core import (
        ConfigError,
        load_config,
        load_env,
        merge_profiles,
        parse_variables,
        resolve_config_path,
        select_profiles,
    )
    from reqchain.plugins import PluginRegistry
    from reqchain.resolver import VariableContext

    config_path = resolve_config_path(config_file)
    if config_path is None:
        raise ConfigError(
            f"Config file not found: {config_file}" if config_file else "No reqchain config file found",
        )
    config = load_config(config_path)
    settings = config.get("config") or {}
    env = load_env(settings.get("envFile"), config.get("_config_dir"))

    names = select_profiles(config, profiles, use_defaults=not no_default_profile)
    registry = PluginRegistry()
    context = VariableContext(
        cli=parse_variables(var),
        profile=merge_profiles(names, config.get("profiles") or {}),
        global_vars=dict(config.get("globalVariables") or {}),
        env=env,
        plugins=registry,
    )
    await _load_plugins(config.get("plugins") or [], registry, context)
    return config, context, registry


async def _load_plugins(entries, registry, context):
    from reqchain.core import ConfigError
    from reqchain.plugins import load_plugin
    from reqchain.resolver import VariableResolver

    resolver = VariableResolver()
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("module"):
            raise ConfigError(f"Invalid plugin entry: {entry!r}. Expected name and module")
        name = entry.get("name") or entry["module"].rpartition(":")[2]
        plugin_config = await resolver.resolve_value(entry.get("config") or {}, context)
        try:
            plugin = load_plugin(entry["module"])
        except (ImportError, ValueError) as e:
            raise ConfigError(f"Failed to load plugin '{name}': {e}") from e
        await registry.register(plugin, name, plugin_config)


# ── Helpers ──────────────────────────────────────────────────────────────


def _run(coro):
    """Run a command coroutine, reporting any failure and exiting with code 1."""
    from reqchain.chain import StepCallError
    from reqchain.core import ConfigError
    from reqchain.resolver import VariableResolutionError

    try:
        return asyncio.run(coro)
    except VariableResolutionError as e:
        click.echo(f"Variable Error: {e}", err=True)
    except (ConfigError, StepCallError) as e:
        click.echo(f"Configuration Error: {e}", err=True)
    except Exception as e:
        click.echo(f"ERROR: {e}", err=True)
    sys.exit(1)


def _configure_logging(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _decode(body):
    from reqchain.paths import parse_structured_body

    return parse_structured_body(body)


def _format_body(body):
    parsed = _decode(body)
    if isinstance(parsed, dict | list):
        return json.dumps(parsed, indent=2)
    return parsed or ""


if __name__ == "__main__":
    main()
