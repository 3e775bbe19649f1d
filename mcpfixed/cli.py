# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/cli.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

mcpfixed Command Line Interface.
Thin command surface over the services. Every command prints exactly one JSON
document on stdout:
- ``tool add|list`` manage tool endpoints
- ``register``, ``use``, ``validate``, ``list``, ``stats`` manage and run fixed interfaces
- ``auth`` drives the OAuth setup, login, callback, refresh, status and logout steps
- ``refresh`` renews tokens close to expiry, once or continuously with ``--watch``
- ``cleanup`` prunes old metrics and expired authorization flows

Examples:
    >>> parser = create_parser()
    >>> args = parser.parse_args(["use", "search_pages", "--params", '{"q": "x"}'])
    >>> args.command, args.name
    ('use', 'search_pages')
"""

# Standard
import argparse
import asyncio
from dataclasses import dataclass
import logging
import sys
from typing import Any, Dict, List, Optional

# Third-Party
import orjson
from pydantic import BaseModel, SecretStr, ValidationError
from sqlalchemy.orm import Session

# First-Party
from mcpfixed import __version__
from mcpfixed.config import settings
from mcpfixed.db import fresh_db_session, init_db
from mcpfixed.errors import FixedToolError
from mcpfixed.schemas import AuthCredential, FixedInterfaceCreate, OAuthConfigurationCreate, ToolCreate
from mcpfixed.services.fixed_interface_service import FixedInterfaceService
from mcpfixed.services.http_client_service import close_http_client
from mcpfixed.services.oauth_manager import OAuthManager
from mcpfixed.services.performance_service import PerformanceService
from mcpfixed.services.protocol_client import McpProtocolClient
from mcpfixed.services.tool_registry import DbToolRegistry

logger = logging.getLogger(__name__)


class CLIError(Exception):
    """Base class for CLI-related errors."""


@dataclass
class Services:
    """Service instances shared by one command invocation."""

    tools: DbToolRegistry
    oauth: OAuthManager
    interfaces: FixedInterfaceService
    performance: PerformanceService


def build_services() -> Services:
    """Wire the services together.

    Returns:
        Services: Registry, OAuth engine, interface service and telemetry.
    """
    tools = DbToolRegistry()
    client = McpProtocolClient()
    performance = PerformanceService()
    oauth = OAuthManager(tool_registry=tools, protocol_client=client)
    interfaces = FixedInterfaceService(tool_registry=tools, protocol_client=client, oauth_manager=oauth, performance_service=performance)
    return Services(tools=tools, oauth=oauth, interfaces=interfaces, performance=performance)


def parse_json_arg(value: Optional[str], label: str) -> Any:
    """Parse a JSON command line argument.

    Args:
        value: Raw argument.
        label: Argument name for the error message.

    Returns:
        Any: Parsed value, or None when the argument was not given.

    Raises:
        CLIError: If the value is not valid JSON.

    Examples:
        >>> parse_json_arg('{"a": 1}', "--params")
        {'a': 1}
        >>> parse_json_arg(None, "--params") is None
        True
    """
    if value is None:
        return None
    try:
        return orjson.loads(value)
    except orjson.JSONDecodeError as e:
        raise CLIError(f"{label} is not valid JSON: {e}")


def to_jsonable(result: Any) -> Any:
    """Convert service results into JSON-ready values.

    Args:
        result: Pydantic model, list of models or plain value.

    Returns:
        Any: Plain data.
    """
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    if isinstance(result, list):
        return [to_jsonable(item) for item in result]
    if isinstance(result, dict):
        return {key: to_jsonable(value) for key, value in result.items()}
    return result


def emit(payload: Any) -> None:
    """Print one JSON document.

    Args:
        payload: JSON-ready data.
    """
    sys.stdout.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode() + "\n")


async def tool_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``tool add`` or ``tool list``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Registered tool or tool list
    """
    if args.tool_action == "list":
        return services.tools.list_tools(db)
    auth = None
    if args.auth_type != "none":
        auth = AuthCredential(kind=args.auth_type, payload=parse_json_arg(args.auth_json, "--auth-json") or {})
    tool = ToolCreate(name=args.name, endpoint=args.endpoint, transport=args.transport, description=args.description, auth=auth)
    return services.tools.register_tool(db, tool)


async def register_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``register``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: The registered interface
    """
    spec = FixedInterfaceCreate(
        tool_id=args.tool,
        name=args.operation,
        display_name=args.display_name,
        description=args.description,
        parameters_json=parse_json_arg(args.parameters, "--parameters") or {},
        response_schema_json=parse_json_arg(args.response_schema, "--response-schema") or {},
        version=args.interface_version,
    )
    return await services.interfaces.register(db, spec, force=args.force, validate_tool=args.validate_tool, auto_discover=args.auto_discover, dry_run=args.dry_run)


async def use_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``use``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Execution result
    """
    params = parse_json_arg(args.params, "--params") or {}
    if not isinstance(params, dict):
        raise CLIError("--params must be a JSON object")
    return await services.interfaces.execute_by_name(
        db,
        args.name,
        params,
        tool_id=args.tool,
        timeout=args.timeout,
        validate_response=args.validate_response,
        retry_attempts=args.retries,
        force=args.force,
    )


async def validate_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``validate``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Validation result(s)
    """
    if args.stale:
        return await services.interfaces.revalidate_stale(db)
    if not args.name:
        raise CLIError("validate needs an interface name or --stale")
    record = services.interfaces.get_by_name(db, args.name, args.tool)
    return await services.interfaces.validate(db, record.id)


async def list_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``list``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Interfaces
    """
    return services.interfaces.list_interfaces(db, tool_id=args.tool, is_active=args.active)


async def auth_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``auth``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Configuration, flow result, refresh result or status

    Raises:
        CLIError: If ``--setup`` is missing required options.
    """
    oauth = services.oauth
    if args.setup:
        missing = [flag for flag, value in (("--client-id", args.client_id), ("--authorization-url", args.authorization_url), ("--token-url", args.token_url)) if not value]
        if missing:
            raise CLIError(f"--setup requires {', '.join(missing)}")
        config = OAuthConfigurationCreate(
            tool_id=args.tool,
            provider=args.provider or "default",
            client_id=args.client_id,
            client_secret=SecretStr(args.client_secret) if args.client_secret else None,
            authorization_url=args.authorization_url,
            token_url=args.token_url,
            scopes=args.scopes.split(",") if args.scopes else [],
            redirect_uri=args.redirect_uri or settings.oauth_default_redirect_uri,
            pkce_enabled=not args.no_pkce,
        )
        return oauth.create_configuration(db, config)
    if args.login:
        return await oauth.initiate_auth_flow(db, args.tool, provider=args.provider)
    if args.callback:
        code, state = args.callback
        return await oauth.handle_callback(db, code, state)
    if args.refresh:
        return await oauth.refresh_token(db, args.tool, force=args.force, provider=args.provider)
    if args.logout:
        return {"tool_id": args.tool, "tokens_deleted": oauth.logout(db, args.tool)}
    if args.test:
        return await oauth.test_authentication(db, args.tool, provider=args.provider)
    return oauth.get_auth_status(db, args.tool, provider=args.provider)


async def stats_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``stats``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Interface statistics, optionally with the fixed/dynamic comparison
    """
    if not args.name:
        return services.interfaces.get_stats(db, tool_id=args.tool, hours=args.hours)
    record = services.interfaces.get_by_name(db, args.name, args.tool)
    result: Dict[str, Any] = {"interface": record, "stats": services.interfaces.get_stats(db, interface_id=record.id, hours=args.hours)}
    if args.compare:
        result["comparison"] = services.performance.compare_access_types(db, record.tool_id, record.name, hours=args.hours)
    return result


async def cleanup_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``cleanup``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Deletion counts
    """
    return {
        "metrics_deleted": services.performance.cleanup_old_metrics(db, args.retention_days),
        "flows_deleted": services.oauth.cleanup_expired_flows(db),
    }


async def refresh_command(args: argparse.Namespace, db: Session, services: Services) -> Any:
    """Execute ``refresh``.

    Args:
        args: Parsed command line arguments
        db: Database session
        services: Wired services

    Returns:
        Any: Refresh counts of one scan; with ``--watch`` the scan repeats until interrupted
    """
    if args.watch:
        try:
            await services.oauth.start_background_refresh(args.interval)
        finally:
            await services.oauth.stop_background_refresh()
    counts: Dict[str, Any] = await services.oauth.refresh_expiring_tokens(db)
    counts["flows_deleted"] = services.oauth.cleanup_expired_flows(db)
    return counts


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(prog="mcpfixed", description="Fixed interfaces and OAuth flows for MCP tools")
    parser.add_argument("--version", "-V", action="version", version=f"mcpfixed {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    tool_parser = subparsers.add_parser("tool", help="Manage tool endpoints")
    tool_actions = tool_parser.add_subparsers(dest="tool_action", required=True)
    add_parser = tool_actions.add_parser("add", help="Register a tool endpoint")
    add_parser.add_argument("name", help="Unique tool name")
    add_parser.add_argument("endpoint", help="MCP server URL")
    add_parser.add_argument("--transport", choices=["streamablehttp", "sse"], default="streamablehttp")
    add_parser.add_argument("--description")
    add_parser.add_argument("--auth-type", choices=["none", "api_key", "bearer", "basic", "oauth"], default="none")
    add_parser.add_argument("--auth-json", help='Static credential payload, e.g. {"token": "..."}')
    tool_actions.add_parser("list", help="List tool endpoints")
    tool_parser.set_defaults(func=tool_command)

    register_parser = subparsers.add_parser("register", help="Register a fixed interface")
    register_parser.add_argument("tool", help="Tool id or name")
    register_parser.add_argument("operation", help="Operation name on the tool")
    register_parser.add_argument("--display-name")
    register_parser.add_argument("--description")
    register_parser.add_argument("--parameters", help="Parameter JSON Schema")
    register_parser.add_argument("--response-schema", help="Response JSON Schema")
    register_parser.add_argument("--interface-version", default="1.0.0", help="Semantic version (default: 1.0.0)")
    register_parser.add_argument("--force", action="store_true", help="Overwrite an existing interface in place")
    register_parser.add_argument("--validate-tool", action="store_true", help="Require the operation in the live listing")
    register_parser.add_argument("--auto-discover", action="store_true", help="Fill schemas from the live listing")
    register_parser.add_argument("--dry-run", action="store_true", help="Validate but don't persist")
    register_parser.set_defaults(func=register_command)

    use_parser = subparsers.add_parser("use", help="Execute a fixed interface")
    use_parser.add_argument("name", help="Interface name")
    use_parser.add_argument("--params", default="{}", help="Parameters as a JSON object")
    use_parser.add_argument("--tool", help="Tool id or name when the interface name is ambiguous")
    use_parser.add_argument("--timeout", type=float)
    use_parser.add_argument("--retries", type=int)
    use_parser.add_argument("--validate-response", action="store_true")
    use_parser.add_argument("--force", action="store_true", help="Execute even if inactive")
    use_parser.set_defaults(func=use_command)

    validate_parser = subparsers.add_parser("validate", help="Check an interface against the live tool")
    validate_parser.add_argument("name", nargs="?")
    validate_parser.add_argument("--tool")
    validate_parser.add_argument("--stale", action="store_true", help="Re-validate every stale interface")
    validate_parser.set_defaults(func=validate_command)

    list_parser = subparsers.add_parser("list", help="List fixed interfaces")
    list_parser.add_argument("--tool")
    active_group = list_parser.add_mutually_exclusive_group()
    active_group.add_argument("--active", dest="active", action="store_true", default=None)
    active_group.add_argument("--inactive", dest="active", action="store_false")
    list_parser.set_defaults(func=list_command)

    auth_parser = subparsers.add_parser("auth", help="OAuth setup and login")
    auth_parser.add_argument("tool", help="Tool id or name")
    auth_parser.add_argument("--provider")
    step = auth_parser.add_mutually_exclusive_group()
    step.add_argument("--setup", action="store_true", help="Create the OAuth configuration")
    step.add_argument("--login", action="store_true", help="Start the browser authorization")
    step.add_argument("--callback", nargs=2, metavar=("CODE", "STATE"), help="Complete the authorization")
    step.add_argument("--refresh", action="store_true", help="Refresh the token")
    step.add_argument("--status", action="store_true", help="Show the token status (default)")
    step.add_argument("--logout", action="store_true", help="Delete tokens and pending flows")
    step.add_argument("--test", action="store_true", help="Probe the tool with the current token")
    auth_parser.add_argument("--client-id")
    auth_parser.add_argument("--client-secret")
    auth_parser.add_argument("--authorization-url")
    auth_parser.add_argument("--token-url")
    auth_parser.add_argument("--scopes", help="Comma-separated scopes")
    auth_parser.add_argument("--redirect-uri")
    auth_parser.add_argument("--no-pkce", action="store_true")
    auth_parser.add_argument("--force", action="store_true", help="Refresh even if the token is valid")
    auth_parser.set_defaults(func=auth_command)

    stats_parser = subparsers.add_parser("stats", help="Execution statistics")
    stats_parser.add_argument("name", nargs="?")
    stats_parser.add_argument("--tool")
    stats_parser.add_argument("--hours", type=float, default=24.0)
    stats_parser.add_argument("--compare", action="store_true", help="Compare fixed and dynamic access")
    stats_parser.set_defaults(func=stats_command)

    cleanup_parser = subparsers.add_parser("cleanup", help="Prune old metrics and expired flows")
    cleanup_parser.add_argument("--retention-days", type=int)
    cleanup_parser.set_defaults(func=cleanup_command)

    refresh_parser = subparsers.add_parser("refresh", help="Refresh tokens close to expiry and purge expired flows")
    refresh_parser.add_argument("--watch", action="store_true", help="Keep refreshing in the background until interrupted")
    refresh_parser.add_argument("--interval", type=float, help="Seconds between scans with --watch")
    refresh_parser.set_defaults(func=refresh_command)

    return parser


def exit_code(payload: Any) -> int:
    """Map a printed payload to the process exit code.

    Args:
        payload: Emitted JSON data.

    Returns:
        int: 0 on success or pending manual intervention, 1 otherwise.

    Examples:
        >>> exit_code({"success": False, "manual_intervention": {"required": True}})
        0
        >>> exit_code({"success": False, "error": {"type": "NotFound"}})
        1
        >>> exit_code([{"id": "x"}])
        0
    """
    if not isinstance(payload, dict) or payload.get("success", True):
        return 0
    return 0 if payload.get("manual_intervention") else 1


async def run_command(args: argparse.Namespace, services: Optional[Services] = None) -> int:
    """Run one command inside a fresh session and print its result.

    Args:
        args: Parsed command line arguments
        services: Wired services (built on demand)

    Returns:
        int: Exit code
    """
    services = services or build_services()
    try:
        with fresh_db_session() as db:
            payload = to_jsonable(await args.func(args, db, services))
    except FixedToolError as e:
        payload = {"success": False, "error": e.to_error_info().model_dump(mode="json")}
    except (CLIError, ValidationError) as e:
        payload = {"success": False, "error": {"type": "UsageError", "message": str(e), "retryable": False, "details": {}}}
    finally:
        await close_http_client()
    emit(payload)
    return exit_code(payload)


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point.

    Args:
        argv: Arguments (defaults to ``sys.argv[1:]``)
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)

    parser = create_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    init_db()
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
