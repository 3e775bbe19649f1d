# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/test_cli.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for the command line interface.
"""

# Standard
from contextlib import contextmanager
import json
from unittest.mock import AsyncMock, patch

# Third-Party
import pytest

# First-Party
from mcpfixed import cli
from mcpfixed.services.fixed_interface_service import FixedInterfaceService
from mcpfixed.services.oauth_manager import OAuthManager
from mcpfixed.services.performance_service import PerformanceService
from mcpfixed.services.tool_registry import DbToolRegistry


@pytest.fixture
def services(encryption, stub_client):
    tools = DbToolRegistry(encryption=encryption)
    oauth = OAuthManager(encryption=encryption, tool_registry=tools, protocol_client=stub_client)
    performance = PerformanceService()
    interfaces = FixedInterfaceService(tool_registry=tools, protocol_client=stub_client, oauth_manager=oauth, performance_service=performance)
    return cli.Services(tools=tools, oauth=oauth, interfaces=interfaces, performance=performance)


@pytest.fixture
def run(test_db, services, capsys):
    """Run a command line against the test database and return (exit code, JSON output)."""

    @contextmanager
    def _session():
        yield test_db

    async def _run(*argv):
        args = cli.create_parser().parse_args(list(argv))
        with patch("mcpfixed.cli.fresh_db_session", _session), patch("mcpfixed.cli.close_http_client", new=AsyncMock()):
            code = await cli.run_command(args, services)
        return code, json.loads(capsys.readouterr().out)

    return _run


class TestParser:
    def test_callback_takes_code_and_state(self):
        args = cli.create_parser().parse_args(["auth", "wiki", "--callback", "the-code", "the-state"])
        assert args.callback == ["the-code", "the-state"]
        assert args.func is cli.auth_command

    def test_auth_steps_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args(["auth", "wiki", "--login", "--logout"])

    def test_list_active_filter(self):
        parser = cli.create_parser()
        assert parser.parse_args(["list"]).active is None
        assert parser.parse_args(["list", "--active"]).active is True
        assert parser.parse_args(["list", "--inactive"]).active is False

    def test_use_defaults(self):
        args = cli.create_parser().parse_args(["use", "search_pages"])
        assert args.params == "{}"
        assert args.retries is None


def test_exit_code():
    assert cli.exit_code({"success": True}) == 0
    assert cli.exit_code({"success": False, "error": {}}) == 1
    assert cli.exit_code({"success": False, "manual_intervention": {"required": True}}) == 0
    assert cli.exit_code({"id": "x"}) == 0


def test_parse_json_arg_rejects_garbage():
    with pytest.raises(cli.CLIError):
        cli.parse_json_arg("{not json", "--params")


@pytest.mark.asyncio
async def test_register_and_use(run, stub_client):
    code, tool = await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    assert code == 0
    assert tool["name"] == "wiki"

    code, interface = await run("register", "wiki", "search_pages", "--parameters", '{"type": "object", "required": ["query"]}')
    assert code == 0
    assert interface["version"] == "1.0.0"

    code, result = await run("use", "search_pages", "--params", '{"query": "q"}')
    assert code == 0
    assert result["success"] is True
    assert stub_client.calls[0]["params"] == {"query": "q"}

    code, listed = await run("list", "--active")
    assert [i["name"] for i in listed] == ["search_pages"]


@pytest.mark.asyncio
async def test_use_failure_exit_code(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    await run("register", "wiki", "search_pages", "--parameters", '{"type": "object", "required": ["query"]}')

    code, result = await run("use", "search_pages")

    assert code == 1
    assert result["error"]["type"] == "ValidationError"


@pytest.mark.asyncio
async def test_conflict_reported_as_json(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    await run("register", "wiki", "search_pages")

    code, result = await run("register", "wiki", "search_pages")

    assert code == 1
    assert result == {"success": False, "error": {"type": "Conflict", "message": result["error"]["message"], "retryable": False, "details": {}}}


@pytest.mark.asyncio
async def test_usage_errors(run):
    code, result = await run("use", "x", "--params", "[1, 2]")
    assert code == 1
    assert result["error"]["type"] == "UsageError"

    code, result = await run("validate")
    assert result["error"]["type"] == "UsageError"


@pytest.mark.asyncio
async def test_auth_setup_and_login(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")

    setup = ["--setup", "--client-id", "cid", "--client-secret", "secret", "--scopes", "read,write"]
    urls = ["--authorization-url", "https://auth.example.com/authorize", "--token-url", "https://auth.example.com/token"]
    code, config = await run("auth", "wiki", *setup, *urls)
    assert code == 0
    assert config["scopes"] == ["read", "write"]
    assert "secret" not in json.dumps(config)

    code, flow = await run("auth", "wiki", "--login")
    assert code == 0
    assert flow["flow_state"] == "manual_intervention_pending"
    assert flow["manual_intervention"]["authorization_url"].startswith("https://auth.example.com/authorize?")

    code, status = await run("auth", "wiki")
    assert status["pending_authorization"] is True

    code, result = await run("auth", "wiki", "--callback", "code", "forged-state")
    assert code == 1
    assert result["error"]["type"] == "NotFound"


@pytest.mark.asyncio
async def test_auth_setup_requires_urls(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    code, result = await run("auth", "wiki", "--setup", "--client-id", "cid")
    assert code == 1
    assert "--authorization-url" in result["error"]["message"]


@pytest.mark.asyncio
async def test_stats_and_cleanup(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    await run("register", "wiki", "ping")
    await run("use", "ping")

    code, stats = await run("stats", "ping", "--compare")
    assert code == 0
    assert stats["stats"]["total_executions"] == 1
    assert stats["comparison"]["fixed"]["sample_count"] == 1

    code, counts = await run("cleanup", "--retention-days", "1")
    assert counts == {"metrics_deleted": 0, "flows_deleted": 0}


@pytest.mark.asyncio
async def test_register_output_keeps_column_names(run):
    await run("tool", "add", "wiki", "https://mcp.example.com/mcp")
    code, record = await run("register", "wiki", "ping", "--dry-run")
    assert code == 0
    assert {"schema_json", "parameters_json", "response_schema_json"} <= set(record)
    assert "selector_schema" not in record


@pytest.mark.asyncio
async def test_refresh_scan(run):
    code, counts = await run("refresh")
    assert code == 0
    assert counts == {"checked": 0, "refreshed": 0, "failed": 0, "flows_deleted": 0}


@pytest.mark.asyncio
async def test_refresh_watch_runs_background_loop(run, services, monkeypatch):
    loop = AsyncMock()
    monkeypatch.setattr(services.oauth, "run_refresh_loop", loop)

    code, counts = await run("refresh", "--watch", "--interval", "2")

    assert code == 0
    assert loop.await_count == 1
    assert loop.await_args.args[0] == 2.0
    assert counts["checked"] == 0
