# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/test_db.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for the persistence store: constraints, ownership and append-only metrics.
"""

# Standard
from datetime import datetime, timedelta, timezone

# Third-Party
import pytest
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError

# First-Party
from mcpfixed.db import (
    ensure_utc,
    fresh_db_session,
    FixedInterface,
    init_db,
    OAuthConfiguration,
    OAuthToken,
    PendingAuthorizationFlow,
    PerformanceMetric,
    Tool,
    utc_now,
)


def _tool(db, name="wiki"):
    tool = Tool(name=name, endpoint="https://mcp.example.com/mcp")
    db.add(tool)
    db.commit()
    return tool


def _config(db, tool):
    config = OAuthConfiguration(
        tool_id=tool.id,
        client_id="client",
        authorization_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        redirect_uri="http://localhost:8765/cb",
    )
    db.add(config)
    db.commit()
    return config


def test_utc_helpers():
    assert utc_now().tzinfo is timezone.utc
    assert ensure_utc(datetime(2025, 1, 1, 12, 0)) == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    aware = datetime(2025, 1, 1, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(aware) is aware


def test_init_db_creates_tables(test_engine):
    init_db(bind=test_engine)
    assert "oauth_pending_flows" in inspect(test_engine).get_table_names()


def test_interface_name_unique_per_tool(test_db):
    tool = _tool(test_db)
    other = _tool(test_db, "docs")
    test_db.add(FixedInterface(tool_id=tool.id, name="search"))
    test_db.add(FixedInterface(tool_id=other.id, name="search"))
    test_db.commit()

    test_db.add(FixedInterface(tool_id=tool.id, name="search"))
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_one_token_per_configuration(test_db):
    tool = _tool(test_db)
    config = _config(test_db, tool)
    test_db.add(OAuthToken(tool_id=tool.id, config_id=config.id, access_token="enc-1"))
    test_db.commit()
    test_db.add(OAuthToken(tool_id=tool.id, config_id=config.id, access_token="enc-2"))
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_oauth_urls_must_be_https(test_db):
    tool = _tool(test_db)
    test_db.add(
        OAuthConfiguration(
            tool_id=tool.id,
            client_id="client",
            authorization_url="http://auth.example.com/authorize",
            token_url="https://auth.example.com/token",
            redirect_uri="http://localhost:8765/cb",
        )
    )
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_token_type_constraint(test_db):
    tool = _tool(test_db)
    config = _config(test_db, tool)
    test_db.add(OAuthToken(tool_id=tool.id, config_id=config.id, access_token="enc", token_type="MAC"))
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_tool_delete_cascades(test_db):
    tool = _tool(test_db)
    config = _config(test_db, tool)
    test_db.add(FixedInterface(tool_id=tool.id, name="search"))
    test_db.add(OAuthToken(tool_id=tool.id, config_id=config.id, access_token="enc"))
    test_db.add(PendingAuthorizationFlow(config_id=config.id, state="s1", redirect_uri="http://localhost/cb", expires_at=utc_now() + timedelta(minutes=10)))
    test_db.commit()

    test_db.delete(tool)
    test_db.commit()
    test_db.expunge_all()

    for model in (FixedInterface, OAuthConfiguration, OAuthToken, PendingAuthorizationFlow):
        assert test_db.execute(select(model)).first() is None


def test_metrics_survive_interface_removal(test_db):
    tool = _tool(test_db)
    interface = FixedInterface(tool_id=tool.id, name="search")
    test_db.add(interface)
    test_db.commit()
    test_db.add(PerformanceMetric(interface_id=interface.id, tool_id=tool.id, access_type="fixed", operation_name="search", response_time_ms=12.5, success=True))
    test_db.commit()

    test_db.delete(interface)
    test_db.commit()
    test_db.expunge_all()

    metric = test_db.execute(select(PerformanceMetric)).scalar_one()
    assert metric.interface_id is None
    assert metric.tool_id == tool.id


def test_metrics_are_append_only(test_db):
    metric = PerformanceMetric(tool_id="t", access_type="fixed", operation_name="search", response_time_ms=1.0, success=True)
    test_db.add(metric)
    test_db.commit()

    metric.response_time_ms = 2.0
    with pytest.raises(ValueError, match="immutable"):
        test_db.commit()
    test_db.rollback()


def test_metric_access_type_constraint(test_db):
    test_db.add(PerformanceMetric(tool_id="t", access_type="cached", operation_name="search", response_time_ms=1.0, success=True))
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_fresh_db_session_commits_or_rolls_back(session_factory, monkeypatch):
    monkeypatch.setattr("mcpfixed.db.SessionLocal", session_factory)

    with fresh_db_session() as db:
        db.add(Tool(name="kept", endpoint="https://mcp.example.com/mcp"))

    with pytest.raises(RuntimeError):
        with fresh_db_session() as db:
            db.add(Tool(name="dropped", endpoint="https://mcp.example.com/mcp"))
            db.flush()
            raise RuntimeError("boom")

    check = session_factory()
    try:
        assert [t.name for t in check.execute(select(Tool)).scalars()] == ["kept"]
    finally:
        check.close()
