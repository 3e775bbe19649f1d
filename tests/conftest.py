# -*- coding: utf-8 -*-
"""Location: ./tests/conftest.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti
"""

# Standard
import asyncio
from typing import Any, Dict, List, Optional

# Third-Party
from pydantic import SecretStr
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# First-Party
from mcpfixed.config import get_settings
import mcpfixed.db as db_mod
from mcpfixed.schemas import ProtocolResponse, ToolEndpoint
from mcpfixed.services.encryption_service import EncryptionService, get_encryption_service
from mcpfixed.services.protocol_client import ProtocolClient

TEST_MASTER_KEY = "test-master-key-0123456789abcdef"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep key material and retry delays local to the test."""
    cfg = get_settings()
    monkeypatch.setattr(cfg, "auth_encryption_secret", SecretStr(TEST_MASTER_KEY))
    monkeypatch.setattr(cfg, "data_dir", tmp_path)
    monkeypatch.setattr(cfg, "encryption_kdf_iterations", 1000)
    monkeypatch.setattr(cfg, "retry_backoff_base", 0.0)
    monkeypatch.setattr(cfg, "retry_backoff_max", 0.0)
    get_encryption_service.cache_clear()
    yield cfg
    get_encryption_service.cache_clear()


@pytest.fixture
def test_engine():
    """In-memory SQLite engine with foreign keys enforced."""
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    event.listen(engine, "connect", db_mod.set_sqlite_pragma)
    db_mod.Base.metadata.create_all(bind=engine)
    yield engine
    db_mod.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine)


@pytest.fixture
def test_db(session_factory):
    """Create a fresh database session for a test."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def encryption():
    """Cipher with a fixed key and cheap key derivation."""
    return EncryptionService(TEST_MASTER_KEY, iterations=1000)


class StubProtocolClient(ProtocolClient):
    """Scripted protocol client recording every call."""

    def __init__(self, operations: Optional[List[Dict[str, Any]]] = None, responses: Optional[List[Any]] = None, delay: float = 0.0):
        self.operations = operations or []
        self.delay = delay
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.list_calls: List[Dict[str, Any]] = []

    async def call(self, endpoint: ToolEndpoint, method: str, params: Dict[str, Any], headers: Dict[str, str], timeout: float) -> ProtocolResponse:
        self.calls.append({"endpoint": endpoint, "method": method, "params": params, "headers": headers, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.responses.pop(0) if self.responses else ProtocolResponse(status=200, body={"ok": True})
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def list_tools(self, endpoint: ToolEndpoint, headers: Dict[str, str], timeout: float) -> List[Dict[str, Any]]:
        self.list_calls.append({"endpoint": endpoint, "headers": headers})
        if isinstance(self.operations, BaseException):
            raise self.operations
        return self.operations


@pytest.fixture
def stub_client():
    """Protocol client stub with no scripted operations."""
    return StubProtocolClient()
