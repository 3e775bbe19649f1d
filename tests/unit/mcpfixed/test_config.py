# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/test_config.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for the configuration settings.
"""

# Standard
from pathlib import Path

# Third-Party
from pydantic import ValidationError
import pytest

# First-Party
from mcpfixed.config import get_settings, settings, Settings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.validation_interval == 86400
    assert s.oauth_manual_intervention_timeout == 600
    assert s.oauth_token_refresh_threshold == 3600
    assert s.max_retries == 3
    assert s.auth_encryption_secret is None


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("MCPFIXED_VALIDATION_INTERVAL", "42")
    monkeypatch.setenv("MCPFIXED_OAUTH_MAX_RETRIES", "5")
    s = Settings(_env_file=None)
    assert s.validation_interval == 42
    assert s.oauth_max_retries == 5


def test_log_level_normalized():
    assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"


def test_log_level_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_level="chatty")


def test_secret_is_masked():
    s = Settings(_env_file=None, auth_encryption_secret="a-very-long-secret-value")
    assert "a-very-long-secret-value" not in repr(s)
    assert s.auth_encryption_secret.get_secret_value() == "a-very-long-secret-value"


def test_master_key_path_defaults_to_data_dir(tmp_path):
    s = Settings(_env_file=None, data_dir=tmp_path)
    assert s.master_key_path == tmp_path / "master.key"


def test_master_key_path_explicit(tmp_path):
    s = Settings(_env_file=None, master_key_file=tmp_path / "k.key")
    assert s.master_key_path == Path(tmp_path / "k.key")


def test_manual_intervention_timeout_lower_bound():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, oauth_manual_intervention_timeout=5)


def test_validate_database_creates_directory(tmp_path):
    target = tmp_path / "nested" / "store.db"
    Settings(_env_file=None, database_url=f"sqlite:///{target}").validate_database()
    assert target.parent.is_dir()


def test_lazy_wrapper_forwards():
    assert settings.validation_interval == get_settings().validation_interval
