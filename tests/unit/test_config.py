"""Tests for core/config.py."""
from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from bitforge.core.config import EngineConfig, default_build_dir, default_cores
from bitforge.core.exceptions import BitforgeError, ConfigurationError

_VARS = (
    "BITFORGE_BUILD_DIR",
    "BITFORGE_CORES",
    "BITFORGE_LOG_LEVEL",
    "BITFORGE_LOG_CAPACITY",
    "BITFORGE_HTTP_TIMEOUT",
    "BITFORGE_MAX_VERSIONS",
    "BITFORGE_BREW_PATH",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config = EngineConfig.from_env()
    assert config.build_dir == tmp_path / "Downloads" / "bitcoin_builds"
    assert config.cores == default_cores()
    assert config.log_level == "INFO"
    assert config.log_capacity == 4000
    assert config.max_versions == 10
    assert config.cmake_threshold == 25
    assert config.brew_path is None


def test_build_dir_without_home(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HOME", raising=False)
    assert default_build_dir() == Path("/tmp/bitcoin_builds")


def test_default_cores_leaves_one_free(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(os, "cpu_count", lambda: 8)
    assert default_cores() == 7
    monkeypatch.setattr(os, "cpu_count", lambda: 1)
    assert default_cores() == 1
    monkeypatch.setattr(os, "cpu_count", lambda: None)
    assert default_cores() == 1


def test_worker_threads_capped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(os, "cpu_count", lambda: 64)
    assert EngineConfig(worker_ceiling=8).worker_threads == 8
    monkeypatch.setattr(os, "cpu_count", lambda: 2)
    assert EngineConfig(worker_ceiling=8).worker_threads == 2


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BITFORGE_BUILD_DIR", str(tmp_path / "b"))
    monkeypatch.setenv("BITFORGE_CORES", "3")
    monkeypatch.setenv("BITFORGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("BITFORGE_LOG_CAPACITY", "500")
    monkeypatch.setenv("BITFORGE_HTTP_TIMEOUT", "2.5")
    monkeypatch.setenv("BITFORGE_MAX_VERSIONS", "4")
    monkeypatch.setenv("BITFORGE_BREW_PATH", "/usr/local/bin/brew")

    config = EngineConfig.from_env()
    assert config.build_dir == tmp_path / "b"
    assert config.cores == 3
    assert config.log_level == "DEBUG"
    assert config.log_capacity == 500
    assert config.http_timeout == 2.5
    assert config.max_versions == 4
    assert config.brew_path == Path("/usr/local/bin/brew")


def test_empty_variables_are_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BITFORGE_CORES", "")
    monkeypatch.setenv("BITFORGE_LOG_LEVEL", "")
    config = EngineConfig.from_env()
    assert config.cores == default_cores()
    assert config.log_level == "INFO"


@pytest.mark.parametrize(
    "name,value,field",
    [
        ("BITFORGE_CORES", "0", "cores"),
        ("BITFORGE_LOG_LEVEL", "chatty", "log_level"),
        ("BITFORGE_HTTP_TIMEOUT", "-1", "http_timeout"),
        ("BITFORGE_LOG_CAPACITY", "0", "log_capacity"),
    ],
)
def test_invalid_values_rejected(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, field: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError) as exc_info:
        EngineConfig.from_env()
    assert exc_info.value.details["fields"] == [field]
    assert isinstance(exc_info.value.__cause__, PydanticValidationError)


@pytest.mark.parametrize(
    "name,value",
    [
        ("BITFORGE_CORES", "many"),
        ("BITFORGE_MAX_VERSIONS", "1.5"),
        ("BITFORGE_HTTP_TIMEOUT", "soon"),
    ],
)
def test_non_numeric_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError, match=name) as exc_info:
        EngineConfig.from_env()
    assert exc_info.value.details == {"variable": name, "value": value}
    assert isinstance(exc_info.value, BitforgeError)


def test_direct_construction_still_uses_pydantic_errors() -> None:
    with pytest.raises(PydanticValidationError):
        EngineConfig(cores=0)
