import pytest

from matrixci.config import DEFAULT_OUTPUT_LIMIT, RunConfig


def test_defaults():
    config = RunConfig()
    assert config.max_workers >= 1
    assert config.output_limit == DEFAULT_OUTPUT_LIMIT
    assert config.fail_fast is None


def test_from_env(monkeypatch):
    monkeypatch.setenv("MATRIXCI_MAX_WORKERS", "3")
    monkeypatch.setenv("MATRIXCI_OUTPUT_LIMIT", "2048")
    monkeypatch.setenv("MATRIXCI_STARTUP_TIMEOUT", "12.5")
    monkeypatch.setenv("MATRIXCI_FAIL_FAST", "false")
    monkeypatch.delenv("MATRIXCI_STEP_TIMEOUT", raising=False)

    config = RunConfig.from_env()

    assert config.max_workers == 3
    assert config.output_limit == 2048
    assert config.startup_timeout == 12.5
    assert config.fail_fast is False
    assert config.step_timeout is None


def test_override_ignores_none():
    config = RunConfig(max_workers=2).override(max_workers=None, fail_fast=True)
    assert config.max_workers == 2
    assert config.fail_fast is True


def test_invalid_values_rejected():
    with pytest.raises(ValueError):
        RunConfig(output_limit=0)
