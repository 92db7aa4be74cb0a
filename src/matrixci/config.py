# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Optional

DEFAULT_OUTPUT_LIMIT = 64 * 1024
DEFAULT_STARTUP_TIMEOUT = 60.0
DEFAULT_PROBE_INTERVAL = 0.5


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else None


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RunConfig:
    """
    Process-wide run settings. Loaded once at run start, read-only afterwards.

    fail_fast=None defers to the pipeline definition's own flag.
    """
    max_workers: int = 0
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    probe_interval: float = DEFAULT_PROBE_INTERVAL
    step_timeout: Optional[float] = None
    repo_root: str = "."
    fail_fast: Optional[bool] = None
    inherit_env: bool = True

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            object.__setattr__(self, "max_workers", _default_workers())
        if self.output_limit <= 0:
            raise ValueError(f"output_limit must be positive, got {self.output_limit}")
        if self.startup_timeout <= 0:
            raise ValueError(f"startup_timeout must be positive, got {self.startup_timeout}")

    @classmethod
    def from_env(cls) -> "RunConfig":
        """Read MATRIXCI_* environment variables; unset ones keep their defaults."""
        values: dict[str, Any] = {
            "max_workers": _env_int("MATRIXCI_MAX_WORKERS"),
            "output_limit": _env_int("MATRIXCI_OUTPUT_LIMIT"),
            "startup_timeout": _env_float("MATRIXCI_STARTUP_TIMEOUT"),
            "probe_interval": _env_float("MATRIXCI_PROBE_INTERVAL"),
            "step_timeout": _env_float("MATRIXCI_STEP_TIMEOUT"),
            "repo_root": os.getenv("MATRIXCI_REPO_ROOT") or None,
            "fail_fast": _env_bool("MATRIXCI_FAIL_FAST"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})

    def override(self, **changes: Any) -> "RunConfig":
        """Return a copy with the non-None changes applied (CLI options win over env)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
