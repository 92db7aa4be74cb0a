from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from matrixci.errors import JobCancelled  # noqa: E402
from matrixci.expr import evaluate  # noqa: E402
from matrixci.model import (  # noqa: E402
    FailureKind,
    MatrixBinding,
    SkipReason,
    StepResult,
    StepSpec,
    StepStatus,
)
from matrixci.services import ServiceManager, ServiceProvider  # noqa: E402
from matrixci.ui.console import Console, set_console  # noqa: E402

PY = sys.executable


class FakeProvider(ServiceProvider):
    """Records every start/stop; can be told to fail or never become ready."""

    def __init__(self, log: Optional[list] = None, *, fail_start: bool = False, never_ready: bool = False):
        self.log = log if log is not None else []
        self.fail_start = fail_start
        self.never_ready = never_ready
        self.probes = 0
        self.stops: Dict[str, int] = {}

    def start(self, instance):
        if self.fail_start:
            raise RuntimeError(f"cannot start {instance.name}")
        self.log.append(("start", instance.name, instance.job))
        return f"handle-{instance.instance_id}"

    def is_ready(self, instance):
        self.probes += 1
        return not self.never_ready

    def stop(self, instance):
        if instance.handle is None:
            return
        self.stops[instance.instance_id] = self.stops.get(instance.instance_id, 0) + 1
        self.log.append(("stop", instance.name, instance.job))

    def env(self, instance):
        return {"URL": f"fake://{instance.host}:{instance.port}"}


class ScriptedExecutor:
    """
    Stand-in for StepExecutor.

    `script(step, binding)` returns an exit code, or raises to simulate an
    executor fault. Conditions are honoured exactly like the real executor.
    """

    def __init__(self, script: Optional[Callable[[StepSpec, MatrixBinding], int]] = None, delay: float = 0.0):
        self.script = script or (lambda step, binding: 0)
        self.delay = delay
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def run(self, step, binding, env, cancel=None):
        if not evaluate(step.condition, binding):
            return StepResult.skipped(step.name, SkipReason.CONDITION)
        if cancel is not None and cancel.is_set():
            raise JobCancelled("cancelled", step=step.name)
        with self._lock:
            self.calls.append((binding.as_dict(), step.name, dict(env)))
        if self.delay:
            time.sleep(self.delay)
        code = self.script(step, binding)
        if code == 0:
            return StepResult(name=step.name, status=StepStatus.SUCCEEDED, exit_code=0, output="ok\n")
        return StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            exit_code=code,
            output=f"{step.name} failed\n",
            failure_kind=FailureKind.NON_ZERO_EXIT,
        )

    def steps_for(self, **binding) -> List[str]:
        return [name for b, name, _ in self.calls if b == binding]


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def service_log():
    return []


@pytest.fixture
def fake_provider(service_log):
    return FakeProvider(service_log)


@pytest.fixture
def manager(fake_provider):
    return ServiceManager(
        {"fake": fake_provider},
        startup_timeout=0.2,
        probe_interval=0.01,
    )
