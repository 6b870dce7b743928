import subprocess
import sys

import pytest

from ingressd.netns.processes import ProcessRegistry


class Handle:
    def __init__(self, log, name, fail=False):
        self.log = log
        self.name = name
        self.fail = fail

    def close(self):
        self.log.append(self.name)
        if self.fail:
            raise OSError("already closed")


def test_run_returns_output():
    registry = ProcessRegistry()

    result = registry.run([sys.executable, "-c", "print('hi')"], timeout=30)

    assert result.returncode == 0
    assert result.stdout.strip() == "hi"
    assert registry.running == 0


def test_run_timeout_kills_process():
    registry = ProcessRegistry()

    with pytest.raises(subprocess.TimeoutExpired):
        registry.run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.2)
    assert registry.running == 0


def test_shutdown_closes_handles_in_reverse_order():
    log = []
    registry = ProcessRegistry()
    registry.register(Handle(log, "first"))
    registry.register(Handle(log, "second", fail=True))

    registry.shutdown()

    assert log == ["second", "first"]


def test_release_closes_once():
    log = []
    registry = ProcessRegistry()
    handle = registry.register(Handle(log, "ns"))

    registry.release(handle)
    registry.shutdown()
    registry.release(handle)

    assert log == ["ns"]


def test_no_work_after_shutdown():
    log = []
    registry = ProcessRegistry()
    registry.shutdown()

    with pytest.raises(RuntimeError):
        registry.run([sys.executable, "-c", "pass"])
    with pytest.raises(RuntimeError):
        registry.register(Handle(log, "late"))
    assert log == ["late"]
