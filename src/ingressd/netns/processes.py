"""
Registry of external processes and helper handles spawned by the daemon.

Every subprocess (nsenter/iptables/sysctl), every pyroute2 NetNS helper and
the Docker event stream is owned by one ProcessRegistry. On termination the
owner calls ``shutdown()`` and nothing spawned by this process outlives it.
"""

from __future__ import annotations

import subprocess
import time
from typing import Protocol

from ingressd.utils.logger import get_logger

logger = get_logger(__name__)


class Closable(Protocol):
    def close(self) -> None: ...


class ProcessRegistry:
    """
    Tracks live subprocesses and closable handles.

    Attributes:
        grace_seconds: How long ``shutdown`` waits after SIGTERM before SIGKILL.
    """

    def __init__(self, grace_seconds: float = 5.0):
        self.grace_seconds = grace_seconds
        self._processes: set[subprocess.Popen] = set()
        self._handles: list[Closable] = []
        self._closed = False

    # =========================================================================
    # Subprocesses
    # =========================================================================

    def run(
        self, command: list[str], timeout: float | None = None
    ) -> subprocess.CompletedProcess:
        """
        Run a command to completion, keeping it registered while it runs.

        Args:
            command: argv list.
            timeout: Seconds before the command is killed.

        Returns:
            CompletedProcess with text stdout/stderr.

        Raises:
            RuntimeError: If the registry was already shut down.
            subprocess.TimeoutExpired: If the command overran its timeout.
        """
        if self._closed:
            raise RuntimeError("ProcessRegistry is shut down")

        logger.debug(f"exec: {' '.join(command)}")
        proc = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        self._processes.add(proc)

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            self._processes.discard(proc)
            raise
        # Any other interruption (KeyboardInterrupt) leaves the process
        # registered so shutdown() can reap it.

        self._processes.discard(proc)
        return subprocess.CompletedProcess(command, proc.returncode, stdout, stderr)

    @property
    def running(self) -> int:
        """Number of subprocesses that have not been reaped yet."""
        return len(self._processes)

    # =========================================================================
    # Handles
    # =========================================================================

    def register(self, handle: Closable) -> Closable:
        """Take ownership of a handle; it is closed on shutdown."""
        if self._closed:
            handle.close()
            raise RuntimeError("ProcessRegistry is shut down")
        self._handles.append(handle)
        return handle

    def release(self, handle: Closable) -> None:
        """Close a handle now and forget it. No-op if shutdown already closed it."""
        if handle not in self._handles:
            return
        self._handles.remove(handle)
        handle.close()

    # =========================================================================
    # Shutdown
    # =========================================================================

    def shutdown(self) -> None:
        """Terminate every live subprocess and close every registered handle."""
        if self._closed:
            return
        self._closed = True

        live = [proc for proc in self._processes if proc.poll() is None]
        for proc in live:
            logger.debug(f"Terminating pid {proc.pid}")
            proc.terminate()

        deadline = time.monotonic() + self.grace_seconds
        for proc in live:
            try:
                proc.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
                proc.kill()
                proc.wait()
        self._processes.clear()

        while self._handles:
            handle = self._handles.pop()
            try:
                handle.close()
            except Exception as e:
                logger.warning(f"Failed to close {handle!r}: {e}")

        if live:
            logger.info(f"Stopped {len(live)} external process(es)")
