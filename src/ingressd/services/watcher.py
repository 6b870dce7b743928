"""
Container lifecycle watcher.

Consumes one lazy, endless sequence of container-start occurrences (optional
backfill snapshot first, then live Docker events, resubscribing whenever the
stream drops) and runs the return-path installer on each, synchronously and
in order. A failing container is retried a few times, then left
unconfigured; the loop keeps going.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Iterator

from ingressd.config import IngressConfig
from ingressd.docker.client import DockerGateway
from ingressd.docker.exceptions import ContainerNotFoundError, DockerError
from ingressd.exceptions import IngressdError
from ingressd.models.topology import ContainerBinding, ContainerStart, ServiceFilter
from ingressd.netns.processes import ProcessRegistry
from ingressd.services.return_path import ReturnPathInstaller
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)


class LifecycleWatcher:
    """
    Event loop applying the return-path installer to every container start.

    The watcher owns the process registry: everything spawned on its behalf
    is shut down when ``run`` exits, normally or by KeyboardInterrupt.
    """

    def __init__(
        self,
        gateway: DockerGateway,
        installer: ReturnPathInstaller,
        service_filter: ServiceFilter,
        processes: ProcessRegistry,
        cfg: IngressConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.installer = installer
        self.service_filter = service_filter
        self.processes = processes
        self.cfg = cfg
        self._sleep = sleep
        self.stats: Counter[str] = Counter()

    def container_starts(self) -> Iterator[ContainerStart]:
        """
        Yield the backfill snapshot (if enabled), then live start events.

        Live events are requested from just before the snapshot, so a
        container started during backfill is seen at least once.
        """
        since = int(time.time())

        if self.cfg.PREEXISTING:
            snapshot = [
                start
                for start in self.gateway.running_containers()
                if self.service_filter.matches(start.service)
            ]
            logger.info(f"Backfilling {len(snapshot)} running container(s)")
            yield from snapshot

        yield from self.live_starts(since)

    def live_starts(self, since: int) -> Iterator[ContainerStart]:
        """
        Yield live start events forever.

        When the stream ends or fails (e.g. dockerd restarted), subscribe again
        from the last event seen, backing off up to EVENT_RETRY_MAX_SECONDS.
        Only KeyboardInterrupt ends the sequence.
        """
        delay = self.cfg.EVENT_RETRY_DELAY_SECONDS

        while True:
            logger.info(f"Watching for container start events since {since}")
            try:
                for start in self.gateway.start_events(since=since):
                    delay = self.cfg.EVENT_RETRY_DELAY_SECONDS
                    if start.timestamp is not None:
                        since = max(since, start.timestamp)
                    yield start
                logger.warning("Docker event stream closed")
            except DockerError as e:
                logger.warning(f"Docker event stream failed: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error reading Docker events: {e}")

            self.stats["resubscribed"] += 1
            logger.info(f"Resubscribing to Docker events in {delay:.1f}s")
            self._sleep(delay)
            delay = min(delay * 2, self.cfg.EVENT_RETRY_MAX_SECONDS)

    def handle(self, start: ContainerStart) -> ContainerBinding | None:
        """
        Install one container, retrying failures.

        Returns:
            The binding, or None if the container could not be configured.
        """
        short_id = start.container_id[:12]
        attempts = self.cfg.INSTALL_RETRIES + 1
        source = "backfill" if start.backfill else "event"
        logger.debug(f"Handling {short_id} from {source}")

        for attempt in range(1, attempts + 1):
            try:
                binding = self.installer.install(start)
            except ContainerNotFoundError as e:
                logger.warning(f"Container {short_id} went away: {e}")
                self.stats["gone"] += 1
                return None
            except Exception as e:
                if attempt < attempts:
                    logger.warning(
                        f"Configuring {short_id} failed (attempt {attempt}/{attempts}): {e}"
                    )
                    self._sleep(self.cfg.RETRY_DELAY_SECONDS)
                    continue
                if isinstance(e, IngressdError):
                    logger.error(f"Giving up on {short_id}: {e}")
                else:
                    logger.exception(f"Giving up on {short_id}: {e}")
                self.stats["failed"] += 1
                return None

            if binding.skipped:
                self.stats["skipped"] += 1
            else:
                self.stats["configured"] += 1
                if start.backfill:
                    self.stats["backfilled"] += 1
            return binding

        return None

    def run(self) -> None:
        """Process container starts until interrupted."""
        try:
            for start in self.container_starts():
                self.handle(start)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Stop every spawned process and handle."""
        logger.info(
            f"Shutting down: configured={self.stats['configured']}, "
            f"skipped={self.stats['skipped']}, failed={self.stats['failed']}, "
            f"gone={self.stats['gone']}, backfilled={self.stats['backfilled']}, "
            f"resubscribed={self.stats['resubscribed']}"
        )
        self.processes.shutdown()
