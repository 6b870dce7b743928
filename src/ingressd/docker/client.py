"""
Docker gateway using the docker-py SDK.

This module provides DockerGateway, the small slice of the Docker API the
daemon needs:
    - Ingress network subnet lookup
    - Container sandbox (network namespace) lookup
    - Running-container enumeration for backfill
    - Container start event subscription
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterator
from datetime import datetime

import docker
from docker.errors import DockerException, NotFound

from ingressd.docker.exceptions import (
    ContainerNotFoundError,
    DockerConnectionError,
    NetworkNotFoundError,
)
from ingressd.models.topology import ContainerStart
from ingressd.netns.processes import ProcessRegistry
from ingressd.utils.logger import get_logger

log = get_logger(__name__)

SERVICE_LABEL = "com.docker.swarm.service.name"


class DockerGateway:
    """
    Read-only access to the Docker daemon.

    Attributes:
        client: The docker-py client instance.
        service_label: Container label carrying the swarm service name.
    """

    def __init__(
        self,
        timeout: int | None = None,
        service_label: str = SERVICE_LABEL,
        processes: ProcessRegistry | None = None,
    ):
        """
        Initialize Docker client.

        Args:
            timeout: Request timeout in seconds. None means no timeout.
            service_label: Label read for each container's service name.
            processes: Registry that takes ownership of the event stream.

        Raises:
            DockerConnectionError: If connection to Docker daemon fails.
        """
        self.service_label = service_label
        self._processes = processes
        try:
            self.client = docker.from_env(timeout=timeout)
            self.client.ping()
            log.debug("Docker client initialized successfully")
        except DockerException as e:
            log.error(f"Failed to connect to Docker daemon: {e}")
            raise DockerConnectionError(f"Failed to connect to Docker: {e}") from e

    # =========================================================================
    # Networks
    # =========================================================================

    def network_subnet(self, name: str) -> ipaddress.IPv4Network | None:
        """
        Get the first IPv4 IPAM subnet of a network.

        Raises:
            NetworkNotFoundError: If the network doesn't exist.
        """
        try:
            network = self.client.networks.get(name)
        except NotFound:
            raise NetworkNotFoundError(name)

        ipam = network.attrs.get("IPAM") or {}
        for entry in ipam.get("Config") or []:
            subnet = entry.get("Subnet")
            if subnet and ":" not in subnet:
                return ipaddress.IPv4Network(subnet)
        return None

    # =========================================================================
    # Containers
    # =========================================================================

    def container_sandbox(self, container_id: str) -> str:
        """
        Get the path of a running container's network namespace.

        Prefers the sandbox key; falls back to /proc/<pid>/ns/net.

        Raises:
            ContainerNotFoundError: If the container is gone or not running.
        """
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            raise ContainerNotFoundError(container_id)

        state = container.attrs.get("State") or {}
        if not state.get("Running"):
            raise ContainerNotFoundError(container_id, "not running")

        sandbox = (container.attrs.get("NetworkSettings") or {}).get("SandboxKey")
        if sandbox:
            return sandbox

        pid = state.get("Pid")
        if pid:
            return f"/proc/{pid}/ns/net"
        raise ContainerNotFoundError(container_id, "no network namespace")

    def running_containers(self) -> Iterator[ContainerStart]:
        """Yield every running container as a backfill occurrence."""
        for container in self.client.containers.list(filters={"status": "running"}):
            labels = container.labels or {}
            yield ContainerStart(
                container_id=container.id,
                service=labels.get(self.service_label),
                backfill=True,
            )

    # =========================================================================
    # Events
    # =========================================================================

    def start_events(
        self, since: int | datetime | None = None
    ) -> Iterator[ContainerStart]:
        """
        Yield container start events as they arrive.

        Blocks between events and returns when the daemon closes the stream.
        The underlying stream is registered with the process registry so
        shutdown closes it.

        Args:
            since: Replay events from this moment on (unix seconds or datetime).

        Raises:
            DockerConnectionError: If subscribing or reading the stream fails.
        """
        try:
            stream = self.client.events(
                since=since,
                decode=True,
                filters={"type": "container", "event": "start"},
            )
        except (DockerException, OSError) as e:
            raise DockerConnectionError(f"Cannot subscribe to Docker events: {e}") from e
        if self._processes is not None:
            self._processes.register(stream)

        try:
            for event in stream:
                actor = event.get("Actor") or {}
                container_id = actor.get("ID") or event.get("id")
                if not container_id:
                    continue
                attributes = actor.get("Attributes") or {}
                yield ContainerStart(
                    container_id=container_id,
                    service=attributes.get(self.service_label),
                    timestamp=event.get("time"),
                )
        except (DockerException, OSError) as e:
            raise DockerConnectionError(f"Docker event stream failed: {e}") from e
        finally:
            if self._processes is not None:
                self._processes.release(stream)
            else:
                stream.close()
