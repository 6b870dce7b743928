"""
ingressd configuration.

A global Config instance that can be modified at runtime. The CLI writes the
parsed startup options onto it; services take it as an argument so tests can
hand in their own instance.
"""

from dataclasses import dataclass, field

from ingressd.models.enums import LogLevel


@dataclass
class IngressConfig:
    """Daemon configuration."""

    # Mode Selection
    INSTALL: bool = False
    UNINSTALL: bool = False

    # Filters (empty means "match everything")
    SERVICES: list[str] = field(default_factory=list)
    TCP_PORTS: list[int] = field(default_factory=list)
    UDP_PORTS: list[int] = field(default_factory=list)

    # Load Balancer Registry
    GATEWAY_IPS: list[str] = field(default_factory=list)  # entries may be "null"
    INDEXED_IDS: bool = False

    # Behaviour Toggles
    PERFORMANCE: bool = True  # IPVS sysctl tuning + conntrack bypass
    PREEXISTING: bool = False  # backfill already-running containers

    # Docker Configuration
    INGRESS_NETWORK_NAME: str = "ingress"
    INGRESS_NAMESPACE: str = "/var/run/docker/netns/ingress_sbox"
    SERVICE_LABEL: str = "com.docker.swarm.service.name"
    DOCKER_TIMEOUT: int | None = None

    # Routing Configuration
    RULE_PRIORITY: int = 32700  # just ahead of the main table rule (32766)
    MARKER_COMMENT: str = "ingressd-return-path"

    # Execution Configuration
    COMMAND_TIMEOUT: int = 30  # seconds per nsenter/iptables/sysctl call
    INSTALL_RETRIES: int = 2
    RETRY_DELAY_SECONDS: float = 1.0
    SHUTDOWN_GRACE_SECONDS: float = 5.0
    EVENT_RETRY_DELAY_SECONDS: float = 1.0  # first backoff after the event stream drops
    EVENT_RETRY_MAX_SECONDS: float = 30.0

    # Logging Configuration
    LOG_LEVEL: LogLevel = LogLevel.INFO


# Global config instance
config = IngressConfig()
