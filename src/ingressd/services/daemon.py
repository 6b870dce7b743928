"""
Daemon entry points: install (configure and watch) and uninstall (clean up).

Control flow for install:
    preflight -> topology -> registry -> [marking, if load balancer] -> watcher

Every configuration error is raised before the first mutation.
"""

from __future__ import annotations

import shutil

from ingressd.config import IngressConfig
from ingressd.docker.client import DockerGateway
from ingressd.exceptions import ConfigurationError
from ingressd.models.topology import ServiceFilter
from ingressd.netns.handle import make_opener
from ingressd.netns.processes import ProcessRegistry
from ingressd.services import topology as topology_service
from ingressd.services.cleanup import cleanup_marking
from ingressd.services.marking import build_port_filters, install_marking
from ingressd.services.registry import parse_gateway_list, resolve_registry
from ingressd.services.return_path import ReturnPathInstaller
from ingressd.services.watcher import LifecycleWatcher
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)

REQUIRED_TOOLS = ("nsenter", "iptables", "sysctl")


def preflight() -> None:
    """
    Check the external tools namespace commands depend on.

    Raises:
        ConfigurationError: If a tool is missing from PATH.
    """
    missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    if missing:
        raise ConfigurationError(f"Required tool(s) not found: {', '.join(missing)}")


def run_uninstall(cfg: IngressConfig) -> int:
    """Remove marking rules from the ingress namespace. Never touches containers."""
    processes = ProcessRegistry(grace_seconds=cfg.SHUTDOWN_GRACE_SECONDS)
    opener = make_opener(processes, timeout=cfg.COMMAND_TIMEOUT)
    try:
        with opener(cfg.INGRESS_NAMESPACE) as handle:
            return cleanup_marking(handle)
    finally:
        processes.shutdown()


def run_install(cfg: IngressConfig) -> None:
    """
    Configure this node and watch containers until interrupted.

    Raises:
        ConfigurationError: Invalid options.
        TopologyUnavailable: The ingress network cannot be resolved.
    """
    if not cfg.GATEWAY_IPS:
        raise ConfigurationError("--ingress-gateway-ips is required with --install")

    entries = parse_gateway_list(cfg.GATEWAY_IPS)
    filters = build_port_filters(cfg.TCP_PORTS, cfg.UDP_PORTS)
    service_filter = ServiceFilter(frozenset(cfg.SERVICES))

    processes = ProcessRegistry(grace_seconds=cfg.SHUTDOWN_GRACE_SECONDS)
    try:
        gateway = DockerGateway(
            timeout=cfg.DOCKER_TIMEOUT,
            service_label=cfg.SERVICE_LABEL,
            processes=processes,
        )
        opener = make_opener(processes, timeout=cfg.COMMAND_TIMEOUT)

        topology = topology_service.detect(gateway, opener, cfg)
        registry = resolve_registry(
            entries,
            topology.subnet,
            node_address=topology.node_address,
            force_indexed=cfg.INDEXED_IDS,
        )

        with opener(topology.namespace) as handle:
            if registry.is_load_balancer:
                install_marking(
                    handle, topology, registry, filters, performance=cfg.PERFORMANCE
                )
            else:
                # Rules left over from a run where this node was listed
                cleanup_marking(handle)
                logger.info("Skipping marking pipeline: this node is not a load balancer")

        installer = ReturnPathInstaller(
            gateway, opener, topology, registry, service_filter, cfg
        )
        watcher = LifecycleWatcher(gateway, installer, service_filter, processes, cfg)
    except BaseException:
        processes.shutdown()
        raise

    watcher.run()
