"""
Return-path routing inside container network namespaces.

For a container attached to the ingress network, replies must leave via the
load-balancer node that received the connection. The marking pipeline puts
that node's id K in the TOS byte; inside the container we:

1. Copy TOS K into the connection mark on the ingress interface
   (mangle PREROUTING, one rule per active node).
2. Restore the connection mark onto outgoing TCP/UDP packets
   (mangle OUTPUT --restore-mark).
3. Relax rp_filter to loose mode; with several routing tables in play,
   legitimate traffic is asymmetric.
4. Route marked replies: "from <subnet> fwmark K lookup K" plus
   "default via <node K> dev <iface> table K" per active node.
5. Write the marker rule last. Its presence means the container is done.

Every step is check-then-add, so running twice equals running once.
"""

from __future__ import annotations

from ingressd.config import IngressConfig
from ingressd.docker.client import DockerGateway
from ingressd.models.topology import (
    ContainerBinding,
    ContainerStart,
    FirewallRule,
    IngressTopology,
    LoadBalancerRegistry,
    PolicyRoute,
    RoutingRuleSet,
    ServiceFilter,
)
from ingressd.netns.handle import NamespaceHandle, NamespaceOpener
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)

RP_FILTER_LOOSE = "2"


class ReturnPathInstaller:
    """
    Configures return-path routing in one container at a time.

    Attributes:
        gateway: Docker access, used to resolve container namespaces.
        opener: Enters a namespace by path.
        topology: Detected ingress topology.
        registry: Resolved load-balancer registry.
        service_filter: Services to configure; empty means all.
    """

    def __init__(
        self,
        gateway: DockerGateway,
        opener: NamespaceOpener,
        topology: IngressTopology,
        registry: LoadBalancerRegistry,
        service_filter: ServiceFilter,
        cfg: IngressConfig,
    ):
        self.gateway = gateway
        self.opener = opener
        self.topology = topology
        self.registry = registry
        self.service_filter = service_filter
        self.cfg = cfg

    # =========================================================================
    # Rule Construction
    # =========================================================================

    def marker_rule(self) -> FirewallRule:
        """No-op rule whose presence marks a configured container."""
        return FirewallRule(
            "mangle", "OUTPUT", ("-m", "comment", "--comment", self.cfg.MARKER_COMMENT)
        )

    def build_rules(self, interface: str) -> RoutingRuleSet:
        """Build everything one container needs, given its ingress interface."""
        rules = RoutingRuleSet(marker=self.marker_rule())

        for node in self.registry.active:
            rules.firewall.append(
                FirewallRule(
                    "mangle",
                    "PREROUTING",
                    (
                        "-i", interface,
                        "-m", "tos", "--tos", f"{node.node_id:#04x}/0xff",
                        "-j", "CONNMARK", "--set-xmark", f"{node.node_id:#x}/0xffffffff",
                    ),
                )
            )

        for protocol in ("tcp", "udp"):
            rules.firewall.append(
                FirewallRule(
                    "mangle", "OUTPUT", ("-p", protocol, "-j", "CONNMARK", "--restore-mark")
                )
            )

        rules.sysctls["net.ipv4.conf.all.rp_filter"] = RP_FILTER_LOOSE
        rules.sysctls[f"net.ipv4.conf.{interface}.rp_filter"] = RP_FILTER_LOOSE

        for node in self.registry.active:
            rules.routes.append(
                PolicyRoute(
                    node_id=node.node_id,
                    gateway=node.address,
                    subnet=self.topology.subnet,
                    priority=self.cfg.RULE_PRIORITY,
                )
            )

        return rules

    # =========================================================================
    # Installation
    # =========================================================================

    def install(self, start: ContainerStart) -> ContainerBinding:
        """
        Configure one container.

        Guards, each a logged skip: service not selected, no interface on the
        ingress subnet, marker rule already present.

        Returns:
            The binding; ``installed`` is True once the container is configured,
            whether by this call or an earlier one.

        Raises:
            ContainerNotFoundError: If the container disappeared.
            NamespaceError, CommandError: If a namespace operation failed.
        """
        short_id = start.container_id[:12]
        binding = ContainerBinding(container_id=start.container_id, service=start.service)

        if not self.service_filter.matches(start.service):
            binding.skipped = "service not selected"
            logger.debug(f"Skipping {short_id}: service {start.service!r} not selected")
            return binding

        binding.sandbox = self.gateway.container_sandbox(start.container_id)

        with self.opener(binding.sandbox) as handle:
            found = handle.find_interface(self.topology.subnet)
            if found is None:
                binding.skipped = "no ingress interface"
                logger.info(f"Skipping {short_id}: no interface on {self.topology.subnet}")
                return binding

            binding.interface = found.name
            binding.interface_index = found.index
            rules = self.build_rules(found.name)

            if handle.has_firewall_rule(rules.marker):
                binding.installed = True
                binding.skipped = "already configured"
                logger.info(f"Skipping {short_id}: already configured")
                return binding

            self._apply(handle, rules, found.index)

        binding.installed = True
        logger.info(
            f"Configured return path for {short_id} "
            f"(service={start.service or '-'}, dev {binding.interface}, "
            f"tables {', '.join(str(r.table) for r in rules.routes)})"
        )
        return binding

    def _apply(
        self, handle: NamespaceHandle, rules: RoutingRuleSet, interface_index: int
    ) -> None:
        for rule in rules.firewall:
            handle.ensure_firewall_rule(rule)

        for key, value in rules.sysctls.items():
            handle.set_sysctl(key, value)

        for route in rules.routes:
            if not handle.has_routing_rule(route):
                handle.add_routing_rule(route)
            handle.add_route(route, interface_index)

        handle.ensure_firewall_rule(rules.marker)
