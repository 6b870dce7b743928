"""
Data model for the ingress mesh and the containers behind it.

Everything here is plain data. Resolution and installation logic lives in
``ingressd.services``.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field

from ingressd.models.enums import IdMode, Protocol

# Packet marks and the TOS byte are both 8 bits wide for our purposes.
# 0 is what an unmarked packet carries, so it cannot identify a node.
MIN_NODE_ID = 1
MAX_NODE_ID = 255

# The id doubles as routing table number; these belong to the kernel
# (default, main, local).
RESERVED_ROUTING_TABLES = frozenset({253, 254, 255})


@dataclass(frozen=True)
class IngressTopology:
    """
    The ingress overlay as seen from this node.

    Attributes:
        subnet: Ingress subnet (e.g. 10.0.0.0/24)
        node_address: This node's address on the subnet (e.g. 10.0.0.2)
        namespace: Path of the ingress namespace holding the IPVS balancer
    """

    subnet: ipaddress.IPv4Network
    node_address: ipaddress.IPv4Address
    namespace: str


@dataclass(frozen=True)
class LoadBalancerNode:
    """One entry of the configured load-balancer list."""

    position: int  # 1-based
    address: ipaddress.IPv4Address | None  # None = retired
    node_id: int | None = None

    @property
    def retired(self) -> bool:
        return self.address is None


@dataclass(frozen=True)
class LoadBalancerRegistry:
    """Resolved load-balancer list plus this node's own entry."""

    nodes: tuple[LoadBalancerNode, ...]
    id_mode: IdMode
    local: LoadBalancerNode | None = None

    @property
    def active(self) -> tuple[LoadBalancerNode, ...]:
        """Non-retired entries, in configured order."""
        return tuple(node for node in self.nodes if not node.retired)

    @property
    def is_load_balancer(self) -> bool:
        return self.local is not None


@dataclass(frozen=True)
class PortFilter:
    """Restricts a rule set to one protocol and a set of destination ports."""

    protocol: Protocol
    ports: tuple[int, ...]

    def __post_init__(self):
        if not self.ports:
            raise ValueError("PortFilter needs at least one port")
        for port in self.ports:
            if port < 1 or port > 65535:
                raise ValueError(f"Invalid port: {port}. Must be between 1 and 65535.")

    def match_args(self) -> list[str]:
        """iptables match arguments selecting this filter's traffic."""
        ports = ",".join(str(port) for port in self.ports)
        return ["-p", self.protocol.value, "-m", "multiport", "--dports", ports]

    def __str__(self) -> str:
        return f"{self.protocol.value}:{','.join(str(p) for p in self.ports)}"


@dataclass(frozen=True)
class ServiceFilter:
    """Allow-list of swarm service names. Empty matches every container."""

    names: frozenset[str] = frozenset()

    def matches(self, service: str | None) -> bool:
        if not self.names:
            return True
        return service in self.names


@dataclass(frozen=True)
class ContainerStart:
    """One container-start occurrence, from backfill or from the event stream."""

    container_id: str
    service: str | None = None
    backfill: bool = False
    timestamp: int | None = None  # event time, unix seconds


@dataclass
class ContainerBinding:
    """What the return-path installer learned about one container."""

    container_id: str
    service: str | None = None
    sandbox: str | None = None  # network namespace path
    interface: str | None = None  # None = not on the ingress subnet
    interface_index: int | None = None
    installed: bool = False
    skipped: str | None = None  # reason when a guard short-circuited


@dataclass(frozen=True)
class FirewallRule:
    """
    A single iptables rule, usable for check, insert, append and delete.

    Attributes:
        table: iptables table (nat, mangle, raw, ...)
        chain: Chain name
        args: Rule specification without the -A/-I/-C/-D verb
        position: Insert position; None appends
    """

    table: str
    chain: str
    args: tuple[str, ...]
    position: int | None = None

    def __str__(self) -> str:
        return f"-t {self.table} {self.chain} {' '.join(self.args)}"


@dataclass(frozen=True)
class PolicyRoute:
    """Policy rule plus default route selecting one load-balancer node."""

    node_id: int
    gateway: ipaddress.IPv4Address
    subnet: ipaddress.IPv4Network
    priority: int

    @property
    def table(self) -> int:
        return self.node_id


@dataclass
class MarkingRuleSet:
    """Rules and sysctls the marking pipeline writes into the ingress namespace."""

    rules: list[FirewallRule] = field(default_factory=list)
    sysctls: dict[str, str] = field(default_factory=dict)


@dataclass
class RoutingRuleSet:
    """Everything the return-path installer writes into one container."""

    firewall: list[FirewallRule] = field(default_factory=list)
    sysctls: dict[str, str] = field(default_factory=dict)
    routes: list[PolicyRoute] = field(default_factory=list)
    marker: FirewallRule | None = None
