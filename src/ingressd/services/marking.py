"""
Marking pipeline for the ingress namespace.

Runs once per daemon start on nodes that are listed as load balancers.

Per rule set (one per port filter, or a single unfiltered set):
1. nat POSTROUTING, inserted first:   -d <subnet> [filter] -m ipvs --ipvs -j ACCEPT
   Skips Docker's IPVS SNAT so the client address and our tag survive.
2. mangle POSTROUTING:                -d <subnet> [filter] -j TOS --set-tos <id>/0xff
   Writes this node's id into the TOS byte of packets sent to containers.
3. raw PREROUTING (performance only): [filter] -j CT --notrack
   Return identity travels in the TOS/mark scheme, so conntrack is not needed.
"""

from __future__ import annotations

from ingressd.models.enums import Protocol
from ingressd.models.topology import (
    FirewallRule,
    IngressTopology,
    LoadBalancerRegistry,
    MarkingRuleSet,
    PortFilter,
)
from ingressd.netns.handle import NamespaceHandle
from ingressd.services.cleanup import BYPASS_ACCEPT, NOTRACK, TOS_TAG, cleanup_marking
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)

# IPVS tuning applied inside the ingress namespace with performance enabled.
PERFORMANCE_SYSCTLS = {
    "net.ipv4.vs.conn_reuse_mode": "0",
    "net.ipv4.vs.expire_nodest_conn": "1",
    "net.ipv4.vs.expire_quiescent_template": "1",
}


def build_port_filters(tcp_ports: list[int], udp_ports: list[int]) -> list[PortFilter]:
    """One filter per protocol with configured ports. Empty means unfiltered."""
    filters = []
    if tcp_ports:
        filters.append(PortFilter(Protocol.TCP, tuple(tcp_ports)))
    if udp_ports:
        filters.append(PortFilter(Protocol.UDP, tuple(udp_ports)))
    return filters


def tos_value(node_id: int) -> str:
    """TOS target argument for a node id, in the form iptables prints it."""
    return f"{node_id:#04x}/0xff"


def build_marking_rules(
    topology: IngressTopology,
    node_id: int,
    filters: list[PortFilter],
    performance: bool = True,
) -> MarkingRuleSet:
    """Build the rule set for this node without touching any namespace."""
    subnet = str(topology.subnet)
    rule_set = MarkingRuleSet()

    # None stands for the single unfiltered set.
    for port_filter in filters or [None]:
        match = port_filter.match_args() if port_filter else []

        rule_set.rules.append(
            FirewallRule(
                BYPASS_ACCEPT.table,
                BYPASS_ACCEPT.chain,
                ("-d", subnet, *match, "-m", "ipvs", "--ipvs", "-j", "ACCEPT"),
                position=1,
            )
        )
        rule_set.rules.append(
            FirewallRule(
                TOS_TAG.table,
                TOS_TAG.chain,
                ("-d", subnet, *match, "-j", "TOS", "--set-tos", tos_value(node_id)),
            )
        )
        if performance:
            rule_set.rules.append(
                FirewallRule(
                    NOTRACK.table,
                    NOTRACK.chain,
                    (*match, "-j", "CT", "--notrack"),
                )
            )

    if performance:
        rule_set.sysctls.update(PERFORMANCE_SYSCTLS)

    return rule_set


def install_marking(
    handle: NamespaceHandle,
    topology: IngressTopology,
    registry: LoadBalancerRegistry,
    filters: list[PortFilter],
    performance: bool = True,
) -> MarkingRuleSet:
    """
    Clean up old marking rules, then install this node's.

    Args:
        handle: Ingress namespace.
        topology: Detected ingress topology.
        registry: Resolved registry; ``registry.local`` must be set.
        filters: Port filters; empty installs one unfiltered set.
        performance: Also install conntrack bypass and IPVS sysctl tuning.

    Returns:
        The installed rule set.
    """
    if registry.local is None or registry.local.node_id is None:
        raise ValueError("Marking pipeline requires this node to be a load balancer")

    node_id = registry.local.node_id
    cleanup_marking(handle)

    rule_set = build_marking_rules(topology, node_id, filters, performance)

    for rule in rule_set.rules:
        handle.ensure_firewall_rule(rule)

    for key, value in rule_set.sysctls.items():
        handle.set_sysctl(key, value)
        logger.debug(f"Set {key}={value} in {handle.path}")

    scope = ", ".join(str(f) for f in filters) if filters else "all traffic"
    logger.info(
        f"Marking pipeline installed: id {node_id}, {scope}, "
        f"{len(rule_set.rules)} rule(s), performance={'on' if performance else 'off'}"
    )
    return rule_set
