"""
Load-balancer registry and node id resolution.

Turns the configured, ordered list of load-balancer addresses into stable
small-integer ids and finds this node's own entry.

Two id schemes:
- Octet mode (default): id = last octet of the address.
  10.0.0.2, 10.0.0.3, 10.0.0.4 -> 2, 3, 4
- Indexed mode: id = 1-based position; retired entries keep their slot.
  10.0.0.2, null, 10.0.0.4 -> 1, -, 3

Octet values are only unique inside a /24, so indexed mode is forced for
larger subnets. The id doubles as TOS value, packet mark and routing table
number, which bounds it to 1-252: tables 253-255 are the kernel's
default, main and local tables.
"""

from __future__ import annotations

import ipaddress
import re

from ingressd.exceptions import ConfigurationError
from ingressd.models.enums import IdMode
from ingressd.models.topology import (
    MAX_NODE_ID,
    MIN_NODE_ID,
    RESERVED_ROUTING_TABLES,
    LoadBalancerNode,
    LoadBalancerRegistry,
)
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)

RETIRED_SENTINELS = frozenset({"null", "-"})

# Smallest prefix length for which last octets are guaranteed unique.
OCTET_MODE_MIN_PREFIX = 24


def parse_gateway_list(
    entries: list[str] | str,
) -> list[ipaddress.IPv4Address | None]:
    """
    Parse the configured load-balancer list.

    Entries may be passed as a list, or as one string separated by spaces
    or commas. "null" (or "-") marks a retired node.

    Raises:
        ConfigurationError: If an entry is neither an IPv4 address nor a sentinel.
    """
    if isinstance(entries, str):
        entries = [entries]

    tokens = [tok for entry in entries for tok in re.split(r"[\s,]+", entry) if tok]

    addresses: list[ipaddress.IPv4Address | None] = []
    for tok in tokens:
        if tok.lower() in RETIRED_SENTINELS:
            addresses.append(None)
            continue
        try:
            addresses.append(ipaddress.IPv4Address(tok))
        except ipaddress.AddressValueError as e:
            raise ConfigurationError(f"Invalid load balancer address '{tok}': {e}")
    return addresses


def choose_id_mode(subnet: ipaddress.IPv4Network, force_indexed: bool) -> IdMode:
    """Pick the id scheme, forcing indexed mode for subnets larger than /24."""
    if force_indexed:
        return IdMode.INDEXED

    if subnet.prefixlen < OCTET_MODE_MIN_PREFIX:
        logger.warning(
            f"Ingress subnet {subnet} is larger than /{OCTET_MODE_MIN_PREFIX}; "
            f"last octets are not unique, using indexed ids"
        )
        return IdMode.INDEXED

    return IdMode.OCTET


def resolve_registry(
    entries: list[ipaddress.IPv4Address | None],
    subnet: ipaddress.IPv4Network,
    node_address: ipaddress.IPv4Address | None = None,
    force_indexed: bool = False,
) -> LoadBalancerRegistry:
    """
    Resolve ids for every configured load balancer.

    Args:
        entries: Parsed list; None marks a retired node.
        subnet: Ingress subnet.
        node_address: This node's ingress address, if known.
        force_indexed: Use indexed ids regardless of subnet size.

    Returns:
        The resolved registry. ``local`` is None when this node is not listed.

    Raises:
        ConfigurationError: On an empty list, out-of-range, reserved or duplicate ids,
            repeated addresses, or addresses outside the ingress subnet.
    """
    if not any(address is not None for address in entries):
        raise ConfigurationError("No active load balancer addresses configured")

    id_mode = choose_id_mode(subnet, force_indexed)

    nodes: list[LoadBalancerNode] = []
    seen_ids: dict[int, ipaddress.IPv4Address] = {}
    seen_addresses: set[ipaddress.IPv4Address] = set()

    for position, address in enumerate(entries, start=1):
        if address is None:
            nodes.append(LoadBalancerNode(position=position, address=None))
            continue

        if address not in subnet:
            raise ConfigurationError(
                f"Load balancer {address} is outside the ingress subnet {subnet}"
            )
        if address in seen_addresses:
            raise ConfigurationError(f"Load balancer {address} is listed twice")
        seen_addresses.add(address)

        if id_mode == IdMode.INDEXED:
            node_id = position
        else:
            node_id = int(address) & 0xFF

        if node_id < MIN_NODE_ID or node_id > MAX_NODE_ID:
            raise ConfigurationError(
                f"Load balancer {address} resolves to id {node_id}. "
                f"Ids must be between {MIN_NODE_ID} and {MAX_NODE_ID}."
            )
        if node_id in RESERVED_ROUTING_TABLES:
            hint = "; use indexed ids" if id_mode == IdMode.OCTET else ""
            raise ConfigurationError(
                f"Load balancer {address} resolves to id {node_id}, which is a "
                f"reserved kernel routing table{hint}"
            )
        if node_id in seen_ids:
            raise ConfigurationError(
                f"Load balancers {seen_ids[node_id]} and {address} both resolve "
                f"to id {node_id}; use indexed ids"
            )
        seen_ids[node_id] = address

        nodes.append(LoadBalancerNode(position=position, address=address, node_id=node_id))

    local = None
    if node_address is not None:
        local = next((node for node in nodes if node.address == node_address), None)

    registry = LoadBalancerRegistry(nodes=tuple(nodes), id_mode=id_mode, local=local)

    logger.info(
        f"Resolved {len(registry.active)} load balancer(s) in {id_mode.value} mode: "
        + ", ".join(f"{node.address}={node.node_id}" for node in registry.active)
    )
    if node_address is not None:
        if local is None:
            logger.info(f"This node ({node_address}) is not a load balancer")
        else:
            logger.info(f"This node ({node_address}) is load balancer id {local.node_id}")

    return registry
