"""
Capability-scoped access to one network namespace.

A NamespaceHandle exposes exactly the operations the installers need:
firewall rule list/check/insert/delete, policy-routing rules, per-table
routes, sysctls and an address lookup. Services depend only on the abstract
interface; NetnsHandle is the real implementation.

NetnsHandle does its netlink work (addresses, rules, routes) through a
pyroute2 NetNS bound to the namespace path, and runs iptables and sysctl via
``nsenter --net=<path>``. All spawned processes are owned by the
ProcessRegistry passed in.
"""

from __future__ import annotations

import errno
import ipaddress
import os
import shlex
import socket
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from ingressd.models.topology import FirewallRule, PolicyRoute
from ingressd.netns.exceptions import FirewallError, NamespaceError, SysctlError
from ingressd.netns.processes import ProcessRegistry
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class InterfaceAddress:
    """An IPv4 address and the interface that carries it."""

    name: str
    index: int
    address: ipaddress.IPv4Address


class NamespaceHandle(ABC):
    """Operations available inside one network namespace."""

    path: str

    # =========================================================================
    # Interfaces
    # =========================================================================

    @abstractmethod
    def find_interface(
        self, subnet: ipaddress.IPv4Network
    ) -> InterfaceAddress | None:
        """
        Find the interface holding an address inside ``subnet``.

        Loopback is ignored; an address with the subnet's own prefix length
        is preferred over narrower ones (e.g. a /32 VIP).
        """

    # =========================================================================
    # Firewall
    # =========================================================================

    @abstractmethod
    def has_firewall_rule(self, rule: FirewallRule) -> bool: ...

    @abstractmethod
    def add_firewall_rule(self, rule: FirewallRule) -> None: ...

    @abstractmethod
    def list_firewall_rules(self, table: str, chain: str) -> list[tuple[str, ...]]:
        """List rules of one chain as argument tuples (no verb, no chain)."""

    @abstractmethod
    def delete_firewall_rule(self, rule: FirewallRule) -> None: ...

    def ensure_firewall_rule(self, rule: FirewallRule) -> bool:
        """Add a rule unless an identical one exists. Returns True if added."""
        if self.has_firewall_rule(rule):
            logger.debug(f"[{self.path}] iptables rule already exists: {rule}")
            return False
        self.add_firewall_rule(rule)
        logger.debug(f"[{self.path}] Added iptables rule: {rule}")
        return True

    # =========================================================================
    # Policy Routing
    # =========================================================================

    @abstractmethod
    def has_routing_rule(self, route: PolicyRoute) -> bool: ...

    @abstractmethod
    def add_routing_rule(self, route: PolicyRoute) -> None: ...

    @abstractmethod
    def add_route(self, route: PolicyRoute, interface_index: int) -> None:
        """Install (or replace) the default route of ``route.table``."""

    # =========================================================================
    # Sysctl
    # =========================================================================

    @abstractmethod
    def get_sysctl(self, key: str) -> str: ...

    @abstractmethod
    def set_sysctl(self, key: str, value: str) -> None: ...

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


NamespaceOpener = Callable[[str], NamespaceHandle]


class NetnsHandle(NamespaceHandle):
    """
    NamespaceHandle backed by pyroute2 and nsenter.

    Attributes:
        path: Namespace path (e.g. /var/run/docker/netns/ingress_sbox).
    """

    def __init__(self, path: str, processes: ProcessRegistry, timeout: float = 30):
        if not os.path.exists(path):
            raise NamespaceError("does not exist", path)

        self.path = path
        self._processes = processes
        self._timeout = timeout
        self._ns = None

    def _get_ns(self):
        """Get or create the NetNS netlink socket."""
        if self._ns is None:
            from pyroute2 import NetNS

            try:
                # flags=0: never create the namespace if it vanished
                self._ns = NetNS(self.path, flags=0)
            except OSError as e:
                raise NamespaceError(str(e), self.path) from e
            self._processes.register(self._ns)
        return self._ns

    def _exec(self, argv: list[str]) -> subprocess.CompletedProcess:
        command = ["nsenter", f"--net={self.path}", "--", *argv]
        try:
            return self._processes.run(command, timeout=self._timeout)
        except subprocess.TimeoutExpired as e:
            raise NamespaceError(f"'{' '.join(argv)}' timed out", self.path) from e

    def _iptables(self, table: str, *args: str) -> subprocess.CompletedProcess:
        return self._exec(["iptables", "-w", "-t", table, *args])

    # =========================================================================
    # Interfaces
    # =========================================================================

    def find_interface(
        self, subnet: ipaddress.IPv4Network
    ) -> InterfaceAddress | None:
        from pyroute2.netlink.rtnl.ifinfmsg import IFF_LOOPBACK

        ns = self._get_ns()
        links = {link["index"]: link for link in ns.get_links()}

        candidates = []
        for addr in ns.get_addr(family=socket.AF_INET):
            ip = ipaddress.IPv4Address(addr.get_attr("IFA_ADDRESS"))
            if ip not in subnet:
                continue

            index = addr["index"]
            link = links.get(index)
            if link is not None and link["flags"] & IFF_LOOPBACK:
                # VIPs on lo never receive ingress traffic
                continue

            if link is not None:
                name = link.get_attr("IFLA_IFNAME")
            else:
                name = addr.get_attr("IFA_LABEL")
            found = InterfaceAddress(name=name, index=index, address=ip)
            candidates.append((addr["prefixlen"] != subnet.prefixlen, found))

        if not candidates:
            return None
        # Addresses carrying the subnet's own prefix length win; ties keep kernel order
        return min(candidates, key=lambda candidate: candidate[0])[1]

    # =========================================================================
    # Firewall
    # =========================================================================

    def has_firewall_rule(self, rule: FirewallRule) -> bool:
        result = self._iptables(rule.table, "-C", rule.chain, *rule.args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise FirewallError(result.args, result.returncode, result.stderr)

    def add_firewall_rule(self, rule: FirewallRule) -> None:
        if rule.position is None:
            result = self._iptables(rule.table, "-A", rule.chain, *rule.args)
        else:
            result = self._iptables(
                rule.table, "-I", rule.chain, str(rule.position), *rule.args
            )
        if result.returncode != 0:
            raise FirewallError(result.args, result.returncode, result.stderr)

    def list_firewall_rules(self, table: str, chain: str) -> list[tuple[str, ...]]:
        result = self._iptables(table, "-S", chain)
        if result.returncode != 0:
            raise FirewallError(result.args, result.returncode, result.stderr)
        return parse_rule_listing(result.stdout, chain)

    def delete_firewall_rule(self, rule: FirewallRule) -> None:
        result = self._iptables(rule.table, "-D", rule.chain, *rule.args)
        if result.returncode != 0:
            raise FirewallError(result.args, result.returncode, result.stderr)

    # =========================================================================
    # Policy Routing
    # =========================================================================

    def has_routing_rule(self, route: PolicyRoute) -> bool:
        ns = self._get_ns()
        src = str(route.subnet.network_address)

        for rule in ns.get_rules(family=socket.AF_INET):
            if (
                rule.get_attr("FRA_TABLE") == route.table
                and rule.get_attr("FRA_FWMARK") == route.node_id
                and rule.get_attr("FRA_PRIORITY") == route.priority
                and rule.get_attr("FRA_SRC") == src
                and rule["src_len"] == route.subnet.prefixlen
            ):
                return True
        return False

    def add_routing_rule(self, route: PolicyRoute) -> None:
        from pyroute2 import NetlinkError

        ns = self._get_ns()
        try:
            ns.rule(
                "add",
                table=route.table,
                priority=route.priority,
                fwmark=route.node_id,
                fwmask=0xFFFFFFFF,
                src=str(route.subnet.network_address),
                src_len=route.subnet.prefixlen,
            )
        except NetlinkError as e:
            if e.code == errno.EEXIST:
                logger.debug(f"[{self.path}] Rule for table {route.table} already exists")
                return
            raise NamespaceError(
                f"adding rule for table {route.table} failed: {e}", self.path
            ) from e

    def add_route(self, route: PolicyRoute, interface_index: int) -> None:
        from pyroute2 import NetlinkError

        ns = self._get_ns()
        try:
            ns.route(
                "replace",
                dst="0.0.0.0",
                dst_len=0,
                gateway=str(route.gateway),
                oif=interface_index,
                table=route.table,
            )
        except NetlinkError as e:
            raise NamespaceError(
                f"default route via {route.gateway} in table {route.table} failed: {e}",
                self.path,
            ) from e

    # =========================================================================
    # Sysctl
    # =========================================================================

    def get_sysctl(self, key: str) -> str:
        result = self._exec(["sysctl", "-n", key])
        if result.returncode != 0:
            raise SysctlError(result.args, result.returncode, result.stderr)
        return result.stdout.strip()

    def set_sysctl(self, key: str, value: str) -> None:
        result = self._exec(["sysctl", "-q", "-w", f"{key}={value}"])
        if result.returncode != 0:
            raise SysctlError(result.args, result.returncode, result.stderr)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        if self._ns is not None:
            self._processes.release(self._ns)
            self._ns = None

    def __repr__(self) -> str:
        return f"NetnsHandle({self.path!r})"


def parse_rule_listing(output: str, chain: str) -> list[tuple[str, ...]]:
    """
    Parse ``iptables -S <chain>`` output into argument tuples.

    Policy (-P) and chain (-N) lines are dropped; "-A <chain>" is stripped.
    """
    rules = []
    for line in output.splitlines():
        parts = shlex.split(line)
        if len(parts) < 2 or parts[0] != "-A" or parts[1] != chain:
            continue
        rules.append(tuple(parts[2:]))
    return rules


def make_opener(processes: ProcessRegistry, timeout: float = 30) -> NamespaceOpener:
    """Build an opener that enters namespaces on behalf of ``processes``."""

    def enter_namespace(path: str) -> NamespaceHandle:
        return NetnsHandle(path, processes, timeout=timeout)

    return enter_namespace
