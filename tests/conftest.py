"""Shared fixtures and in-memory fakes for ingressd tests."""

import copy
import ipaddress

import pytest

from ingressd.config import IngressConfig
from ingressd.docker.exceptions import ContainerNotFoundError, NetworkNotFoundError
from ingressd.models.topology import (
    ContainerStart,
    FirewallRule,
    IngressTopology,
    PolicyRoute,
)
from ingressd.netns.exceptions import FirewallError, NamespaceError
from ingressd.netns.handle import InterfaceAddress, NamespaceHandle

SUBNET = ipaddress.IPv4Network("10.0.0.0/24")
NODE_A = ipaddress.IPv4Address("10.0.0.2")
NODE_B = ipaddress.IPv4Address("10.0.0.3")
NODE_C = ipaddress.IPv4Address("10.0.0.4")


class FakeNamespace(NamespaceHandle):
    """Namespace state kept in plain dicts and lists."""

    def __init__(self, path, interfaces=()):
        self.path = path
        self.interfaces = list(interfaces)
        self.firewall: dict[tuple[str, str], list[tuple[str, ...]]] = {}
        self.policy_rules: list[PolicyRoute] = []
        self.routes: dict[int, tuple[ipaddress.IPv4Address, int]] = {}
        self.sysctls: dict[str, str] = {}
        self.ops: list[tuple] = []
        self.closed = 0
        self.fail_next: list[Exception] = []

    def _maybe_fail(self):
        if self.fail_next:
            exc = self.fail_next.pop(0)
            if exc is not None:
                raise exc

    def chain(self, table, chain):
        return self.firewall.setdefault((table, chain), [])

    def state(self):
        return copy.deepcopy(
            (self.firewall, self.policy_rules, self.routes, self.sysctls)
        )

    def all_rules(self):
        return [args for rules in self.firewall.values() for args in rules]

    # NamespaceHandle

    def find_interface(self, subnet):
        for iface in self.interfaces:
            if iface.address in subnet:
                return iface
        return None

    def has_firewall_rule(self, rule: FirewallRule) -> bool:
        return rule.args in self.chain(rule.table, rule.chain)

    def add_firewall_rule(self, rule: FirewallRule) -> None:
        self._maybe_fail()
        rules = self.chain(rule.table, rule.chain)
        if rule.position is None:
            rules.append(rule.args)
        else:
            rules.insert(rule.position - 1, rule.args)
        self.ops.append(("add", rule.table, rule.chain, rule.args))

    def list_firewall_rules(self, table, chain):
        return list(self.chain(table, chain))

    def delete_firewall_rule(self, rule: FirewallRule) -> None:
        rules = self.chain(rule.table, rule.chain)
        if rule.args not in rules:
            raise FirewallError(["iptables", "-D", rule.chain], 1, "Bad rule")
        rules.remove(rule.args)
        self.ops.append(("delete", rule.table, rule.chain, rule.args))

    def has_routing_rule(self, route: PolicyRoute) -> bool:
        return route in self.policy_rules

    def add_routing_rule(self, route: PolicyRoute) -> None:
        self.policy_rules.append(route)
        self.ops.append(("rule", route.table))

    def add_route(self, route: PolicyRoute, interface_index: int) -> None:
        self.routes[route.table] = (route.gateway, interface_index)
        self.ops.append(("route", route.table))

    def get_sysctl(self, key):
        return self.sysctls[key]

    def set_sysctl(self, key, value):
        self.sysctls[key] = value
        self.ops.append(("sysctl", key, value))

    def close(self):
        self.closed += 1


class FakeOpener:
    """Maps namespace paths to FakeNamespace objects."""

    def __init__(self):
        self.namespaces: dict[str, FakeNamespace] = {}
        self.opened: list[str] = []

    def add(self, path, interfaces=()):
        ns = FakeNamespace(path, interfaces)
        self.namespaces[path] = ns
        return ns

    def __call__(self, path):
        self.opened.append(path)
        if path not in self.namespaces:
            raise NamespaceError("does not exist", path)
        return self.namespaces[path]


class FakeGateway:
    """Stands in for DockerGateway."""

    def __init__(self, subnet=SUBNET):
        self.subnet = subnet
        self.networks = {"ingress": subnet}
        self.sandboxes: dict[str, str] = {}
        self.running: list[ContainerStart] = []
        self.streams: list[list] = []  # one list per subscription
        self.since_calls: list = []

    def network_subnet(self, name):
        if name not in self.networks:
            raise NetworkNotFoundError(name)
        return self.networks[name]

    def container_sandbox(self, container_id):
        if container_id not in self.sandboxes:
            raise ContainerNotFoundError(container_id)
        return self.sandboxes[container_id]

    def running_containers(self):
        yield from self.running

    def start_events(self, since=None):
        self.since_calls.append(since)
        if not self.streams:
            # Nothing left to deliver; stands in for the termination signal.
            raise KeyboardInterrupt
        for event in self.streams.pop(0):
            if isinstance(event, BaseException):
                raise event
            yield event


class FakeRegistry:
    """Stands in for ProcessRegistry."""

    def __init__(self):
        self.shutdown_calls = 0

    def shutdown(self):
        self.shutdown_calls += 1


def ingress_iface(address="10.0.0.9", name="eth1", index=7):
    return InterfaceAddress(name=name, index=index, address=ipaddress.IPv4Address(address))


@pytest.fixture()
def cfg():
    return IngressConfig(RETRY_DELAY_SECONDS=0, INGRESS_NAMESPACE="/ns/ingress_sbox")


@pytest.fixture()
def topology():
    return IngressTopology(subnet=SUBNET, node_address=NODE_A, namespace="/ns/ingress_sbox")


@pytest.fixture()
def opener():
    return FakeOpener()


@pytest.fixture()
def gateway():
    return FakeGateway()
