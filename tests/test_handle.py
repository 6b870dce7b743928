import errno
import ipaddress
import subprocess

import pyroute2
import pytest
from pyroute2 import NetlinkError

from ingressd.models.topology import FirewallRule, PolicyRoute
from ingressd.netns.exceptions import FirewallError, NamespaceError, SysctlError
from ingressd.netns.handle import NetnsHandle, parse_rule_listing

LISTING = """\
-P POSTROUTING ACCEPT
-N DOCKER_POSTROUTING
-A POSTROUTING -d 10.0.0.0/24 -m ipvs --ipvs -j ACCEPT
-A POSTROUTING -d 10.0.0.0/24 -m ipvs --ipvs -j SNAT --to-source 10.0.0.2
-A DOCKER_POSTROUTING -j RETURN
-A POSTROUTING -m comment --comment "two words" -j RETURN
"""


class ScriptedProcesses:
    """Records commands and replays scripted results."""

    def __init__(self, results=None):
        self.commands: list[list[str]] = []
        self.results = list(results or [])

    def run(self, command, timeout=None):
        self.commands.append(command)
        returncode, stdout, stderr = self.results.pop(0) if self.results else (0, "", "")
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def register(self, handle):
        return handle

    def release(self, handle):
        handle.close()


@pytest.fixture()
def ns_path(tmp_path):
    path = tmp_path / "ingress_sbox"
    path.touch()
    return str(path)


def test_parse_rule_listing():
    assert parse_rule_listing(LISTING, "POSTROUTING") == [
        ("-d", "10.0.0.0/24", "-m", "ipvs", "--ipvs", "-j", "ACCEPT"),
        ("-d", "10.0.0.0/24", "-m", "ipvs", "--ipvs", "-j", "SNAT", "--to-source", "10.0.0.2"),
        ("-m", "comment", "--comment", "two words", "-j", "RETURN"),
    ]


def test_missing_namespace_rejected(tmp_path):
    with pytest.raises(NamespaceError):
        NetnsHandle(str(tmp_path / "nope"), ScriptedProcesses())


def test_commands_run_inside_namespace(ns_path):
    processes = ScriptedProcesses()
    handle = NetnsHandle(ns_path, processes)

    handle.add_firewall_rule(FirewallRule("mangle", "OUTPUT", ("-p", "tcp", "-j", "CONNMARK", "--restore-mark")))

    assert processes.commands == [
        [
            "nsenter", f"--net={ns_path}", "--",
            "iptables", "-w", "-t", "mangle", "-A", "OUTPUT",
            "-p", "tcp", "-j", "CONNMARK", "--restore-mark",
        ]
    ]


def test_positioned_rule_is_inserted(ns_path):
    processes = ScriptedProcesses()
    handle = NetnsHandle(ns_path, processes)

    handle.add_firewall_rule(FirewallRule("nat", "POSTROUTING", ("-j", "ACCEPT"), position=1))

    assert processes.commands[0][-5:] == ["-I", "POSTROUTING", "1", "-j", "ACCEPT"]


@pytest.mark.parametrize("returncode,expected", [(0, True), (1, False)])
def test_has_firewall_rule(ns_path, returncode, expected):
    handle = NetnsHandle(ns_path, ScriptedProcesses([(returncode, "", "")]))

    assert handle.has_firewall_rule(FirewallRule("raw", "PREROUTING", ("-j", "CT", "--notrack"))) is expected


def test_has_firewall_rule_error(ns_path):
    handle = NetnsHandle(ns_path, ScriptedProcesses([(2, "", "iptables: No chain/target/match by that name.")]))

    with pytest.raises(FirewallError, match="No chain"):
        handle.has_firewall_rule(FirewallRule("raw", "PREROUTING", ("-j", "CT", "--notrack")))


def test_ensure_skips_existing_rule(ns_path):
    processes = ScriptedProcesses([(0, "", "")])
    handle = NetnsHandle(ns_path, processes)

    assert handle.ensure_firewall_rule(FirewallRule("raw", "PREROUTING", ("-j", "CT", "--notrack"))) is False
    assert len(processes.commands) == 1
    assert "-C" in processes.commands[0]


def test_list_firewall_rules(ns_path):
    processes = ScriptedProcesses([(0, LISTING, "")])
    handle = NetnsHandle(ns_path, processes)

    rules = handle.list_firewall_rules("nat", "POSTROUTING")

    assert processes.commands[0][-3:] == ["nat", "-S", "POSTROUTING"]
    assert len(rules) == 3


def test_sysctl(ns_path):
    processes = ScriptedProcesses([(0, "", ""), (0, "2\n", ""), (255, "", "permission denied")])
    handle = NetnsHandle(ns_path, processes)

    handle.set_sysctl("net.ipv4.conf.all.rp_filter", "2")
    assert handle.get_sysctl("net.ipv4.conf.all.rp_filter") == "2"
    with pytest.raises(SysctlError):
        handle.set_sysctl("net.ipv4.vs.conn_reuse_mode", "0")

    assert processes.commands[0][-4:] == ["sysctl", "-q", "-w", "net.ipv4.conf.all.rp_filter=2"]


# =============================================================================
# Netlink
# =============================================================================

SUBNET = ipaddress.IPv4Network("10.0.0.0/24")
IFF_UP = 0x1
IFF_LOOPBACK = 0x8


class Msg(dict):
    """Netlink message: header fields by key, NLAs via get_attr."""

    def __init__(self, attrs=None, **fields):
        super().__init__(fields)
        self.attrs = attrs or {}

    def get_attr(self, name):
        return self.attrs.get(name)


def link(index, name, flags=IFF_UP):
    return Msg({"IFLA_IFNAME": name}, index=index, flags=flags)


def addr(index, address, prefixlen, label=None):
    return Msg({"IFA_ADDRESS": address, "IFA_LABEL": label}, index=index, prefixlen=prefixlen)


def policy_rule(table=2, fwmark=2, priority=32700, src="10.0.0.0", src_len=24):
    return Msg(
        {"FRA_TABLE": table, "FRA_FWMARK": fwmark, "FRA_PRIORITY": priority, "FRA_SRC": src},
        src_len=src_len,
    )


class FakeNetNS:
    def __init__(self):
        self.opened = []
        self.links = []
        self.addrs = []
        self.rules = []
        self.calls = []
        self.errors = {}
        self.closed = False

    def __call__(self, path, flags=None):
        self.opened.append((path, flags))
        return self

    def get_links(self, *args):
        return self.links

    def get_addr(self, family=None):
        return self.addrs

    def get_rules(self, family=None):
        return self.rules

    def rule(self, command, **kwargs):
        self.calls.append(("rule", command, kwargs))
        if "rule" in self.errors:
            raise self.errors["rule"]

    def route(self, command, **kwargs):
        self.calls.append(("route", command, kwargs))
        if "route" in self.errors:
            raise self.errors["route"]

    def close(self):
        self.closed = True


@pytest.fixture()
def netns(monkeypatch):
    fake = FakeNetNS()
    monkeypatch.setattr(pyroute2, "NetNS", fake)
    return fake


def make_route(node_id=2, priority=32700):
    return PolicyRoute(
        node_id=node_id,
        gateway=ipaddress.IPv4Address(f"10.0.0.{node_id}"),
        subnet=SUBNET,
        priority=priority,
    )


def test_namespace_opened_once_without_create(ns_path, netns):
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    handle.find_interface(SUBNET)
    handle.has_routing_rule(make_route())

    assert netns.opened == [(ns_path, 0)]


def test_find_interface_skips_loopback_and_prefers_subnet_prefix(ns_path, netns):
    netns.links = [link(1, "lo", IFF_UP | IFF_LOOPBACK), link(14, "eth1"), link(12, "eth0")]
    netns.addrs = [
        addr(1, "10.0.0.5", 32),
        addr(14, "10.0.0.7", 32),
        addr(12, "172.18.0.3", 16),
        addr(12, "10.0.0.9", 24),
    ]
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    found = handle.find_interface(SUBNET)

    assert (found.name, found.index, str(found.address)) == ("eth0", 12, "10.0.0.9")


def test_find_interface_accepts_narrower_prefix(ns_path, netns):
    netns.links = [link(1, "lo", IFF_UP | IFF_LOOPBACK), link(14, "eth1")]
    netns.addrs = [addr(1, "10.0.0.5", 32), addr(14, "10.0.0.7", 32)]
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    assert handle.find_interface(SUBNET).name == "eth1"


def test_find_interface_none_outside_subnet(ns_path, netns):
    netns.links = [link(12, "eth0")]
    netns.addrs = [addr(12, "172.18.0.3", 16)]
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    assert handle.find_interface(SUBNET) is None


def test_has_routing_rule_matches_every_attribute(ns_path, netns):
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    netns.rules = [
        policy_rule(priority=0, table=255, fwmark=None, src=None, src_len=0),
        policy_rule(src_len=16),
        policy_rule(priority=100),
        policy_rule(fwmark=3),
    ]
    assert not handle.has_routing_rule(make_route())

    netns.rules.append(policy_rule())
    assert handle.has_routing_rule(make_route())


def test_add_routing_rule(ns_path, netns):
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    handle.add_routing_rule(make_route(node_id=3))

    assert netns.calls == [
        (
            "rule",
            "add",
            {
                "table": 3,
                "priority": 32700,
                "fwmark": 3,
                "fwmask": 0xFFFFFFFF,
                "src": "10.0.0.0",
                "src_len": 24,
            },
        )
    ]


def test_existing_routing_rule_counts_as_present(ns_path, netns):
    netns.errors["rule"] = NetlinkError(errno.EEXIST, "File exists")
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    handle.add_routing_rule(make_route())


def test_routing_rule_failure(ns_path, netns):
    netns.errors["rule"] = NetlinkError(errno.EPERM, "Operation not permitted")
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    with pytest.raises(NamespaceError, match="table 2"):
        handle.add_routing_rule(make_route())


def test_add_route_replaces_table_default(ns_path, netns):
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    handle.add_route(make_route(node_id=4), interface_index=7)

    assert netns.calls == [
        (
            "route",
            "replace",
            {"dst": "0.0.0.0", "dst_len": 0, "gateway": "10.0.0.4", "oif": 7, "table": 4},
        )
    ]


def test_add_route_failure(ns_path, netns):
    netns.errors["route"] = NetlinkError(errno.ENETUNREACH, "Network is unreachable")
    handle = NetnsHandle(ns_path, ScriptedProcesses())

    with pytest.raises(NamespaceError, match="via 10.0.0.2 in table 2"):
        handle.add_route(make_route(), interface_index=7)


def test_close_releases_netlink_socket(ns_path, netns):
    handle = NetnsHandle(ns_path, ScriptedProcesses())
    handle.find_interface(SUBNET)

    handle.close()

    assert netns.closed
