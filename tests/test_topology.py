import pytest

from conftest import SUBNET, ingress_iface
from ingressd.exceptions import TopologyUnavailable
from ingressd.services.topology import detect


def test_detects_subnet_and_node_address(gateway, opener, cfg):
    ns = opener.add(
        cfg.INGRESS_NAMESPACE,
        [ingress_iface(address="172.18.0.2", name="eth1", index=3), ingress_iface(address="10.0.0.2", name="eth0", index=2)],
    )

    topology = detect(gateway, opener, cfg)

    assert topology.subnet == SUBNET
    assert str(topology.node_address) == "10.0.0.2"
    assert topology.namespace == cfg.INGRESS_NAMESPACE
    assert ns.closed == 1


def test_missing_network(gateway, opener, cfg):
    gateway.networks = {}

    with pytest.raises(TopologyUnavailable, match="ingress"):
        detect(gateway, opener, cfg)


def test_network_without_subnet(gateway, opener, cfg):
    gateway.networks["ingress"] = None

    with pytest.raises(TopologyUnavailable, match="no IPv4 subnet"):
        detect(gateway, opener, cfg)


def test_missing_namespace(gateway, opener, cfg):
    with pytest.raises(TopologyUnavailable, match="Cannot enter"):
        detect(gateway, opener, cfg)


def test_no_address_in_subnet(gateway, opener, cfg):
    opener.add(cfg.INGRESS_NAMESPACE, [ingress_iface(address="172.18.0.2")])

    with pytest.raises(TopologyUnavailable, match="No address"):
        detect(gateway, opener, cfg)
