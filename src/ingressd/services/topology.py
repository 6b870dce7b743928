"""Ingress topology detection."""

from __future__ import annotations

from ingressd.config import IngressConfig
from ingressd.docker.client import DockerGateway
from ingressd.docker.exceptions import DockerError
from ingressd.exceptions import TopologyUnavailable
from ingressd.models.topology import IngressTopology
from ingressd.netns.exceptions import NamespaceError
from ingressd.netns.handle import NamespaceOpener
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)


def detect(
    gateway: DockerGateway, opener: NamespaceOpener, cfg: IngressConfig
) -> IngressTopology:
    """
    Discover the ingress subnet and this node's address on it.

    The subnet comes from the Docker ingress network's IPAM config; the node
    address is whichever address inside the ingress namespace falls in it.

    Raises:
        TopologyUnavailable: If either half cannot be resolved.
    """
    try:
        subnet = gateway.network_subnet(cfg.INGRESS_NETWORK_NAME)
    except DockerError as e:
        raise TopologyUnavailable(f"Cannot inspect ingress network: {e}") from e

    if subnet is None:
        raise TopologyUnavailable(
            f"Network '{cfg.INGRESS_NETWORK_NAME}' has no IPv4 subnet configured"
        )

    try:
        with opener(cfg.INGRESS_NAMESPACE) as handle:
            found = handle.find_interface(subnet)
    except NamespaceError as e:
        raise TopologyUnavailable(f"Cannot enter ingress namespace: {e}") from e

    if found is None:
        raise TopologyUnavailable(
            f"No address on {subnet} inside {cfg.INGRESS_NAMESPACE}"
        )

    logger.info(
        f"Ingress topology: subnet={subnet}, node address={found.address} "
        f"(dev {found.name})"
    )
    return IngressTopology(
        subnet=subnet,
        node_address=found.address,
        namespace=cfg.INGRESS_NAMESPACE,
    )
