from ingressd.docker.client import SERVICE_LABEL, DockerGateway

__all__ = ["DockerGateway", "SERVICE_LABEL"]
