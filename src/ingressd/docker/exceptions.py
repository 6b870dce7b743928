"""Docker-related exception classes."""

from ingressd.exceptions import IngressdError


class DockerError(IngressdError):
    """Base exception for Docker operations."""

    pass


class DockerConnectionError(DockerError):
    """Failed to connect to the Docker daemon."""

    pass


class NetworkNotFoundError(DockerError):
    """Docker network not found."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Network not found: {name}")


class ContainerNotFoundError(DockerError):
    """Container not found, or no longer running."""

    def __init__(self, container_id: str, reason: str = "not found"):
        self.container_id = container_id
        super().__init__(f"Container {container_id[:12]}: {reason}")
