"""Top-level exception classes."""


class IngressdError(Exception):
    """Base exception for ingressd."""

    pass


class ConfigurationError(IngressdError):
    """Invalid startup parameters. Raised before any state is mutated."""

    pass


class TopologyUnavailable(IngressdError):
    """The ingress subnet or this node's address on it cannot be resolved."""

    pass
