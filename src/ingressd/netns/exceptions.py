"""Namespace-related exception classes."""

from ingressd.exceptions import IngressdError


class NamespaceError(IngressdError):
    """A network namespace could not be entered or queried."""

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(f"Namespace {path}: {message}")


class CommandError(IngressdError):
    """An external command run inside a namespace failed."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(
            f"Command '{' '.join(command)}' exited with {returncode}{detail}"
        )


class FirewallError(CommandError):
    """iptables rejected a rule operation."""

    pass


class SysctlError(CommandError):
    """sysctl read or write failed."""

    pass
