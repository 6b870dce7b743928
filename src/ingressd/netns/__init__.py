"""
Network namespace access.

Re-exports the handle types so callers can write:
    from ingressd.netns import NamespaceHandle, make_opener
"""

from ingressd.netns.handle import (
    InterfaceAddress,
    NamespaceHandle,
    NamespaceOpener,
    NetnsHandle,
    make_opener,
)
from ingressd.netns.processes import ProcessRegistry

__all__ = [
    "InterfaceAddress",
    "NamespaceHandle",
    "NamespaceOpener",
    "NetnsHandle",
    "ProcessRegistry",
    "make_opener",
]
