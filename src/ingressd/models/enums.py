"""
Enumeration types for ingressd.

This module defines the enumeration types shared by the services, the
namespace layer and the CLI.
"""

from enum import Enum


# =============================================================================
# Identifier Enums
# =============================================================================


class IdMode(str, Enum):
    """
    How load-balancer node identifiers are derived.

    - OCTET: last octet of the node's ingress address (default)
    - INDEXED: 1-based position in the configured address list
    """

    OCTET = "octet"
    INDEXED = "indexed"


class Protocol(str, Enum):
    """Transport protocols a port filter can be scoped to."""

    TCP = "tcp"
    UDP = "udp"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above, including every external command
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
