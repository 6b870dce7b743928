"""
Removal of previously installed marking rules from the ingress namespace.

Rules are recognized by shape, not by exact text, so a restart with a
different port filter or node id still removes everything the previous run
installed.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ingressd.models.topology import FirewallRule
from ingressd.netns.handle import NamespaceHandle
from ingressd.utils.logger import get_logger

logger = get_logger(__name__)


def _target(args: tuple[str, ...]) -> tuple[str, ...]:
    """Everything from the -j flag on."""
    if "-j" not in args:
        return ()
    return args[args.index("-j") :]


def _is_ipvs_accept(args: tuple[str, ...]) -> bool:
    return "--ipvs" in args and _target(args) == ("-j", "ACCEPT")


def _is_tos_tag(args: tuple[str, ...]) -> bool:
    target = _target(args)
    return target[:2] == ("-j", "TOS") and "--set-tos" in target


def _is_notrack(args: tuple[str, ...]) -> bool:
    target = _target(args)
    return target[:2] == ("-j", "CT") and "--notrack" in target


@dataclass(frozen=True)
class RuleCategory:
    """One kind of marking rule: where it lives and how to recognize it."""

    name: str
    table: str
    chain: str
    matches: Callable[[tuple[str, ...]], bool]


BYPASS_ACCEPT = RuleCategory("bypass-accept", "nat", "POSTROUTING", _is_ipvs_accept)
TOS_TAG = RuleCategory("tos-tag", "mangle", "POSTROUTING", _is_tos_tag)
NOTRACK = RuleCategory("notrack", "raw", "PREROUTING", _is_notrack)

CATEGORIES = (BYPASS_ACCEPT, TOS_TAG, NOTRACK)


def find_marking_rules(handle: NamespaceHandle) -> list[FirewallRule]:
    """List every installed rule that matches a marking category."""
    found = []
    for category in CATEGORIES:
        for args in handle.list_firewall_rules(category.table, category.chain):
            if category.matches(args):
                found.append(FirewallRule(category.table, category.chain, args))
    return found


def cleanup_marking(handle: NamespaceHandle) -> int:
    """
    Delete every marking rule from the namespace.

    Returns:
        Number of rules removed. A second call returns 0.
    """
    removed = 0
    for rule in find_marking_rules(handle):
        handle.delete_firewall_rule(rule)
        logger.debug(f"Removed iptables rule: {rule}")
        removed += 1

    if removed:
        logger.info(f"Removed {removed} marking rule(s) from {handle.path}")
    else:
        logger.info(f"No marking rules to remove in {handle.path}")
    return removed
