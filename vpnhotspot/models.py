"""
VPN Hotspot Data Models
=======================

Value types shared by the detector, the rule synchronizer and the
reconciliation loop.

- Configuration: the (tether, vpn, dns) triple describing one topology
- Rule: a single iptables/ip6tables rule that can be checked, added, deleted
- TickOutcome: what one reconciliation tick decided to do
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, List, Tuple


@dataclass(frozen=True)
class Configuration:
    """
    One observed or applied network topology.

    Empty strings mean "absent". Two configurations are equal when all three
    fields match.
    """
    tether: str = ""
    vpn: str = ""
    dns: str = ""

    EMPTY: ClassVar["Configuration"]

    @property
    def is_complete(self) -> bool:
        """Both a tether and a VPN interface are known."""
        return bool(self.tether) and bool(self.vpn)

    @property
    def is_empty(self) -> bool:
        """Neither a tether nor a VPN interface is known."""
        return not self.tether and not self.vpn

    def describe(self) -> str:
        return f"TETHER={self.tether} VPN={self.vpn} DNS={self.dns}"

    def to_dict(self) -> dict:
        return {"tether": self.tether, "vpn": self.vpn, "dns": self.dns}


Configuration.EMPTY = Configuration()


@dataclass(frozen=True)
class Rule:
    """Represents a packet filter rule in a built-in chain"""
    family: str          # "ipv4" or "ipv6"
    table: str           # "filter" or "nat"
    chain: str           # FORWARD, INPUT, POSTROUTING, PREROUTING
    spec: Tuple[str, ...]

    @property
    def binary(self) -> str:
        return "ip6tables" if self.family == "ipv6" else "iptables"

    def argv(self, action: str) -> List[str]:
        """
        Render the rule for an iptables action.

        Args:
            action: "-C" (check), "-A" (append) or "-D" (delete)

        Returns:
            Command line as a list of arguments.
        """
        cmd = [self.binary]
        # The filter table is the default and is left implicit
        if self.table != "filter":
            cmd += ["-t", self.table]
        cmd += [action, self.chain]
        cmd += list(self.spec)
        return cmd

    def __str__(self) -> str:
        return " ".join(self.argv("-A")[1:])


class TickOutcome(Enum):
    """Decision taken by one reconciliation tick."""
    APPLIED = "applied"        # Idle -> Active
    REPLACED = "replaced"      # Active -> Active with a new configuration
    REPAIRED = "repaired"      # same configuration, previous apply was partial
    CONVERGED = "converged"    # already in the desired state
    FLUSHED = "flushed"        # Active -> Idle
    WAITING = "waiting"        # Idle, preconditions not met
