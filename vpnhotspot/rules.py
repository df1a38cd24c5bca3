"""
VPN Hotspot Rule Synchronizer
=============================

Installs and removes the forwarding/NAT rules that route tethered clients
through the VPN interface.

Rule set for a configuration (T = tether, V = vpn, D = dns):
- FORWARD  -i T -o V -j ACCEPT
- FORWARD  -i V -o T -m state --state RELATED,ESTABLISHED -j ACCEPT
- nat POSTROUTING -o V -j MASQUERADE
- nat PREROUTING -i T -p udp/tcp --dport 53 -j DNAT --to-destination D  (if D)
- INPUT    -i T -j ACCEPT
- ip6tables FORWARD -i T -o V -j ACCEPT  (if the translation interface exists)

apply() is idempotent: every rule is checked (-C) before it is added (-A).
flush() deletes (-D) exactly what apply() would have added; removing a rule
that is already gone is an expected, harmless failure.
"""

from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger

from .executor import CommandExecutor
from .models import Configuration, Rule

IPV4_FORWARD_SYSCTL = "net.ipv4.ip_forward=1"
IPV6_FORWARD_SYSCTL = "net.ipv6.conf.all.forwarding=1"


def forward_rule(tether: str, vpn: str, family: str = "ipv4") -> Rule:
    return Rule(family, "filter", "FORWARD", ("-i", tether, "-o", vpn, "-j", "ACCEPT"))


def return_rule(tether: str, vpn: str) -> Rule:
    return Rule("ipv4", "filter", "FORWARD", (
        "-i", vpn, "-o", tether,
        "-m", "state", "--state", "RELATED,ESTABLISHED",
        "-j", "ACCEPT"
    ))


def masquerade_rule(vpn: str) -> Rule:
    return Rule("ipv4", "nat", "POSTROUTING", ("-o", vpn, "-j", "MASQUERADE"))


def dns_rules(tether: str, dns: str) -> List[Rule]:
    return [
        Rule("ipv4", "nat", "PREROUTING", (
            "-i", tether, "-p", proto, "--dport", "53",
            "-j", "DNAT", "--to-destination", dns
        ))
        for proto in ("udp", "tcp")
    ]


def input_rule(tether: str) -> Rule:
    return Rule("ipv4", "filter", "INPUT", ("-i", tether, "-j", "ACCEPT"))


def rules_for(config: Configuration, ipv6: bool = False) -> List[Rule]:
    """
    Rule set implied by a complete configuration.

    Args:
        config: Configuration with tether and vpn set
        ipv6: Include the IPv6 forwarding mirror

    Returns:
        Ordered list of rules, empty for an incomplete configuration.
    """
    if not config.is_complete:
        return []

    rules = [
        forward_rule(config.tether, config.vpn),
        return_rule(config.tether, config.vpn),
        masquerade_rule(config.vpn),
    ]
    if config.dns:
        rules.extend(dns_rules(config.tether, config.dns))
    rules.append(input_rule(config.tether))
    if ipv6:
        rules.append(forward_rule(config.tether, config.vpn, family="ipv6"))
    return rules


def removal_rules(config: Configuration, ipv6: bool = False) -> List[Rule]:
    """
    Rules flush() removes for a possibly partial configuration.

    Each group is only removed when the fields it depends on are known.
    """
    rules = []
    if config.tether and config.vpn:
        rules.append(forward_rule(config.tether, config.vpn))
        rules.append(return_rule(config.tether, config.vpn))
    if config.vpn:
        rules.append(masquerade_rule(config.vpn))
    if config.tether and config.dns:
        rules.extend(dns_rules(config.tether, config.dns))
    if config.tether:
        rules.append(input_rule(config.tether))
    if ipv6 and config.tether and config.vpn:
        rules.append(forward_rule(config.tether, config.vpn, family="ipv6"))
    return rules


class RuleSynchronizer:
    """
    Converges the packet filter to the rule set of one configuration.

    Works purely on the configuration passed in; which configuration is
    live is tracked by the reconciliation loop.
    """

    def __init__(self, executor: CommandExecutor,
                 translation_present: Optional[Callable[[], bool]] = None):
        """
        Initialize rule synchronizer.

        Args:
            executor: Command executor used for every rule operation
            translation_present: Callable reporting whether the IPv4-over-IPv6
                translation interface currently exists
        """
        self.executor = executor
        self.translation_present = translation_present or (lambda: False)

    def ensure(self, rule: Rule, quiet: bool = False) -> bool:
        """Add a rule unless an identical one is already installed."""
        if self.executor.check(rule.argv("-C")):
            logger.debug(f"Rule present: {rule}")
            return True
        return self.executor.run(rule.argv("-A"), quiet=quiet).ok

    def remove(self, rule: Rule) -> bool:
        return self.executor.run(rule.argv("-D"), quiet=True).ok

    def apply(self, config: Configuration, quiet: bool = False) -> bool:
        """
        Install the rule set for a complete configuration.

        Args:
            config: Configuration to install
            quiet: Log command failures at DEBUG, for repeated repair attempts

        Returns:
            True if every command succeeded, False if any failed or the
            configuration is incomplete.
        """
        if not config.is_complete:
            logger.warning(f"Refusing to apply incomplete configuration: {config.describe()}")
            return False

        logger.info(f"Applying rules: {config.describe()}")

        ok = self.executor.run(["sysctl", "-w", IPV4_FORWARD_SYSCTL], quiet=quiet).ok
        for rule in rules_for(config):
            ok = self.ensure(rule, quiet=quiet) and ok

        if self.translation_present():
            logger.info("Translation interface present - enabling IPv6 forwarding")
            ok = self.executor.run(["sysctl", "-w", IPV6_FORWARD_SYSCTL], quiet=quiet).ok and ok
            ok = self.ensure(forward_rule(config.tether, config.vpn, family="ipv6"), quiet=quiet) and ok

        if ok:
            logger.info("Rules applied")
        elif quiet:
            logger.debug("Rules still incomplete")
        else:
            logger.warning("Rules applied with failures; will retry on next tick")
        return ok

    def flush(self, config: Configuration):
        """
        Remove the rules apply() would have added for a configuration.

        A configuration without tether and vpn issues no commands at all.
        """
        if config.is_empty:
            return

        logger.info(f"Flushing old rules {config.describe()}")
        for rule in removal_rules(config, ipv6=self.translation_present()):
            self.remove(rule)
        logger.info("Flush complete")

    def acquire(self, config: Configuration) -> "LiveRules":
        """Apply a configuration and return the handle that releases it."""
        complete = self.apply(config)
        return LiveRules(self, config, complete=complete)


class LiveRules:
    """
    Release handle for the rules of one applied configuration.

    release() flushes the configuration once; later calls do nothing.
    """

    def __init__(self, synchronizer: RuleSynchronizer, config: Configuration,
                 complete: bool = True):
        self.synchronizer = synchronizer
        self.config = config
        self.complete = complete
        self.applied_at = datetime.now()
        self.released = False

    def reapply(self, quiet: bool = False) -> bool:
        """Re-run the idempotent apply to fill in rules that failed earlier."""
        if self.released:
            return False
        self.complete = self.synchronizer.apply(self.config, quiet=quiet)
        return self.complete

    def release(self):
        if self.released:
            return
        # Marked only after the flush: a shutdown interrupting it flushes again
        self.synchronizer.flush(self.config)
        self.released = True

    def __enter__(self) -> "LiveRules":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"LiveRules({self.config.describe()}, {state})"
