"""
VPN Hotspot Test Fixtures
=========================

Shared pytest fixtures: an in-memory packet filter standing in for the
command executor, canned `ip` output for detection, and a test configuration.
"""

import pytest
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from vpnhotspot.executor import CommandResult


class FakeFirewall:
    """
    Executor double with iptables -C/-A/-D semantics.

    Installed rules are kept as a list so duplicates would be visible.
    Read-only queries are answered from `responses`, files from `files`.
    """

    def __init__(self):
        self.rules: List[Tuple[str, str, str, Tuple[str, ...]]] = []
        self.sysctls: List[str] = []
        self.calls: List[List[str]] = []
        self.responses: Dict[Tuple[str, ...], Tuple[int, str]] = {}
        self.files: Dict[str, str] = {}
        self.failing: set = set()
        # Failed commands that were not run quietly, i.e. logged at WARNING
        self.warnings: List[List[str]] = []
        self.dry_run = False

    # -- executor interface ------------------------------------------------

    def run(self, argv: List[str], quiet: bool = False) -> CommandResult:
        self.calls.append(list(argv))
        result = self._mutate(argv)
        if not result.ok and not quiet:
            self.warnings.append(list(argv))
        return result

    def check(self, argv: List[str]) -> bool:
        self.calls.append(list(argv))
        return self._mutate(argv).ok

    def query(self, argv: List[str]) -> CommandResult:
        returncode, stdout = self.responses.get(tuple(argv), (1, ""))
        return CommandResult(command=list(argv), returncode=returncode, stdout=stdout)

    def read_text(self, path: str) -> Optional[str]:
        return self.files.get(path)

    # -- helpers -----------------------------------------------------------

    def _mutate(self, argv: List[str]) -> CommandResult:
        if tuple(argv) in self.failing:
            return CommandResult(command=list(argv), returncode=1, stderr="injected failure")

        if argv[0] == "sysctl":
            self.sysctls.append(argv[-1])
            return CommandResult(command=list(argv), returncode=0)

        binary, rest = argv[0], list(argv[1:])
        table = "filter"
        if rest[:1] == ["-t"]:
            table = rest[1]
            rest = rest[2:]
        action, chain, spec = rest[0], rest[1], tuple(rest[2:])
        key = (binary, table, chain, spec)

        if action == "-C":
            return CommandResult(command=list(argv), returncode=0 if key in self.rules else 1)
        if action == "-A":
            self.rules.append(key)
            return CommandResult(command=list(argv), returncode=0)
        if action == "-D":
            if key in self.rules:
                self.rules.remove(key)
                return CommandResult(command=list(argv), returncode=0)
            return CommandResult(command=list(argv), returncode=1, stderr="Bad rule")
        raise AssertionError(f"unexpected iptables action {action}")

    def respond(self, argv: List[str], stdout: str = "", returncode: int = 0):
        self.responses[tuple(argv)] = (returncode, stdout)

    def add_link(self, name: str, details: str = ""):
        """Make `ip link show <name>` succeed."""
        self.respond(["ip", "link", "show", name], f"5: {name}: <UP> mtu 1500\n")
        if details:
            self.respond(["ip", "-d", "link", "show", name], details)

    def add_ipv4(self, name: str, address: str):
        self.respond(
            ["ip", "-4", "addr", "show", "dev", name],
            f"7: {name}: <BROADCAST,UP> mtu 1500\n    inet {address}/24 brd 0.0.0.0 scope global {name}\n"
        )

    def installed(self, binary: str = "iptables") -> List[str]:
        """Installed rules rendered like `iptables -S`, for readable asserts."""
        rendered = []
        for rule_binary, table, chain, spec in self.rules:
            if rule_binary != binary:
                continue
            prefix = "" if table == "filter" else f"-t {table} "
            rendered.append(f"{prefix}-A {chain} {' '.join(spec)}")
        return rendered


class StubDetector:
    """Detector double returning a scripted sequence of configurations."""

    def __init__(self, configs, translation: bool = False):
        self.configs = list(configs)
        self.translation = translation
        self.calls = 0

    def detect(self):
        index = min(self.calls, len(self.configs) - 1)
        self.calls += 1
        return self.configs[index]

    def translation_present(self) -> bool:
        return self.translation


@pytest.fixture
def firewall():
    """Empty in-memory packet filter."""
    return FakeFirewall()


@pytest.fixture
def synchronizer(firewall):
    from vpnhotspot.rules import RuleSynchronizer
    return RuleSynchronizer(firewall)


@pytest.fixture
def make_reconciler(firewall):
    """Build a reconciler fed by a scripted sequence of configurations."""
    from vpnhotspot.reconciler import Reconciler
    from vpnhotspot.rules import RuleSynchronizer

    def factory(configs, translation: bool = False, interval: float = 0.01):
        detector = StubDetector(configs, translation=translation)
        synchronizer = RuleSynchronizer(firewall, translation_present=detector.translation_present)
        return Reconciler(detector, synchronizer, interval=interval)

    return factory


@pytest.fixture
def test_config():
    """Basic test configuration."""
    return {
        "general": {
            "log_level": "DEBUG"
        },
        "logging": {
            "file": "data/logs/test.log"
        },
        "reconcile": {
            "interval": 0.01
        },
        "executor": {
            "timeout": 2,
            "dry_run": True
        },
        "detection": {
            "vpn_interfaces": ["tun0", "wg0"],
            "tether_interfaces": ["wlan0", "rndis0"],
            "translation_interface": "clat4"
        }
    }
