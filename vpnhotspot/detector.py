"""
VPN Hotspot Topology Detector
=============================

Determines, from live OS network state, the best-guess VPN interface, tether
(hotspot) interface and DNS server.

Detection is a chain of matchers tried in order. Each matcher either names an
interface or passes:

- ExactNameMatcher: fixed priority list of well-known interface names,
  optionally requiring a private IPv4 address
- LinkAttributeMatcher: any interface whose detailed link attributes look
  like a tunnel (tun, wireguard, vpn, point-to-point)
- NameKeywordMatcher: any interface with an IPv4 address whose name looks
  like a tether interface (wlan, ap, rndis, usb, tether)

Detection has no side effects on firewall state, never raises, and keeps no
memory between calls. A failed query simply means "not found".
"""

import ipaddress
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from .executor import CommandExecutor
from .models import Configuration

IPV4_INET_RE = re.compile(r'\binet\s+(\d{1,3}(?:\.\d{1,3}){3})')
DIGIT_RE = re.compile(r'\d')


@dataclass
class DetectorConfig:
    """Detection tunables"""
    vpn_interfaces: List[str] = field(default_factory=lambda: [
        "tun0", "tun1", "tun2", "wg0", "wg1", "vpn0", "vpn1", "ppp0", "utun0"
    ])
    vpn_link_pattern: str = r"tun|wireguard|vpn|point-to-point"
    tether_interfaces: List[str] = field(default_factory=lambda: [
        "wlan0", "ap0", "rndis0", "usb0", "tether0"
    ])
    tether_keyword_pattern: str = r"wlan|ap|rndis|usb|tether"
    private_ranges: List[str] = field(default_factory=lambda: [
        "10.0.0.0/8", "192.168.0.0/16", "172.16.0.0/12"
    ])
    dns_properties: List[str] = field(default_factory=lambda: [
        "net.dns1", "net.dns2", "net.dns3", "net.dns4"
    ])
    resolv_conf: str = "/etc/resolv.conf"
    translation_interface: str = "clat4"


class InterfaceMatcher(ABC):
    """One step of an interface detection chain."""

    name = "matcher"

    @abstractmethod
    def match(self, detector: "TopologyDetector") -> Optional[str]:
        """Return the matched interface name, or None to pass."""


class ExactNameMatcher(InterfaceMatcher):
    """First existing interface from a fixed priority list."""

    name = "exact-name"

    def __init__(self, candidates: List[str], require_private_ipv4: bool = False):
        self.candidates = list(candidates)
        self.require_private_ipv4 = require_private_ipv4

    def match(self, detector: "TopologyDetector") -> Optional[str]:
        for iface in self.candidates:
            if not detector.link_exists(iface):
                continue
            if self.require_private_ipv4 and not detector.has_private_ipv4(iface):
                continue
            return iface
        return None


class LinkAttributeMatcher(InterfaceMatcher):
    """First interface whose detailed link output matches a pattern."""

    name = "link-attributes"

    def __init__(self, pattern: str):
        self.pattern = re.compile(pattern, re.IGNORECASE)

    def match(self, detector: "TopologyDetector") -> Optional[str]:
        for iface in detector.link_names():
            details = detector.link_details(iface)
            if details and self.pattern.search(details):
                return iface
        return None


class NameKeywordMatcher(InterfaceMatcher):
    """First IPv4-addressed interface whose name matches a keyword pattern."""

    name = "name-keyword"

    def __init__(self, pattern: str):
        self.pattern = re.compile(pattern, re.IGNORECASE)

    def match(self, detector: "TopologyDetector") -> Optional[str]:
        for iface in detector.ipv4_interface_names():
            if self.pattern.search(iface):
                return iface
        return None


def run_chain(matchers: List[InterfaceMatcher], detector: "TopologyDetector") -> str:
    """Try each matcher in order; empty string when none matches."""
    for matcher in matchers:
        try:
            found = matcher.match(detector)
        except Exception as e:
            logger.debug(f"Matcher {matcher.name} failed: {e}")
            continue
        if found:
            logger.debug(f"Matcher {matcher.name} selected {found}")
            return found
    return ""


class TopologyDetector:
    """
    Best-effort snapshot of the current (tether, vpn, dns) topology.

    All OS queries go through the CommandExecutor, so tests can substitute
    canned command output.
    """

    def __init__(self, executor: CommandExecutor, config: Optional[DetectorConfig] = None):
        self.executor = executor
        self.config = config or DetectorConfig()
        self.private_networks = [
            ipaddress.ip_network(cidr, strict=False) for cidr in self.config.private_ranges
        ]
        self.vpn_matchers: List[InterfaceMatcher] = [
            ExactNameMatcher(self.config.vpn_interfaces),
            LinkAttributeMatcher(self.config.vpn_link_pattern),
        ]
        self.tether_matchers: List[InterfaceMatcher] = [
            ExactNameMatcher(self.config.tether_interfaces, require_private_ipv4=True),
            NameKeywordMatcher(self.config.tether_keyword_pattern),
        ]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(self) -> Configuration:
        """Detect the current configuration."""
        config = Configuration(
            tether=self.detect_tether(),
            vpn=self.detect_vpn(),
            dns=self.detect_dns()
        )
        logger.debug(f"Detected {config.describe()}")
        return config

    def detect_vpn(self) -> str:
        return run_chain(self.vpn_matchers, self)

    def detect_tether(self) -> str:
        return run_chain(self.tether_matchers, self)

    def detect_dns(self) -> str:
        """
        Detect the DNS server tethered clients should be redirected to.

        System properties are checked first, in order; the first value that
        contains a digit wins. Falls back to the first nameserver entry of
        the resolver configuration file.
        """
        for prop in self.config.dns_properties:
            result = self.executor.query(["getprop", prop])
            if not result.ok:
                continue
            for line in result.stdout.splitlines():
                if DIGIT_RE.search(line):
                    return line.strip()

        text = self.executor.read_text(self.config.resolv_conf)
        if text:
            for line in text.splitlines():
                parts = line.split()
                if len(parts) >= 2 and parts[0] == "nameserver":
                    return parts[1]
        return ""

    def translation_present(self) -> bool:
        """Whether the IPv4-over-IPv6 translation interface exists."""
        return self.link_exists(self.config.translation_interface)

    # ------------------------------------------------------------------
    # OS queries used by the matchers
    # ------------------------------------------------------------------

    def link_exists(self, iface: str) -> bool:
        return self.executor.query(["ip", "link", "show", iface]).ok

    def link_names(self) -> List[str]:
        """Interface names in the order the kernel reports them."""
        result = self.executor.query(["ip", "-o", "link", "show"])
        if not result.ok:
            return []

        names = []
        for line in result.stdout.splitlines():
            parts = line.split(": ")
            if len(parts) < 2:
                continue
            # veth/tunnel peers are reported as "name@peer"
            name = parts[1].split("@")[0].strip()
            if name and name not in names:
                names.append(name)
        return names

    def link_details(self, iface: str) -> str:
        result = self.executor.query(["ip", "-d", "link", "show", iface])
        return result.stdout if result.ok else ""

    def ipv4_addresses(self, iface: str) -> List[str]:
        result = self.executor.query(["ip", "-4", "addr", "show", "dev", iface])
        if not result.ok:
            return []
        return IPV4_INET_RE.findall(result.stdout)

    def has_private_ipv4(self, iface: str) -> bool:
        for addr in self.ipv4_addresses(iface):
            try:
                ip = ipaddress.ip_address(addr)
            except ValueError:
                continue
            if any(ip in network for network in self.private_networks):
                return True
        return False

    def ipv4_interface_names(self) -> List[str]:
        """Sorted unique names of interfaces carrying an IPv4 address."""
        result = self.executor.query(["ip", "-4", "-o", "addr", "show"])
        if not result.ok:
            return []

        names = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                names.add(parts[1])
        return sorted(names)

    def get_status(self) -> Dict:
        """Snapshot of detection results, for diagnostics."""
        config = self.detect()
        return {
            "tether": config.tether,
            "vpn": config.vpn,
            "dns": config.dns,
            "translation_interface": self.config.translation_interface,
            "translation_present": self.translation_present()
        }


# Convenience function to create detector config from YAML
def create_detector_config(config_dict: Dict) -> DetectorConfig:
    """Create detector configuration from configuration dictionary"""
    detection = config_dict.get("detection", {}) or {}
    defaults = DetectorConfig()

    return DetectorConfig(
        vpn_interfaces=detection.get("vpn_interfaces", defaults.vpn_interfaces),
        vpn_link_pattern=detection.get("vpn_link_pattern", defaults.vpn_link_pattern),
        tether_interfaces=detection.get("tether_interfaces", defaults.tether_interfaces),
        tether_keyword_pattern=detection.get("tether_keyword_pattern", defaults.tether_keyword_pattern),
        private_ranges=detection.get("private_ranges", defaults.private_ranges),
        dns_properties=detection.get("dns_properties", defaults.dns_properties),
        resolv_conf=detection.get("resolv_conf", defaults.resolv_conf),
        translation_interface=detection.get("translation_interface", defaults.translation_interface)
    )
