"""
VPN Hotspot Core Modules
========================

Keeps hotspot traffic forwarded and NATed through whichever VPN interface is
active, with DNS from tethered clients redirected to the current resolver.

Modules:
- executor: best-effort runner for privileged commands
- detector: VPN / tether / DNS topology detection
- rules: idempotent rule application and removal
- reconciler: polling state machine owning the applied configuration
- lifecycle: flush-on-exit signal handling
- cli: command line entry point (`vpn-hotspot`)
"""

from .models import Configuration, Rule, TickOutcome
from .executor import CommandExecutor, CommandResult, ExecutorConfig
from .detector import TopologyDetector, DetectorConfig, create_detector_config
from .rules import RuleSynchronizer, LiveRules, rules_for
from .reconciler import Reconciler, AppliedState, create_reconciler_from_config
from .lifecycle import LifecycleGuard

__all__ = [
    "Configuration",
    "Rule",
    "TickOutcome",
    "CommandExecutor",
    "CommandResult",
    "ExecutorConfig",
    "TopologyDetector",
    "DetectorConfig",
    "create_detector_config",
    "RuleSynchronizer",
    "LiveRules",
    "rules_for",
    "Reconciler",
    "AppliedState",
    "create_reconciler_from_config",
    "LifecycleGuard",
]

__version__ = "1.0.0"
