"""
VPN Hotspot Reconciliation Loop
===============================

Polls the topology detector on a fixed interval and drives the rule
synchronizer so the live firewall always reflects at most one configuration.

State machine:
    Idle   (nothing applied)  --both interfaces present-->  Active
    Active (config C applied) --topology changed-------->   Active (config C')
    Active                    --tether or vpn missing--->   Idle

The old configuration is always flushed before a new one is applied, so
rules of two configurations never coexist.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from loguru import logger

from .detector import TopologyDetector, create_detector_config
from .executor import CommandExecutor, ExecutorConfig
from .models import Configuration, TickOutcome
from .rules import LiveRules, RuleSynchronizer

DEFAULT_INTERVAL = 3.0
MAX_REPAIR_ATTEMPTS = 3


@dataclass
class AppliedState:
    """
    The configuration currently reflected in the live firewall rules.

    lease is the release handle of the applied configuration; pending holds
    the configuration being applied while a transition is in flight.
    repair_attempts counts re-applies of an incomplete lease.
    """
    lease: Optional[LiveRules] = None
    pending: Configuration = Configuration.EMPTY
    changed_at: Optional[datetime] = None
    repair_attempts: int = 0

    @property
    def config(self) -> Configuration:
        return self.lease.config if self.lease else Configuration.EMPTY

    @property
    def is_active(self) -> bool:
        return self.lease is not None


class Reconciler:
    """
    Reconciliation loop.

    Owns the AppliedState; nothing else mutates it. The lifecycle guard only
    reaches it through shutdown().
    """

    def __init__(self, detector: TopologyDetector, synchronizer: RuleSynchronizer,
                 interval: float = DEFAULT_INTERVAL,
                 max_repair_attempts: int = MAX_REPAIR_ATTEMPTS):
        self.detector = detector
        self.synchronizer = synchronizer
        self.interval = interval
        self.max_repair_attempts = max_repair_attempts
        self.state = AppliedState()

        self.is_running = False
        self.tick_count = 0
        self.last_outcome: Optional[TickOutcome] = None
        self._stop_event = threading.Event()
        self._last_waiting: Optional[Tuple[str, str]] = None

    def tick(self) -> TickOutcome:
        """Run one detect -> compare -> converge step."""
        current = self.detector.detect()
        self.tick_count += 1

        if current.is_complete:
            if current != self.state.config:
                outcome = TickOutcome.REPLACED if self.state.is_active else TickOutcome.APPLIED
                self._transition(current)
            elif not self.state.lease.complete:
                outcome = self._repair(current)
            else:
                outcome = TickOutcome.CONVERGED
            self._last_waiting = None
        elif self.state.is_active:
            self._release_applied()
            self.state.changed_at = datetime.now()
            self._log_waiting(current)
            outcome = TickOutcome.FLUSHED
        else:
            self._log_waiting(current)
            outcome = TickOutcome.WAITING

        self.last_outcome = outcome
        return outcome

    def _transition(self, target: Configuration):
        # Flush strictly before apply
        self.state.pending = target
        self._release_applied()
        self.state.lease = self.synchronizer.acquire(target)
        self.state.pending = Configuration.EMPTY
        self.state.changed_at = datetime.now()

    def _repair(self, current: Configuration) -> TickOutcome:
        """Re-apply an incomplete lease, at most max_repair_attempts times."""
        if self.state.repair_attempts >= self.max_repair_attempts:
            return TickOutcome.CONVERGED

        self.state.repair_attempts += 1
        attempt = self.state.repair_attempts
        message = f"Re-applying incomplete rules (attempt {attempt}): {current.describe()}"
        if attempt == 1:
            logger.info(message)
        else:
            logger.debug(message)

        # The failures were already reported at WARNING by the first apply
        if not self.state.lease.reapply(quiet=True) and attempt >= self.max_repair_attempts:
            logger.warning(f"Rules still incomplete after {attempt} repair attempts; "
                           f"waiting for a topology change")
        return TickOutcome.REPAIRED

    def _release_applied(self):
        if self.state.lease is not None:
            self.state.lease.release()
        self.state.lease = None
        self.state.repair_attempts = 0

    def _log_waiting(self, current: Configuration):
        observed = (current.vpn, current.tether)
        message = (f"Waiting for both VPN and hotspot interfaces to be present "
                   f"(VPN={current.vpn} TETHER={current.tether})")
        if observed != self._last_waiting:
            logger.info(message)
        else:
            logger.debug(message)
        self._last_waiting = observed

    def run(self):
        """Reconcile until stop() is called."""
        self.is_running = True
        logger.info(f"Reconciliation loop started (interval {self.interval}s)")

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Reconciliation error: {e}")

            self._stop_event.wait(self.interval)

        self.is_running = False
        logger.info("Reconciliation loop stopped")

    def stop(self):
        """Ask run() to return after the current tick."""
        self._stop_event.set()

    def shutdown(self):
        """
        Stop the loop and flush whatever is applied.

        Safe to call more than once and from a signal handler interrupting a
        tick: both the applied and any in-flight configuration are flushed,
        and removing rules that are already gone is harmless.
        """
        self.stop()
        pending = self.state.pending

        self._release_applied()
        if not pending.is_empty:
            self.synchronizer.flush(pending)

        self.state = AppliedState()

    def get_status(self) -> Dict:
        """Get reconciliation status"""
        applied = self.state.config
        return {
            "is_running": self.is_running,
            "state": "active" if self.state.is_active else "idle",
            **applied.to_dict(),
            "complete": self.state.lease.complete if self.state.lease else None,
            "repair_attempts": self.state.repair_attempts,
            "tick_count": self.tick_count,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "changed_at": self.state.changed_at.isoformat() if self.state.changed_at else None,
            "interval": self.interval
        }


# Convenience function to create the reconciler with config from YAML
def create_reconciler_from_config(config_dict: Dict) -> Reconciler:
    """Create reconciler from configuration dictionary"""
    executor_config = config_dict.get("executor", {}) or {}
    reconcile_config = config_dict.get("reconcile", {}) or {}

    executor = CommandExecutor(ExecutorConfig(
        timeout=float(executor_config.get("timeout", 10.0)),
        dry_run=bool(executor_config.get("dry_run", False))
    ))
    detector = TopologyDetector(executor, create_detector_config(config_dict))
    synchronizer = RuleSynchronizer(executor, translation_present=detector.translation_present)

    return Reconciler(
        detector,
        synchronizer,
        interval=float(reconcile_config.get("interval", DEFAULT_INTERVAL)),
        max_repair_attempts=int(reconcile_config.get("max_repair_attempts", MAX_REPAIR_ATTEMPTS))
    )
