"""
VPN Hotspot Lifecycle Guard
===========================

Flushes the applied rules when the service stops, whatever the cause:
SIGINT, SIGTERM, SIGHUP or a normal interpreter exit.
"""

import atexit
import signal
import sys
from typing import Dict, Optional

from loguru import logger

from .reconciler import Reconciler

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class LifecycleGuard:
    """Runs the reconciler's flush path exactly once on shutdown."""

    def __init__(self, reconciler: Reconciler):
        self.reconciler = reconciler
        self.cleaned_up = False
        self.installed = False
        self._previous_handlers: Dict[int, object] = {}

    def install(self):
        """Register signal handlers and the exit hook."""
        if self.installed:
            return

        for signum in TERMINATION_SIGNALS:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        atexit.register(self.cleanup)

        self.installed = True
        logger.debug("Lifecycle guard installed")

    def uninstall(self):
        """Restore the previous signal handlers and drop the exit hook."""
        if not self.installed:
            return

        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        atexit.unregister(self.cleanup)
        self.installed = False

    def cleanup(self, reason: Optional[str] = None):
        """Flush applied rules; later calls do nothing."""
        if self.cleaned_up:
            return
        self.cleaned_up = True

        suffix = f" ({reason})" if reason else ""
        logger.info(f"Cleaning up and flushing rules{suffix}")
        try:
            self.reconciler.shutdown()
        except Exception as e:
            logger.error(f"Cleanup failed: {e}")

    def _handle_signal(self, signum, frame):
        if self.cleaned_up:
            # A second signal must not interrupt the flush already running
            logger.debug(f"Ignoring {signal.Signals(signum).name} during cleanup")
            return
        self.cleanup(reason=signal.Signals(signum).name)
        sys.exit(0)
