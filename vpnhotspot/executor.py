"""
VPN Hotspot Command Executor
============================

Runs the privileged networking commands (ip, iptables, ip6tables, sysctl,
getprop) used by detection and rule synchronization.

Policy:
- A failing command never raises. Non-zero exit status, a missing binary,
  a timeout or any OS error is reported as a failed CommandResult.
- Failures are logged: DEBUG for expected failures (quiet=True), WARNING
  otherwise.
- Output is decoded leniently: bytes that are not valid UTF-8 become
  replacement characters.
- Every command is bounded by a timeout so a hung binary cannot stall the
  reconciliation loop forever.
- In dry-run mode mutating commands are only logged; read-only queries
  still execute.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

# Exit codes used for failures that never reached the command itself
EXIT_TIMEOUT = 124
EXIT_OS_ERROR = 126
EXIT_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Outcome of a single external command."""
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ExecutorConfig:
    """Executor configuration"""
    timeout: float = 10.0
    dry_run: bool = False


class CommandExecutor:
    """
    Best-effort runner for privileged commands.

    Every failure is captured in the returned CommandResult; callers decide
    whether to look at it.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self.history: List[CommandResult] = []
        self.max_history = 200

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def run(self, argv: List[str], quiet: bool = False) -> CommandResult:
        """
        Execute a command that may change OS network or firewall state.

        Args:
            argv: Command name followed by its arguments
            quiet: Log failures at DEBUG instead of WARNING

        Returns:
            CommandResult, never raises.
        """
        if self.config.dry_run:
            logger.info(f"[dry-run] {' '.join(argv)}")
            result = CommandResult(command=list(argv), returncode=0, dry_run=True)
            self._record(result)
            return result

        result = self._execute(argv)
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            message = f"Command failed: {' '.join(argv)} ({detail})"
            if quiet:
                logger.debug(message)
            else:
                logger.warning(message)
        self._record(result)
        return result

    def check(self, argv: List[str]) -> bool:
        """
        Run a predicate command (e.g. iptables -C) and report its exit status.

        A non-zero status is an expected answer here, so it is never logged
        above DEBUG. In dry-run mode the predicate is executed for real.
        """
        result = self._execute(argv)
        if not result.ok:
            logger.debug(f"Check negative: {' '.join(argv)}")
        return result.ok

    def query(self, argv: List[str]) -> CommandResult:
        """Run a read-only command, even in dry-run mode."""
        result = self._execute(argv)
        if not result.ok:
            logger.debug(f"Query failed: {' '.join(argv)} (exit status {result.returncode})")
        return result

    def read_text(self, path: str) -> Optional[str]:
        """Read a text file, None if it cannot be read."""
        try:
            return Path(path).read_text()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None

    def _execute(self, argv: List[str]) -> CommandResult:
        try:
            completed = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.config.timeout
            )
            return CommandResult(
                command=list(argv),
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or ""
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {self.config.timeout}s: {' '.join(argv)}")
            return CommandResult(command=list(argv), returncode=EXIT_TIMEOUT, stderr="timeout")
        except FileNotFoundError:
            return CommandResult(command=list(argv), returncode=EXIT_NOT_FOUND,
                                 stderr=f"{argv[0]}: command not found")
        except (OSError, ValueError) as e:
            return CommandResult(command=list(argv), returncode=EXIT_OS_ERROR, stderr=str(e))

    def _record(self, result: CommandResult):
        self.history.append(result)
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history:]
