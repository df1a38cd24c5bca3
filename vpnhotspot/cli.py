"""
VPN Hotspot Command Line
========================

Entry point of the `vpn-hotspot` service.

The service watches the device's network interfaces and keeps packet filter
rules in place so that traffic entering the hotspot (tether) interface is
forwarded and masqueraded through the active VPN interface, with DNS queries
from tethered clients redirected to the current resolver.

  Tethered clients -> [tether iface] DEVICE [vpn iface] -> VPN provider

Every few seconds the topology is re-detected. When the VPN or hotspot
appears, disappears or changes identity, the old rules are flushed and the
new ones applied. On shutdown all rules installed by the service are removed.

Usage:
    sudo vpn-hotspot                     # Run the service
    vpn-hotspot --detect-only            # Print detected topology and exit
    sudo vpn-hotspot --dry-run           # Log rule commands without running them
    sudo vpn-hotspot -c my-config.yaml   # Use a config file instead of the defaults
"""

import os
import shutil
import sys
from importlib import resources
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .reconciler import create_reconciler_from_config
from .lifecycle import LifecycleGuard

# Rich console for pretty output
console = Console()

REQUIRED_TOOLS = ["ip", "iptables", "sysctl"]
OPTIONAL_TOOLS = ["ip6tables", "getprop"]

# Shipped inside the package; used when no --config is given
DEFAULT_CONFIG = "config.yaml"


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Without a path the defaults bundled with the package are loaded.
    Relative paths are resolved against the working directory.
    """
    if config_path is None:
        source = f"<bundled {DEFAULT_CONFIG}>"
        text = resources.files(__package__).joinpath(DEFAULT_CONFIG).read_text()
    else:
        config_file = Path(config_path)
        source = str(config_file)
        if not config_file.exists():
            logger.error(f"Config file not found: {config_file}")
            sys.exit(1)
        text = config_file.read_text()

    try:
        config = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file {source}: {e}")
        sys.exit(1)

    if not isinstance(config, dict):
        logger.error(f"Config file must contain a YAML mapping: {source}")
        sys.exit(1)

    for section in ("general", "logging", "reconcile", "executor", "detection"):
        if not isinstance(config.get(section), dict):
            config[section] = {}

    return config


def setup_logging(config: dict) -> None:
    """Configure logging based on config."""
    log_config = config.get("logging", {})
    log_level = config.get("general", {}).get("log_level", "INFO")
    log_file = Path(log_config.get("file", "data/logs/vpn-hotspot.log"))

    # Ensure log directory exists
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default logger and add custom configuration
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>"
    )
    logger.add(
        str(log_file),
        level=log_level,
        rotation=log_config.get("max_size", "10 MB"),
        retention=log_config.get("backup_count", 5),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}"
    )


def print_banner():
    """Print service banner."""
    console.print(Panel.fit(
        f"[bold cyan]VPN Hotspot[/bold cyan] v{__version__}\n"
        "[dim]Tethered clients -> hotspot -> VPN[/dim]",
        border_style="cyan"
    ))


def check_prerequisites() -> Tuple[bool, List[str]]:
    """
    Check if system meets service requirements.
    Returns (success, list_of_issues).
    """
    issues = []

    # 1. Check root privileges
    if os.geteuid() != 0:
        issues.append("Must run as root")

    # 2. Check for required tools
    for tool in REQUIRED_TOOLS:
        if shutil.which(tool) is None:
            issues.append(f"Missing required tool: {tool}")

    # 3. Optional tools only reduce functionality
    for tool in OPTIONAL_TOOLS:
        if shutil.which(tool) is None:
            logger.warning(f"Optional tool not found: {tool}")

    return len(issues) == 0, issues


def print_topology(status: dict):
    """Print detected topology as a table."""
    table = Table(title="Detected topology")
    table.add_column("Item", style="cyan")
    table.add_column("Value")

    for key in ("tether", "vpn", "dns"):
        value = status.get(key) or "[dim]not found[/dim]"
        table.add_row(key, value)
    translation = "present" if status.get("translation_present") else "absent"
    table.add_row(status.get("translation_interface", "translation"), translation)

    console.print(table)


@click.command()
@click.option("--config", "-c", default=None, help="Path to config file (default: bundled config.yaml)")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between reconciliation ticks")
@click.option("--dry-run", is_flag=True, help="Log rule commands instead of running them")
@click.option("--detect-only", is_flag=True, help="Print the detected topology and exit")
@click.option("--skip-checks", is_flag=True, help="Skip prerequisite checks (dangerous)")
def main(config: Optional[str], debug: bool, interval: float, dry_run: bool, detect_only: bool, skip_checks: bool):
    """
    VPN Hotspot - forward and NAT hotspot traffic through the active VPN.

    Requirements:
      - Root privileges
      - ip, iptables and sysctl on PATH
    """
    # Print banner
    print_banner()

    # Load configuration
    cfg = load_config(config)

    # Override config with CLI options
    if debug:
        cfg["general"]["log_level"] = "DEBUG"
    if interval is not None:
        if interval <= 0:
            console.print("[bold red]ERROR: --interval must be positive[/bold red]")
            sys.exit(1)
        cfg["reconcile"]["interval"] = interval
    if dry_run:
        cfg["executor"]["dry_run"] = True
        console.print("[yellow]DRY RUN - rule commands are logged, not executed[/yellow]")

    # Setup logging
    try:
        setup_logging(cfg)
    except OSError as e:
        console.print(f"[bold red]ERROR: Cannot create log destination: {e}[/bold red]")
        sys.exit(1)

    reconciler = create_reconciler_from_config(cfg)

    if detect_only:
        print_topology(reconciler.detector.get_status())
        return

    if not skip_checks and not cfg["executor"].get("dry_run", False):
        console.print("[dim]Checking prerequisites...[/dim]")
        ready, issues = check_prerequisites()

        if not ready:
            console.print("\n[bold red]PREREQUISITES NOT MET:[/bold red]")
            for issue in issues:
                console.print(f"  [red]x[/red] {issue}")
            console.print("\n[yellow]Options:[/yellow]")
            console.print("  1. Fix the issues above and retry")
            console.print("  2. Run with --dry-run to only log rule commands")
            console.print("  3. Run with --skip-checks to bypass (dangerous, may not work)")
            sys.exit(1)
        else:
            console.print("[green]All prerequisites met[/green]\n")

    logger.info("=== SERVICE STARTED ===")

    # Flush rules on any termination path
    guard = LifecycleGuard(reconciler)
    guard.install()

    try:
        reconciler.run()
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        guard.cleanup(reason="fatal error")
        sys.exit(1)
    finally:
        guard.cleanup()


if __name__ == "__main__":
    main()
