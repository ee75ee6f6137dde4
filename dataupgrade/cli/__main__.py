"""
dataupgrade CLI - run and inspect upgrade plans.

Usage:
    dataupgrade --plan myapp.upgrades:PLANS run [--once] [--max-passes N] [--json]
    dataupgrade --plan myapp.upgrades:PLANS status [--json]

--plan points at a list of EntityUpgradeConfig, or a callable returning one.
"""

import argparse
import importlib
import json
import logging
import sys
from typing import List

from dataupgrade.config import EntityUpgradeConfig, get_settings
from dataupgrade.logging_config import setup_upgrade_logging
from dataupgrade.orchestrator import DataUpgrader
from dataupgrade.protocols import ConfigurationError
from dataupgrade.types import RunSummary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_INCOMPLETE = 2


def load_plan(plan_path: str) -> List[EntityUpgradeConfig]:
    """Import `module:attribute` and return the configs it names.

    Raises:
        ConfigurationError: If the path cannot be imported or does not
            resolve to a list of configs.
    """
    module_name, sep, attr = plan_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"--plan must look like module:attribute, got {plan_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import plan module {module_name!r}: {e}") from e
    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ConfigurationError(f"{module_name!r} has no attribute {attr!r}") from None

    configs = target() if callable(target) else target
    if not isinstance(configs, (list, tuple)):
        raise ConfigurationError(f"{plan_path} must be a list of EntityUpgradeConfig")
    return list(configs)


def format_summary(summary: RunSummary) -> str:
    lines = []
    for sweep in summary.sweeps:
        lines.append(
            f"  {sweep.entity_type}:{sweep.upgrade_name:<30} {sweep.state.value:<10} "
            f"rows={sweep.rows_touched} batches={sweep.batches} errors={len(sweep.errors)}"
        )
    for cleanup in summary.cleanups:
        state = "done" if cleanup.completed else (cleanup.skipped_reason or "incomplete")
        lines.append(
            f"  {cleanup.entity_type}:cleanup{'':<23} {state} rows={cleanup.rows_touched}"
        )
    for error in summary.errors:
        lines.append(f"  ✗ {error.kind} {error.entity_type}/{error.row_id}: {error.message}")
    for stall in summary.stalls:
        lines.append(f"  ⚠ {stall}")
    header = "✓ All upgrades complete" if summary.complete else "Upgrades incomplete"
    return "\n".join([f"{header} ({summary.rows_touched} rows touched)", *lines])


def format_status(report: dict) -> str:
    lines = [f"Converged: {report['converged']}"]
    for entity_type, entity in report["entities"].items():
        lines.append(f"{entity_type} (cleanup: {entity['cleanup']})")
        for pair in entity["upgrades"]:
            line = f"  {pair['upgrade']:<30} {pair['state']}"
            if "error" in pair:
                line += f" ({pair['error']})"
            lines.append(line)
    return "\n".join(lines)


def cmd_run(args, upgrader: DataUpgrader) -> int:
    """Run one pass, or passes until convergence."""
    if args.once:
        summary = upgrader.run_once()
    else:
        summary = upgrader.start(max_passes=args.max_passes)

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        print(format_summary(summary))
    return EXIT_OK if summary.success and summary.complete else EXIT_INCOMPLETE


def cmd_status(args, upgrader: DataUpgrader) -> int:
    """Show per-pair convergence as read from the stores."""
    report = upgrader.convergence()
    if args.json:
        print(json.dumps(report, indent=2, default=str))
    else:
        print(format_status(report))
    return EXIT_OK


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="dataupgrade",
        description="Zero-downtime row upgrades for live tables",
    )
    parser.add_argument("--plan", "-p", required=True, help="module:attribute of the upgrade plan")
    parser.add_argument("--log-level", default=None, help="Log level (default from settings)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_run = subparsers.add_parser("run", help="Run upgrades")
    p_run.add_argument("--once", action="store_true", help="Run a single pass")
    p_run.add_argument("--max-passes", type=int, default=None, help="Pass limit")
    p_run.add_argument("--json", "-j", action="store_true")

    p_status = subparsers.add_parser("status", help="Show upgrade state")
    p_status.add_argument("--json", "-j", action="store_true")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_upgrade_logging(args.log_level or settings.log_level, settings=settings)

    try:
        upgrader = DataUpgrader(load_plan(args.plan), settings=settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.command == "run":
        return cmd_run(args, upgrader)
    return cmd_status(args, upgrader)


if __name__ == "__main__":
    sys.exit(main())
