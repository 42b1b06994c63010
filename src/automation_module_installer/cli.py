from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import uvicorn

from .config import DEFAULT_REPOSITORY, InstallerConfig, build_config
from .errors import InstallerError
from .executor import PhaseExecutor
from .history import InstallHistory
from .manifest import Manifest, write_manifest
from .models import InstallationPhase, InstallationStatus
from .plan_snapshot import write_plan_snapshot
from .planner import plan_phases, planned_modules
from .provisioning import ProvisioningClient
from .registry import RegistryClient
from .resolver import DependencyResolver, root_constraint
from .session import open_session
from .web import create_app

LOG = logging.getLogger("automation_module_installer")

EXIT_OK = 0
EXIT_MODULE_FAILED = 1
EXIT_ABORTED = 2


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    argv = list(argv) if argv is not None else sys.argv[1:]
    if argv and argv[0] == "history":
        return _parse_history_args(argv[1:])
    if argv and argv[0] == "serve":
        return _parse_serve_args(argv[1:])
    if argv and argv[0] == "install":
        argv = argv[1:]
    return _parse_install_args(argv)


def _parse_install_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Install a PowerShell module and its dependencies into an Azure Automation account."
    )
    parser.add_argument("--module", "-m", required=True, help="Name of the module to install.")
    parser.add_argument("--version", dest="module_version", help="Exact module version (default: latest).")
    parser.add_argument("--account", dest="automation_account", help="Automation account name.")
    parser.add_argument("--resource-group", help="Resource group of the automation account.")
    parser.add_argument("--subscription", dest="subscription_id", help="Subscription id (defaults to the Azure CLI's).")
    parser.add_argument("--repository", help=f"Registry name to resolve against (default: {DEFAULT_REPOSITORY}).")
    parser.add_argument("--config", type=Path, help="Optional TOML/JSON/YAML config file.")
    parser.add_argument("--resolve-only", action="store_true", help="Print the installation plan without installing.")
    parser.add_argument("--strict", action="store_true", default=None, help="Abort when any dependency cannot be resolved.")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum dependency chain length (default 32).")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between status polls (default 5).")
    parser.add_argument("--history-db", type=Path, default=Path("history.db"), help="Path to history database.")
    parser.add_argument("--plan-output", type=Path, help="Write the phase plan as JSON to this path.")
    parser.add_argument("--report", type=Path, help="Write final module statuses as JSON to this path.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    ns = parser.parse_args(argv)
    ns.command = "install"
    return ns


def _parse_history_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect installation history.")
    parser.add_argument("--history-db", "--db", dest="history_db", type=Path, default=Path("history.db"), help="Path to history database.")
    parser.add_argument("--account", help="Only show runs and results for this automation account.")
    parser.add_argument("--runs", type=int, default=10, help="Number of recent runs to show.")
    parser.add_argument("--recent", type=int, default=0, help="Number of recent module results to show.")
    parser.add_argument("--status", help="Filter module results by status (e.g. Succeeded, Failed, TimedOut).")
    parser.add_argument("--top-failures", type=int, default=5, help="Show top N failing modules.")
    parser.add_argument("--module", help="Show status counts and installed versions for a module.")
    parser.add_argument("--run", help="Show phase durations for a run id (also limits --export-csv to it).")
    parser.add_argument("--export-csv", type=Path, help="Export module results to CSV at the given path.")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of text.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="history"))


def _parse_serve_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the history API.")
    parser.add_argument("--history-db", "--db", dest="history_db", type=Path, default=Path("history.db"), help="Path to history database.")
    parser.add_argument("--config", type=Path, help="Optional TOML/JSON/YAML config file.")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="serve"))


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    if args.command == "history":
        return _run_history(args)
    if args.command == "serve":
        return _run_server(args)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(message)s")
    try:
        config = build_config(
            automation_account=args.automation_account,
            resource_group=args.resource_group,
            subscription_id=args.subscription_id,
            repository=args.repository,
            config_file=args.config,
            strict=args.strict,
            max_depth=args.max_depth,
            poll_interval=args.poll_interval,
        )
        config.feed_url(config.repository)
    except (OSError, ValueError) as exc:
        LOG.error("Invalid configuration: %s", exc)
        return EXIT_ABORTED
    return run_install(args, config)


def run_install(args: argparse.Namespace, config: InstallerConfig) -> int:
    run_id = uuid4().hex
    registry = RegistryClient(config)
    resolver = DependencyResolver(registry, policy=config.resolution_policy, max_depth=config.max_depth)

    LOG.info("Resolving %s from %s", args.module, config.repository)
    try:
        entries = resolver.resolve(args.module, config.repository, root_constraint(args.module, args.module_version))
    except InstallerError as exc:
        LOG.error("Resolution failed: %s", exc)
        return EXIT_ABORTED
    phases = plan_phases(entries)
    for failure in resolver.failures:
        LOG.warning("Not installing %s (needed by %s): %s", failure.spec, failure.parent, failure.error)

    if args.plan_output:
        write_plan_snapshot(phases, args.plan_output, run_id=run_id, root=args.module)
        LOG.info("Plan written to %s", args.plan_output)

    if args.resolve_only:
        _print_phases(phases)
        return EXIT_OK

    if not config.automation_account or not config.resource_group:
        LOG.error("--account and --resource-group are required unless --resolve-only is given.")
        return EXIT_ABORTED

    history = InstallHistory(args.history_db)
    history.start_run(
        run_id,
        account=config.automation_account,
        resource_group=config.resource_group,
        root=args.module,
        requested_version=args.module_version,
    )
    manifest = Manifest(
        run_id=run_id,
        account=config.automation_account,
        resource_group=config.resource_group,
        outcome="succeeded",
    )
    try:
        session = open_session(config.subscription_id)
        provisioning = ProvisioningClient(config, session)
        executor = PhaseExecutor(
            provisioning,
            registry.package_uri,
            config.polling,
            history=history,
            run_id=run_id,
            account=config.automation_account,
        )
        executor.execute(phases)
    except InstallerError as exc:
        LOG.error("Installation aborted: %s", exc)
        manifest.outcome = "aborted"
        manifest.error = str(exc)

    _print_phases(phases)
    manifest.modules = planned_modules(phases)
    if manifest.outcome == "succeeded" and any(m.status == InstallationStatus.FAILED for m in manifest.modules):
        manifest.outcome = "failed"
    history.finish_run(run_id, manifest.outcome, error=manifest.error)
    if args.report:
        write_manifest(manifest, args.report)
        LOG.info("Report written to %s", args.report)

    if manifest.outcome == "aborted":
        return EXIT_ABORTED
    if manifest.outcome == "failed":
        return EXIT_MODULE_FAILED
    return EXIT_OK


def _print_phases(phases: List[InstallationPhase]) -> None:
    for phase in phases:
        print(f"\nPhase {phase.index} ({len(phase.members)} module(s)):")
        print(f"  {'Module':40} {'Version':16} {'Repository':14} {'Phase':>5}  Status")
        for module in phase.members:
            print(
                f"  {module.name:40} {module.version:16} {module.repository:14} {module.phase:>5}  {module.status.value}"
            )
            if module.detail and module.status == InstallationStatus.FAILED:
                print(f"    detail: {module.detail}")


def _run_history(args: argparse.Namespace) -> int:
    history = InstallHistory(args.history_db)
    runs = history.runs(limit=args.runs, account=args.account)
    failures = history.failing_modules(limit=args.top_failures, account=args.account) if args.top_failures else []
    results = history.recent_results(limit=args.recent, status=args.status) if args.recent else []
    summary = history.module_summary(args.module, account=args.account) if args.module else None
    timings = history.phase_durations(args.run) if args.run else []

    exported = None
    if args.export_csv:
        exported = history.export_csv(args.export_csv, run_id=args.run)

    if args.json:
        payload = {
            "runs": [asdict(run) for run in runs],
            "outcomes": history.outcome_counts(account=args.account),
            "top_failures": [asdict(stat) for stat in failures],
            "recent": [asdict(result) for result in results],
            "summary": asdict(summary) if summary else None,
            "phases": [asdict(timing) for timing in timings],
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"History DB: {args.history_db}")
    print(f"Recent runs{' for ' + args.account if args.account else ''}:")
    for run in runs:
        requested = f"=={run.requested_version}" if run.requested_version else ""
        print(f"- [{run.started_at}] {run.outcome:9} {run.root_module}{requested} account={run.account or '-'} run={run.run_id}")
        if run.error:
            print(f"    error: {run.error}")

    if results:
        print(f"\nRecent module results{' with status ' + args.status if args.status else ''}:")
        for result in results:
            print(f"- {result.status:10} {result.name} {result.version} phase={result.phase} account={result.account or '-'}")

    if failures:
        print(f"\nTop {len(failures)} failing modules:")
        for stat in failures:
            print(f"- {stat.name}: {stat.failures} failures (last: {stat.last_detail or '-'})")
    if summary:
        print(f"\nModule summary for {summary.name}:")
        for status, count in summary.status_counts.items():
            print(f"- {status}: {count}")
        for account, version in summary.installed_versions.items():
            print(f"- installed in {account or '-'}: {version}")
    if timings:
        print(f"\nPhase durations for run {args.run}:")
        for timing in timings:
            seconds = f"{timing.seconds:.0f}s" if timing.seconds is not None else "-"
            print(f"- phase {timing.phase}: {timing.modules} module(s), {seconds}")
    if exported is not None:
        print(f"\nExported {exported} row(s) to {args.export_csv}")
    return 0


def _run_server(args: argparse.Namespace) -> int:
    config = build_config(config_file=args.config)
    history = InstallHistory(args.history_db)
    app = create_app(history, registry=RegistryClient(config), config=config)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
