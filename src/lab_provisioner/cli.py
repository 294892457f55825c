"""Command-line interface for Lab Provisioner."""

from __future__ import annotations

import argparse
import json
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AppConfig, load_config
from .orchestrator import EXIT_FAILED, EXIT_INVALID_PLAN, EXIT_OK, PlanValidationError
from .paths import LOGS_DIR
from .utils.logging import get_logger
from .workflow import ProvisioningWorkflow, ProvisionRequest

logger = get_logger(__name__)


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    plan_file: Optional[str]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lab-provisioner",
        description="Provision a multi-machine lab from a declarative plan of idempotent stages.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--plan-file",
        type=str,
        default=None,
        help="Path to the JSON plan file (default: config/lab_plan.json).",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a named plan")
    run_parser.add_argument("--plan", required=True, help="Name of the plan to run")
    run_parser.add_argument(
        "--host", action="append", dest="hosts", default=[], metavar="ID",
        help="Only run the lanes of this host (repeatable)",
    )
    run_parser.add_argument(
        "--dry-run", action="store_true",
        help="Print the stages that would execute, in order, without touching any host",
    )
    run_parser.add_argument(
        "--force", action="store_true",
        help="Skip precondition checks and always execute actions",
    )
    run_parser.add_argument(
        "--concurrency", type=int, default=None,
        help="Maximum number of host lanes running at once",
    )

    validate_parser = subparsers.add_parser("validate", help="Validate a named plan without running it")
    validate_parser.add_argument("--plan", required=True, help="Name of the plan to validate")

    subparsers.add_parser("plans", help="List the named plans in the plan file")

    # logs 子命令 - 查看运行日志
    logs_parser = subparsers.add_parser(
        "logs", help="View provisioning run logs"
    )
    logs_parser.add_argument(
        "--list", "-l", action="store_true", dest="list_logs",
        help="List all available logs"
    )
    logs_parser.add_argument(
        "--latest", action="store_true",
        help="Show the latest run log"
    )
    logs_parser.add_argument(
        "--file", "-f", type=str,
        help="Show a specific log file"
    )
    logs_parser.add_argument(
        "--summary", "-s", action="store_true",
        help="Show summary only (not every transition)"
    )

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    return CLIContext(config=config, plan_file=args.plan_file)


def _log_dir(config: Optional[AppConfig]) -> Path:
    if config is not None and config.orchestrator.log_dir:
        return Path(config.orchestrator.log_dir)
    return LOGS_DIR


def _read_jsonl(log_file: Path) -> List[Dict[str, Any]]:
    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                records.append(json.loads(line))
    return records


def handle_logs_command(args: argparse.Namespace, config: Optional[AppConfig] = None) -> int:
    """Handle the logs subcommand."""
    log_dir = _log_dir(config)

    if not log_dir.exists():
        print("📁 No run logs found. Run a plan first.")
        return EXIT_OK

    log_files = sorted(log_dir.glob("run_*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)

    if not log_files:
        print("📁 No run logs found.")
        return EXIT_OK

    # 列出所有日志
    if args.list_logs:
        print(f"📁 Run logs in: {log_dir}\n")
        print(f"{'#':<4} {'Status':<18} {'Plan':<16} {'Records':<8} {'File'}")
        print("-" * 90)
        for i, log_file in enumerate(log_files, 1):
            try:
                records = _read_jsonl(log_file)
            except (OSError, ValueError):
                print(f"{i:<4} ❓ {'unreadable':<16} {'?':<16} {'?':<8} {log_file.name}")
                continue
            summary = next((r for r in reversed(records) if r.get("event") == "summary"), None)
            status = summary.get("status", "unknown") if summary else "running"
            plan = summary.get("plan_id", "?") if summary else "?"
            status_emoji = {
                "all_succeeded": "✅", "partial_failure": "❌", "aborted": "🛑", "running": "🔄",
            }.get(status, "❓")
            print(f"{i:<4} {status_emoji} {status:<16} {plan:<16} {len(records):<8} {log_file.name}")
        return EXIT_OK

    # 选择要显示的日志文件
    if args.file:
        target_file = Path(args.file)
        if not target_file.exists():
            # 尝试在 log_dir 中查找
            target_file = log_dir / args.file
        if not target_file.exists():
            print(f"❌ Log file not found: {args.file}")
            return EXIT_FAILED
    else:
        # 默认显示最新的
        target_file = log_files[0]

    show_log_file(target_file, summary_only=args.summary)
    return EXIT_OK


def show_log_file(log_file: Path, summary_only: bool = False) -> None:
    """Display a run log file."""
    records = _read_jsonl(log_file)
    summary = next((r for r in reversed(records) if r.get("event") == "summary"), None)
    transitions = [r for r in records if "event" not in r]

    print(f"\n{'='*60}")
    print(f"📄 Run Log: {log_file.name}")
    print(f"{'='*60}")
    if summary:
        print(f"📋 Plan:       {summary.get('plan_id', 'N/A')}")
        print(f"🆔 Run:        {summary.get('run_id', 'N/A')}")
        print(f"📊 Status:     {summary.get('status', 'N/A')} (exit {summary.get('exit_code', '?')})")
        print(f"⏱️  Duration:   {summary.get('duration_seconds', 0)}s")
    else:
        print("🔄 Run did not finish (no summary record)")
    print(f"🔁 Transitions: {len(transitions)}")
    print(f"{'='*60}\n")

    if not summary_only:
        for record in transitions:
            detail = f" - {record['detail']}" if record.get("detail") else ""
            attempt = f" #{record['attempt']}" if record.get("attempt", 0) > 1 else ""
            print(
                f"[{record.get('seq', '?'):>4}] {record.get('timestamp', '')[:19].replace('T', ' ')} "
                f"{record.get('host')}/{record.get('stage_id')}: "
                f"{record.get('from_state')} -> {record.get('to_state')}{attempt}{detail}"
            )
        print()

    if summary:
        sections = (
            ("succeeded", "✅"), ("skipped", "⏭️ "), ("failed", "❌"),
            ("blocked", "🚫"), ("warned", "⚠️ "), ("cancelled", "🛑"),
        )
        for key, icon in sections:
            entries = summary.get(key) or []
            if not entries:
                continue
            print(f"{icon} {key.capitalize()} ({len(entries)})")
            for entry in entries:
                print(f"    {entry.get('host')}/{entry.get('stage_id')} {entry.get('kind')}")
                if key in ("failed", "warned") and entry.get("reason"):
                    print(f"      {entry['reason']}")
                    for line in (entry.get("last_output") or "").splitlines()[-5:]:
                        print(f"      │ {line[:100]}")

    print(f"{'='*60}")
    print(f"📄 Full log: {log_file}")
    print(f"{'='*60}\n")


def handle_plans_command(workflow: ProvisioningWorkflow) -> int:
    rows = workflow.list_plans()
    if not rows:
        print(f"📁 No plans defined in {workflow.plan_file_path}")
        return EXIT_OK
    print(f"📋 Plans in {workflow.plan_file_path}\n")
    for row in rows:
        include = f" (includes: {', '.join(row['include'])})" if row["include"] else ""
        print(f"  {row['name']:<16} {row['stages']:>3} stage(s){include}")
        if row["description"]:
            print(f"  {'':<16} {row['description']}")
    return EXIT_OK


def _run_with_signal(workflow: ProvisioningWorkflow, request: ProvisionRequest) -> int:
    """Run the plan; first Ctrl+C cancels gracefully, second one interrupts."""

    def _handle_sigint(signum, frame):
        print("\n🛑 Cancelling: waiting for in-flight stages to finish (Ctrl+C again to abort)")
        workflow.cancel()
        signal.signal(signal.SIGINT, previous)

    try:
        previous = signal.signal(signal.SIGINT, _handle_sigint)
    except ValueError:
        # 非主线程无法注册信号处理器
        previous = None

    try:
        summary = workflow.run(request)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    return summary.exit_code


def dispatch_command(args: argparse.Namespace) -> int:
    try:
        context = _build_context(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"❌ {exc}")
        return EXIT_INVALID_PLAN

    # 处理 logs 命令
    if args.command == "logs":
        return handle_logs_command(args, context.config)

    workflow = ProvisioningWorkflow(context.config, plan_file=context.plan_file)

    try:
        if args.command == "plans":
            return handle_plans_command(workflow)

        if args.command == "validate":
            workflow.validate(args.plan)
            print(f"✅ Plan '{args.plan}' is valid")
            return EXIT_OK

        if args.command == "run":
            request = ProvisionRequest(
                plan=args.plan,
                hosts=list(args.hosts or []),
                dry_run=args.dry_run,
                force=args.force,
                concurrency=args.concurrency,
            )
            if request.concurrency is not None and request.concurrency < 1:
                print("❌ --concurrency must be at least 1")
                return EXIT_INVALID_PLAN
            if request.dry_run:
                workflow.dry_run(request)
                return EXIT_OK
            return _run_with_signal(workflow, request)
    except PlanValidationError as exc:
        print("❌ Plan validation failed:")
        for problem in exc.problems:
            print(f"   - {problem}")
        return EXIT_INVALID_PLAN

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        get_logger(verbose=True)
    return dispatch_command(args)
