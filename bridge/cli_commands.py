"""
Content Conveyor — Operator CLI
Implements all `conveyor <command>` commands.
"""

from __future__ import annotations
import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Optional

from conveyor import progress, runner
from conveyor.budget import guard
from conveyor.errors import ConveyorError
from conveyor.gate import threshold as gate_threshold
from conveyor.store import items as item_store
from conveyor.store import settings as settings_store
from orchestrator import as_built
from orchestrator.cost_logger import get_item_summary


def get_status_text(user_id: str, detail: bool = False) -> str:
    """Return one user's conveyor status."""
    settings = settings_store.get_settings(user_id)
    usage = guard.usage(user_id)
    threshold = gate_threshold.get_effective_threshold(user_id, settings.min_score_threshold)
    lines = [
        f"Conveyor Status ({user_id}) at {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}",
        "=" * 50,
        f"State:      {'ENABLED' if settings.enabled else 'DISABLED'}",
        f"Processing: {item_store.count_processing(user_id)} item(s)",
        f"Today:      {usage['items_today']}/{settings.daily_limit} items",
        f"Month:      ${usage['spend_this_month']:.4f} / ${settings.monthly_budget_limit:.2f}",
        f"Gate:       threshold {threshold:.1f} (base {settings.min_score_threshold})",
    ]
    if detail:
        lines.append("")
        lines.append("Recent items:")
        recent = item_store.list_items(user_id, limit=5)
        for item in recent:
            p = progress.build_progress(item)
            lines.append(
                f"  {item.id[:8]}  {item.status.value:<10} {p['stage_name']:<10} "
                f"{p['progress']:>3}%  ${item.total_cost_usd:.4f}"
            )
        if not recent:
            lines.append("  None")
    return "\n".join(lines)


def cmd_status(args) -> int:
    print(get_status_text(args.user, detail=args.detail))
    return 0


def cmd_trigger(args) -> int:
    result = runner.trigger(args.user)
    print(f"Admitted {result['admitted']} item(s)" + (f" ({result['reason']})" if result["reason"] else ""))
    for item_id in result["item_ids"]:
        print(f"  {item_id}")
    if args.no_run or not result["admitted"]:
        return 0
    for outcome in runner.resume(args.user):
        print(f"  {outcome.item_id[:8]} -> {outcome.status.value}" + (f": {outcome.error}" if outcome.error else ""))
    return 0


def cmd_resume(args) -> int:
    outcomes = runner.resume(args.user)
    if not outcomes:
        print("Nothing to resume.")
    for outcome in outcomes:
        print(f"{outcome.item_id[:8]} -> {outcome.status.value}")
    return 0


def cmd_run_all(args) -> int:
    summary = runner.run_all()
    print(json.dumps(summary, indent=2))
    return 0


def cmd_retry(args) -> int:
    item = runner.retry(args.user, args.item_id)
    print(f"Retry #{item.retry_count} queued from stage {item.current_stage}")
    if not args.no_run:
        from conveyor.engine import PipelineEngine
        outcome = PipelineEngine().run(item.id)
        print(f"{outcome.item_id[:8]} -> {outcome.status.value}" + (f": {outcome.error}" if outcome.error else ""))
    return 0


def cmd_cancel(args) -> int:
    item = runner.cancel(args.user, args.item_id)
    print(f"Cancelled {item.id} at stage {item.current_stage}")
    return 0


def cmd_items(args) -> int:
    items = item_store.list_items(args.user, limit=args.limit)
    if not items:
        print("No items.")
        return 0
    print(f"{'Item':<10} {'Status':<10} {'Stage':>5} {'Retries':>7} {'Cost':>9}  Error")
    print("-" * 70)
    for item in items:
        print(
            f"{item.id[:8]:<10} {item.status.value:<10} {item.current_stage:>5} "
            f"{item.retry_count:>7} ${item.total_cost_usd:>7.4f}  {item.error_message or ''}"
        )
    return 0


def cmd_costs(args) -> int:
    if args.item:
        summary = get_item_summary(args.item)
        print(f"\nCost Report — item {args.item}")
        print(f"{'Stage':<12} {'Model':<22} {'Cost':>10} {'Calls':>6} {'Cached':>7}")
        print("-" * 62)
        for r in summary["by_stage"]:
            print(f"{r['stage']:<12} {r['model']:<22} ${r['cost']:>8.4f} {r['calls']:>6} {r['cached_calls']:>7}")
        print("-" * 62)
        print(f"{'TOTAL':<35} ${summary['total_cost']:>8.4f}")
        return 0

    settings = settings_store.get_settings(args.user)
    usage = guard.usage(args.user)
    cap = settings.monthly_budget_limit
    pct = usage["spend_this_month"] / cap * 100 if cap > 0 else 0.0
    print(f"\nCost Report — {args.user}")
    print(f"Today ({usage['day']}):  ${usage['spend_today']:.4f}, {usage['items_today']} item(s)")
    print(f"Month ({usage['month']}):   ${usage['spend_this_month']:.4f}, {usage['items_this_month']} item(s)")
    print(f"Budget cap: ${cap:.2f} | Used: {pct:.1f}%")
    return 0


def cmd_logs(args) -> int:
    path = as_built.AS_BUILT_PATH
    if not path.exists():
        print("No logs yet.")
        return 0
    lines = [l for l in path.read_text(encoding="utf-8").splitlines() if l.strip()]
    if args.errors:
        lines = [l for l in lines if "[ERROR" in l or "[WARNING" in l]
    for line in lines[-args.tail:]:
        print(line)
    return 0


def cmd_serve(args) -> int:
    import uvicorn
    uvicorn.run("conveyor.api.app:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Content Conveyor — operator CLI",
    )
    subparsers = parser.add_subparsers(dest="command")

    p = subparsers.add_parser("status", help="Conveyor status for a user")
    p.add_argument("user")
    p.add_argument("--detail", action="store_true")

    p = subparsers.add_parser("trigger", help="Run one admission cycle for a user")
    p.add_argument("user")
    p.add_argument("--no-run", action="store_true", help="Admit only; do not process")

    p = subparsers.add_parser("resume", help="Process a user's in-flight items")
    p.add_argument("user")

    subparsers.add_parser("run-all", help="Stall sweep, then one cycle per enabled user")

    p = subparsers.add_parser("retry", help="Retry a failed item")
    p.add_argument("user")
    p.add_argument("item_id")
    p.add_argument("--no-run", action="store_true")

    p = subparsers.add_parser("cancel", help="Cancel a processing item")
    p.add_argument("user")
    p.add_argument("item_id")

    p = subparsers.add_parser("items", help="List a user's items")
    p.add_argument("user")
    p.add_argument("--limit", type=int, default=20, metavar="N")

    p = subparsers.add_parser("costs", help="Cost report")
    p.add_argument("user")
    p.add_argument("--item", type=str, help="Per-stage breakdown for one item")

    p = subparsers.add_parser("logs", help="View the as-built log")
    p.add_argument("--tail", type=int, default=20, metavar="N")
    p.add_argument("--errors", action="store_true")

    p = subparsers.add_parser("serve", help="Serve the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handlers = {
        "status": cmd_status,
        "trigger": cmd_trigger,
        "resume": cmd_resume,
        "run-all": cmd_run_all,
        "retry": cmd_retry,
        "cancel": cmd_cancel,
        "items": cmd_items,
        "costs": cmd_costs,
        "logs": cmd_logs,
        "serve": cmd_serve,
    }

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return handlers[args.command](args)
    except ConveyorError as e:
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
