"""Tether MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from tether_mcp.config import TetherSettings
from tether_mcp.signals import SignalStore, build_improvement_prompt, refresh_patterns


def load_store(settings: TetherSettings) -> SignalStore:
    path = settings.signal_store_path.expanduser()
    if path.exists() and not path.is_dir():
        print(f"Signal store unavailable: {path} is not a directory")
        raise SystemExit(1)
    return SignalStore(path)


def _parse_since(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        print(f"Invalid --since timestamp: {value}")
        raise SystemExit(2)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def cmd_signals(args: argparse.Namespace) -> None:
    settings = TetherSettings()
    store = load_store(settings)
    signals = store.list_signals(_parse_since(args.since), unresolved_only=args.unresolved)
    if args.json:
        print(json.dumps([signal.model_dump(mode="json") for signal in signals], indent=2))
        return
    for signal in signals:
        marker = "x" if signal.resolved else " "
        print(
            f"[{marker}] {signal.timestamp.isoformat()} {signal.type.value:<16} "
            f"{signal.severity.value:<6} {signal.fingerprint} {signal.tool_name or '-'}"
        )


def cmd_patterns(args: argparse.Namespace) -> None:
    settings = TetherSettings()
    store = load_store(settings)
    if args.detect:
        patterns = refresh_patterns(store, lookback_days=settings.pattern_lookback_days)
        if args.all:
            patterns = store.get_patterns(include_resolved=True)
    else:
        patterns = store.get_patterns(include_resolved=args.all)
    print(json.dumps([pattern.model_dump(mode="json") for pattern in patterns], indent=2))


def cmd_improvements(args: argparse.Namespace) -> None:
    settings = TetherSettings()
    store = load_store(settings)
    records = store.list_improvements()

    total = len(records)
    completed = [record for record in records if record.completed]
    succeeded = [record for record in completed if record.success]
    summary = {
        "total": total,
        "completed": len(completed),
        "succeeded": len(succeeded),
        "pending": total - len(completed),
        "records": [record.model_dump(mode="json") for record in records],
    }
    print(json.dumps(summary, indent=2))


def cmd_prompt(args: argparse.Namespace) -> None:
    settings = TetherSettings()
    store = load_store(settings)
    patterns = refresh_patterns(store, lookback_days=settings.pattern_lookback_days)
    limit = args.limit if args.limit is not None and args.limit > 0 else settings.improvement_pattern_limit
    patterns = patterns[:limit]
    if not patterns:
        print("No unresolved patterns.")
        return
    print(build_improvement_prompt(patterns))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tether MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_signals = sub.add_parser("signals", help="List recorded friction signals")
    p_signals.add_argument("--since", help="Only signals at or after this ISO-8601 timestamp")
    p_signals.add_argument("--unresolved", action="store_true", help="Hide resolved signals")
    p_signals.add_argument("--json", action="store_true", help="Output JSON")
    p_signals.set_defaults(func=cmd_signals)

    p_patterns = sub.add_parser("patterns", help="Show the pattern table")
    p_patterns.add_argument(
        "--detect",
        action="store_true",
        help="Recompute patterns from recent signals before printing",
    )
    p_patterns.add_argument("--all", action="store_true", help="Include resolved patterns")
    p_patterns.set_defaults(func=cmd_patterns)

    p_improvements = sub.add_parser("improvements", help="Summarize improvement attempts")
    p_improvements.set_defaults(func=cmd_improvements)

    p_prompt = sub.add_parser("prompt", help="Print the improvement task for current patterns")
    p_prompt.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, include only the top N patterns",
    )
    p_prompt.set_defaults(func=cmd_prompt)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
