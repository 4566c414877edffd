"""CLI: moon-context watch, distill, recall, status, stop, config validate."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from ..config import load_config, resolve_paths, validate_config
from ..storage.helpers import epoch_to_str
from ..types import ConfigError, LockHeldError, MoonError, RecallError


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _get_watcher(args):
    from ..watcher import Watcher

    try:
        return Watcher(config_path=args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def _print_outcome(outcome) -> None:
    usage = outcome.usage
    if usage is not None:
        print(
            f"Usage:      {usage.ratio:.1%} ({usage.absolute_tokens:,}/{usage.max_tokens:,} tokens, "
            f"source={usage.source}, session={usage.session_id})"
        )
    print(f"Fired:      {', '.join(outcome.fired) or 'none'}")
    if outcome.archive is not None:
        state = "deduped" if outcome.archive.deduped else "created"
        print(f"Archive:    {outcome.archive.record.archive_path} ({state})")
    if outcome.pruned:
        print("Pruned:     yes")
    for record in outcome.distilled:
        print(f"Distilled:  {record.archive_ref} -> {record.summary_path} ({record.provider})")
    if outcome.continuity is not None:
        cmap = outcome.continuity
        if cmap.rollover_ok:
            print(f"Rollover:   {cmap.old_session_id} -> {cmap.new_session_id}")
        else:
            print(f"Rollover:   not applied ({cmap.error}); map {cmap.map_path}")
    if outcome.retention is not None and outcome.retention.deleted:
        print(f"Retention:  deleted {len(outcome.retention.deleted)} archive(s)")
    for note in outcome.notes:
        print(f"Note:       {note}")
    for failure in outcome.failures:
        print(f"FAILED:     [{failure.stage}] {failure.kind.value}: {failure.message}")


def cmd_watch(args):
    """Run one cycle, or loop as a daemon."""
    watcher = _get_watcher(args)
    try:
        if args.daemon:
            watcher.run_daemon()
            return
        outcome = watcher.run_once()
    except LockHeldError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(_outcome_dict(outcome), indent=2, default=str))
    else:
        _print_outcome(outcome)
    if not outcome.ok:
        sys.exit(1)


def _outcome_dict(outcome) -> dict:
    return {
        "started_at": outcome.started_at,
        "ok": outcome.ok,
        "usage": outcome.usage.to_dict() if outcome.usage else None,
        "fired": outcome.fired,
        "archive": outcome.archive.record.to_dict() if outcome.archive else None,
        "deduped": outcome.archive.deduped if outcome.archive else None,
        "pruned": outcome.pruned,
        "distilled": [
            {"archive_ref": d.archive_ref, "summary_path": d.summary_path, "provider": d.provider}
            for d in outcome.distilled
        ],
        "continuity": outcome.continuity.to_dict() if outcome.continuity else None,
        "failures": [
            {"stage": f.stage, "kind": f.kind.value, "message": f.message} for f in outcome.failures
        ],
        "notes": outcome.notes,
    }


def cmd_distill(args):
    """Distill one archive into today's daily note."""
    watcher = _get_watcher(args)
    try:
        record = watcher.manual_distill(args.archive, session_id=args.session_id)
    except LockHeldError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except MoonError as e:
        print(f"Distill failed: {e}", file=sys.stderr)
        sys.exit(1)

    if record is None:
        print(f"Already distilled: {args.archive}")
        return
    print(f"Distilled {record.archive_ref}")
    print(f"  Provider: {record.provider}")
    print(f"  Note:     {record.summary_path}")
    print(f"  Anchors:  {len(record.message_anchors)}")


def cmd_recall(args):
    """Search archived history."""
    watcher = _get_watcher(args)
    try:
        result = watcher.recall(args.query, collection=args.collection)
    except RecallError as e:
        print(f"Recall failed: {e}", file=sys.stderr)
        sys.exit(1)
    except MoonError as e:
        print(f"Recall failed reading archive state: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return
    if result.empty:
        print(f"No matches for '{args.query}' in collection '{result.collection}'.")
        return
    print(f"{len(result.matches)} match(es) for '{args.query}' in '{result.collection}':")
    for match in result.matches:
        print(f"  [{match.score:.3f}] {match.archive_ref}")
        if match.snippet:
            print(f"      {match.snippet[:200]}")


def cmd_status(args):
    """Show watcher state, lock holder and archive counts."""
    watcher = _get_watcher(args)
    status = watcher.status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    state = status["state"]
    lock = status["lock"]
    archives = status["archives"]
    print(f"MOON home:  {status['moon_home']}")
    print(f"Phase:      {state['phase']}")
    if state.get("in_flight"):
        print(f"In flight:  {state['in_flight']}")
    if state.get("cooldown_until"):
        print(f"Cooldown:   until {epoch_to_str(state['cooldown_until'])}")
    if state.get("blocked_until"):
        print(f"Blocked:    until {epoch_to_str(state['blocked_until'])}")
    usage = state.get("last_usage")
    if usage:
        print(f"Last usage: {usage['ratio']:.1%} via {usage['source']} (session {usage['session_id']})")
    if lock and lock.get("held"):
        print(f"Watcher:    running (pid {lock.get('pid')}, mode {lock.get('mode')})")
    else:
        print("Watcher:    not running")
    print(
        f"Archives:   {archives['live']} live, {archives['indexed']} indexed, "
        f"{archives['distilled']} distilled, {archives['deleted']} deleted"
    )
    print(f"Pending:    {len(state.get('pending_distill_queue') or [])} awaiting distill")


def cmd_stop(args):
    """Ask a running daemon to finish its cycle and exit."""
    from ..watcher import stop_daemon

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    pid = stop_daemon(resolve_paths(config).lock_file)
    if pid is None:
        print("No running watcher.")
        return
    print(f"Sent stop signal to watcher pid {pid}.")


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config, validate=False)
    except (ConfigError, FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    paths = resolve_paths(config)
    th = config.thresholds
    print("Config is valid.")
    print(f"  MOON home:   {paths.moon_home}")
    print(f"  Sessions:    {paths.sessions_dir}")
    print(f"  Thresholds:  archive {th.archive_ratio} / prune {th.prune_ratio} / distill {th.distill_ratio}")
    print(f"  Re-arm:      {th.rearm_policy} (cooldown {config.watcher.cooldown_secs}s)")
    print(f"  Distill:     {config.distill.mode} via {config.distill.provider} ({config.distill.model})")
    print(f"  Index:       {config.index.bin} collection '{config.index.collection}'")


def main():
    parser = argparse.ArgumentParser(
        prog="moon-context",
        description="Context lifecycle watcher for long-lived LLM sessions",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # watch
    watch_parser = subparsers.add_parser("watch", help="Run the watcher")
    mode = watch_parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle (default)")
    mode.add_argument("--daemon", action="store_true", help="Loop until stopped")
    watch_parser.add_argument("--json", action="store_true", help="Print the cycle outcome as JSON")

    # distill
    distill_parser = subparsers.add_parser("distill", help="Distill one archive on demand")
    distill_parser.add_argument("--archive", "-a", required=True, help="Archive or session file path")
    distill_parser.add_argument("--session-id", help="Session id for an archive not yet in the ledger")

    # recall
    recall_parser = subparsers.add_parser("recall", help="Search archived history")
    recall_parser.add_argument("query", help="Search query or session key")
    recall_parser.add_argument("--collection", help="Index collection (default from config)")
    recall_parser.add_argument("--json", action="store_true", help="Print JSON")

    # status
    status_parser = subparsers.add_parser("status", help="Show watcher state")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    # stop
    subparsers.add_parser("stop", help="Stop a running daemon")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _setup_logging(args.verbose)

    if args.command == "watch":
        cmd_watch(args)
    elif args.command == "distill":
        cmd_distill(args)
    elif args.command == "recall":
        cmd_recall(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "stop":
        cmd_stop(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: moon-context config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
