import argparse
import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

from core.config import DEFAULT_CONFIG_PATH, DEFAULT_DATABASE_PATH, build_snapshot, load_yaml, sanitize_config
from core.evaluator import evaluate_slow, evaluate_stall
from core.models import TorrentView
from core.rules import RuleManager, find_coverage_gaps, find_overlaps
from storage.strikes import StoreError, StrikeStore


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _config() -> Dict[str, Any]:
    return sanitize_config(load_yaml(_env('CONFIG_PATH', DEFAULT_CONFIG_PATH)))


def _db_path() -> str:
    gen = _config().get('general') or {}
    return str(gen.get('database_path') or _env('DATABASE_PATH', DEFAULT_DATABASE_PATH))


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _rules() -> RuleManager:
    return build_snapshot(_config()).queue_cleaner.rules


def cmd_list(args):
    store = StrikeStore(_db_path())
    try:
        _print(store.list_items())
    finally:
        store.close()


def cmd_purge(args):
    store = StrikeStore(_db_path())
    try:
        if getattr(args, 'hash', None):
            key = args.hash.lower()
            if store.purge_item(key):
                print(f"Purged {key}")
            else:
                print("Hash not found")
        else:
            strikes, items = store.delete_all_strikes_and_orphaned_items()
            print(f"Purged {strikes} strike(s) and {items} item(s)")
    finally:
        store.close()


def cmd_status(args):
    store = StrikeStore(_db_path())
    try:
        stats = store.stats()
        runs = store.recent_job_runs(getattr(args, 'limit', None) or 5)
    finally:
        store.close()
    snapshot = build_snapshot(_config())
    next_run = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(time.time() + snapshot.run_interval))
    _print(
        {
            "database": _db_path(),
            **stats,
            "run_interval": snapshot.run_interval,
            "next_run": next_run,
            "recent_runs": runs,
        }
    )


def _verdict(rule, ev) -> Optional[Dict[str, Any]]:
    if rule is None:
        return None
    return {
        "rule": rule.name,
        "max_strikes": rule.max_strikes,
        "verdict": ev.verdict.value,
        "strike_type": ev.strike_type.value if ev.strike_type else None,
        "reset": ev.reset,
        "reason": ev.reason,
    }


def cmd_simulate(args):
    with open(args.torrent_json, 'r') as f:
        torrent = TorrentView.from_dict(json.load(f))
    rules = _rules()
    stall_rule = rules.find_matching_stall_rule(torrent)
    slow_rule = rules.find_matching_slow_rule(torrent)
    previous = args.previous_bytes
    now = time.time()
    below_since = now - args.below_minutes * 60.0 if args.below_minutes is not None else None
    stall = evaluate_stall(torrent, stall_rule, previous) if stall_rule else None
    slow = evaluate_slow(torrent, slow_rule, below_since, now) if slow_rule else None
    _print(
        {
            "hash": torrent.hash,
            "completion": round(torrent.completion_percentage, 2),
            "state": torrent.state,
            "is_private": torrent.is_private,
            "stall": _verdict(stall_rule, stall),
            "slow": _verdict(slow_rule, slow),
        }
    )


def _coverage(kind: str, rules: List[Any]) -> Dict[str, Any]:
    # a policy with no enabled rules is simply off
    if not any(r.enabled for r in rules):
        return {"kind": kind, "rules": len(rules), "gaps": [], "overlaps": []}
    return {
        "kind": kind,
        "rules": len(rules),
        "gaps": [{"privacy": p, "from": lo, "to": hi} for p, lo, hi in find_coverage_gaps(rules)],
        "overlaps": [{"privacy": p, "rules": [a.name, b.name]} for p, a, b in find_overlaps(rules)],
    }


def cmd_coverage(args):
    rules = _rules()
    _print([_coverage('stall', rules.stall_rules), _coverage('slow', rules.slow_rules)])


def main():
    ap = argparse.ArgumentParser(description="Queue Cleaner CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_list = sub.add_parser('list', help='List download items with live strike counts')
    p_list.set_defaults(func=cmd_list)

    p_purge = sub.add_parser('purge', help='Purge all strikes and orphaned items, or one item')
    p_purge.add_argument('--hash', help='Download hash to purge')
    p_purge.set_defaults(func=cmd_purge)

    p_status = sub.add_parser('status', help='Show store counts and recent job runs')
    p_status.add_argument('--limit', type=int, default=5)
    p_status.set_defaults(func=cmd_status)

    p_sim = sub.add_parser('simulate', help='Evaluate a torrent JSON against the configured rules')
    p_sim.add_argument('torrent_json', help='Path to torrent JSON file')
    p_sim.add_argument('--previous-bytes', type=int, default=None, help='Downloaded bytes at the previous check')
    p_sim.add_argument('--below-minutes', type=float, default=None, help='Minutes already spent below min speed')
    p_sim.set_defaults(func=cmd_simulate)

    p_cov = sub.add_parser('coverage', help='Show rule coverage gaps and overlaps')
    p_cov.set_defaults(func=cmd_coverage)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except StoreError as e:
        print(f"Store error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == '__main__':
    main()
