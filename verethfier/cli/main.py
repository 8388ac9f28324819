"""Verethfier CLI — operator tooling for rules, nonces and reconciliation.

Usage:
    verethfier reverify run                 Run a full reconciliation sweep now
    verethfier reverify user <user-id>      Re-check one user's assignments
    verethfier reverify rule <rule-id>      Re-check every holder of one rule
    verethfier rules list <guild-id>        List a guild's verification rules
    verethfier stats                        Show assignment statistics
    verethfier nonce issue <user-id>        Issue a verification nonce
    verethfier config                       Show current configuration
    verethfier version                      Print version

Examples:
    verethfier reverify user 123456789 --guild 987654321
    verethfier rules list 987654321 --include-legacy --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

VERSION = "1.0.0"


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="verethfier",
        description="Verethfier — asset-gated Discord role verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json"],
        help="Output format (default: table)",
    )

    sub = parser.add_subparsers(dest="command")

    # ── reverify ─────────────────────────────────────────────────────────────
    reverify_p = sub.add_parser("reverify", help="Reconcile role assignments against ownership")
    reverify_sub = reverify_p.add_subparsers(dest="target")
    reverify_sub.add_parser("run", help="Full sweep of due assignments")
    user_p = reverify_sub.add_parser("user", help="Re-check one user")
    user_p.add_argument("user_id")
    user_p.add_argument(
        "--guild",
        "-g",
        action="append",
        default=[],
        dest="guild_ids",
        help="Also look for newly earned roles in this guild (repeatable)",
    )
    rule_p = reverify_sub.add_parser("rule", help="Re-check every holder of a rule")
    rule_p.add_argument("rule_id")

    # ── rules ────────────────────────────────────────────────────────────────
    rules_p = sub.add_parser("rules", help="Inspect verification rules")
    rules_sub = rules_p.add_subparsers(dest="action")
    list_p = rules_sub.add_parser("list", help="List a guild's rules")
    list_p.add_argument("guild_id")
    list_p.add_argument("--channel", help="Only rules scoped to this channel")
    list_p.add_argument("--include-legacy", action="store_true", help="Include the legacy role")

    # ── stats ────────────────────────────────────────────────────────────────
    sub.add_parser("stats", help="Show assignment statistics")

    # ── nonce ────────────────────────────────────────────────────────────────
    nonce_p = sub.add_parser("nonce", help="Nonce management")
    nonce_sub = nonce_p.add_subparsers(dest="action")
    issue_p = nonce_sub.add_parser("issue", help="Issue a nonce for a user")
    issue_p.add_argument("user_id")
    issue_p.add_argument("--message-id", help="Verification message the nonce is bound to")
    issue_p.add_argument("--channel-id", help="Channel the verification started in")

    # ── config / version ─────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")
    sub.add_parser("version", help="Print version")

    return parser


# ── Service plumbing ─────────────────────────────────────────────────────────


async def _with_services(action: Callable[[Any], Awaitable[int]]) -> int:
    from verethfier.core.config import get_settings
    from verethfier.verification.factory import build_services

    services = build_services(get_settings())
    try:
        return await action(services)
    finally:
        await services.close()


def _emit(data: dict[str, Any] | list[Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── Reverify command ─────────────────────────────────────────────────────────


def _print_report(report: Any, args: argparse.Namespace) -> None:
    if args.format == "json":
        _emit(report.model_dump(mode="json"))
        return
    if report.already_running:
        print(_c("  A sweep is already in progress; nothing was done.", _YELLOW))
        return
    if not args.quiet:
        print(f"\n{_BOLD}Reconciliation complete{_RESET}  ({report.duration_ms:.0f}ms, {report.batches} batches)")
    print(
        f"  {_c(str(report.verified), _GREEN)} verified"
        f"  ·  {_c(str(report.revoked), _RED)} revoked"
        f"  ·  {_c(str(report.expired), _YELLOW)} expired"
        f"  ·  {report.deferred} deferred"
        f"  ·  {report.synced} synced"
        f"  ·  {report.errors} errors"
    )
    if report.granted:
        print(f"  {_c(str(report.granted), _CYAN)} new roles granted")


async def _run_reverify(args: argparse.Namespace) -> int:
    if args.target not in ("run", "user", "rule"):
        print(_c("Error: choose one of: run, user, rule.", _RED), file=sys.stderr)
        return 1

    async def action(services: Any) -> int:
        reconciler = services.reconciler
        if args.target == "run":
            report = await reconciler.run_scheduled_reverification()
        elif args.target == "user":
            report = await reconciler.reverify_user(args.user_id, args.guild_ids)
        else:
            report = await reconciler.reverify_rule(args.rule_id)
        _print_report(report, args)
        return 1 if report.errors else 0

    return await _with_services(action)


# ── Rules command ────────────────────────────────────────────────────────────


async def _run_rules(args: argparse.Namespace) -> int:
    if args.action != "list":
        print(_c("Error: choose an action: list.", _RED), file=sys.stderr)
        return 1

    async def action(services: Any) -> int:
        rules = await services.rules.list_for_guild(
            args.guild_id, channel_id=args.channel, include_legacy=args.include_legacy
        )
        if args.format == "json":
            _emit([r.model_dump(mode="json") for r in rules])
            return 0
        if not rules:
            print(_c("  No rules configured for this guild.", _DIM))
            return 0
        for i, rule in enumerate(rules, 1):
            role = rule.role_name or rule.role_id
            print(f"  {_DIM}{i:>3}.{_RESET} {_c(role, _BOLD)}  {rule.describe()}")
            print(f"       {_DIM}id: {rule.id}  type: {rule.rule_type.value if rule.rule_type else '-'}{_RESET}")
        return 0

    return await _with_services(action)


# ── Stats command ────────────────────────────────────────────────────────────


async def _run_stats(args: argparse.Namespace) -> int:
    async def action(services: Any) -> int:
        stats = await services.reconciler.stats()
        data = stats.model_dump(mode="json")
        if args.format == "json":
            _emit(data)
            return 0
        print(f"\n{_BOLD}Role assignments{_RESET}\n")
        for name in (
            "total_active",
            "total_expired",
            "total_revoked",
            "pending_platform_sync",
            "expiring_soon",
        ):
            print(f"  {_DIM}{name}:{_RESET}  {data[name]}")
        print()
        return 0

    return await _with_services(action)


# ── Nonce command ────────────────────────────────────────────────────────────


async def _run_nonce(args: argparse.Namespace) -> int:
    if args.action != "issue":
        print(_c("Error: choose an action: issue.", _RED), file=sys.stderr)
        return 1

    async def action(services: Any) -> int:
        nonce = await services.nonces.issue(args.user_id, args.message_id, args.channel_id)
        expires_in = services.settings.nonce_expiry_seconds
        if args.format == "json":
            _emit({"nonce": nonce, "expires_in": expires_in})
        else:
            print(f"  {_c(nonce, _CYAN)}  (expires in {expires_in}s)")
        return 0

    return await _with_services(action)


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings (redacted)."""
    from verethfier.core.config import get_settings

    s = get_settings()
    print(f"\n{_BOLD}Verethfier Configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        # Redact secrets
        if any(kw in field_name for kw in ("password", "secret", "key", "token")):
            val = "****" if val else "(not set)"
        elif field_name.endswith("_url") and "@" in str(val):
            scheme, _, rest = str(val).partition("://")
            val = f"{scheme}://****@{rest.rsplit('@', 1)[-1]}"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "version":
        print(f"verethfier {VERSION}")
        return 0

    if args.command == "config":
        return _run_config()

    from verethfier.core.config import get_settings
    from verethfier.core.logging import setup_logging

    settings = get_settings()
    setup_logging(env=settings.app_env, log_level="DEBUG" if settings.debug else "WARNING")

    if args.command == "reverify":
        return asyncio.run(_run_reverify(args))

    if args.command == "rules":
        return asyncio.run(_run_rules(args))

    if args.command == "stats":
        return asyncio.run(_run_stats(args))

    if args.command == "nonce":
        return asyncio.run(_run_nonce(args))

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
