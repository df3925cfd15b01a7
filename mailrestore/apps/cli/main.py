from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys
from typing import Sequence

from mailrestore.core.config import get_settings
from mailrestore.core.errors import (
    RestoreCancelled,
    RestoreError,
    ScopeNotFoundError,
    StagingError,
    ValidationError,
)
from mailrestore.domain.scope import parse_scope
from mailrestore.services.orchestrator import RestoreOptions, RestoreOrchestrator, RestoreSummary


logger = logging.getLogger(__name__)

# Alternatives printed after a scope miss before the list is truncated.
MAX_ALTERNATIVES = 50


class ConsoleConfirmer:
    """Answers confirmation gates from the terminal."""

    def confirm(self, prompt: str) -> bool:
        try:
            answer = input(f"{prompt} [y|N] ")
        except EOFError:
            return False
        return answer.strip().lower() in {"y", "yes"}

    def confirm_typed(self, prompt: str, literal: str) -> bool:
        try:
            answer = input(f"{prompt}: ")
        except EOFError:
            return False
        return answer.strip() == literal


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailrestore",
        description="Restore a single domain or mailbox from a native mailcow backup.",
    )
    parser.add_argument("backup_location", help="Backup directory (mailcow-YYYY-MM-DD-HH-MM-SS)")
    parser.add_argument("target", help="Domain (example.com) or mailbox (user@example.com)")
    parser.add_argument("--force", action="store_true", help="Overwrite the entity if it already exists")
    parser.add_argument("--confirm", action="store_true", help="Skip the confirmation prompts")
    parser.add_argument(
        "--forcemailcrypt",
        action="store_true",
        help="Proceed even if mail_crypt keys differ (mail may be unreadable)",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    return parser


def print_summary(summary: RestoreSummary) -> None:
    # Operator-facing summary; every warning is listed so nothing fails silently.
    scope = summary.scope
    print()
    print(f"Restore of {scope.label} {scope} completed")
    if summary.report is not None:
        print(f"- mailboxes: {summary.report.mailboxes}")
        print(f"- aliases: {summary.report.aliases}")
        print(f"- alias domains: {summary.report.alias_domains}")
    print(f"- statements applied: {summary.statements}")
    if summary.snapshot_path is not None:
        print(f"- pre-restore snapshot: {summary.snapshot_path}")
        print(f"  rollback: {summary.rollback_command}")
    if not scope.is_mailbox:
        if summary.dkim_restored:
            print(f"- DKIM key: restored (selector {summary.dkim_selector})")
        else:
            print("- DKIM key: not restored; generate it in the mailcow UI if needed")
        if summary.dkim_backup_path is not None:
            print(f"  previous key saved to {summary.dkim_backup_path}")
    print(f"- mail_crypt: {summary.crypt_outcome}{' (keys restored)' if summary.crypt_restored else ''}")
    if summary.crypt_backup_path is not None:
        print(f"  previous keys saved to {summary.crypt_backup_path}")
    if summary.filetree is not None:
        print(f"- mail files: {'restored' if summary.filetree.directory_present else 'not restored'}")
    if summary.refreshed:
        print(f"- restarted: {', '.join(summary.refreshed)}")
    if summary.warnings:
        print()
        print("Warnings:")
        for warning in summary.warnings:
            print(f"  ! {warning}")
        print(f"Re-run the mail index by hand if needed: doveadm force-resync -u '{scope.doveadm_user}' '*'")


def report_error(exc: RestoreError) -> None:
    print(f"ERROR: {exc}", file=sys.stderr)
    if isinstance(exc, ScopeNotFoundError) and exc.alternatives:
        print("Available in backup:", file=sys.stderr)
        for name in exc.alternatives[:MAX_ALTERNATIVES]:
            print(f"  - {name}", file=sys.stderr)
        if len(exc.alternatives) > MAX_ALTERNATIVES:
            print(f"  ... and {len(exc.alternatives) - MAX_ALTERNATIVES} more", file=sys.stderr)
    if isinstance(exc, StagingError) and exc.log_tail:
        print("Staged instance log (tail):", file=sys.stderr)
        for line in exc.log_tail.splitlines():
            print(f"    {line}", file=sys.stderr)
    if isinstance(exc, ValidationError) and exc.rollback_command:
        print(f"Rollback: {exc.rollback_command}", file=sys.stderr)
    if exc.remediation:
        print(f"-> {exc.remediation}", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> None:
    # Parse flags, run one restore and map the outcome to the process exit code.
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        scope = parse_scope(args.target)
        orchestrator = RestoreOrchestrator(
            Path(args.backup_location).resolve(),
            scope,
            RestoreOptions(force=args.force, confirm=args.confirm, force_mailcrypt=args.forcemailcrypt),
            confirmer=ConsoleConfirmer(),
            reporter=print,
            settings=settings,
        )
        summary = orchestrator.run()
    except RestoreCancelled as exc:
        print(f"{exc}. {exc.remediation or ''}".strip())
        sys.exit(0)
    except RestoreError as exc:
        logger.error("restore_failed error_type=%s error=%s", type(exc).__name__, exc)
        report_error(exc)
        sys.exit(1)
    print_summary(summary)


if __name__ == "__main__":
    main()
