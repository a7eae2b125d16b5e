#!/usr/bin/env python3
"""
hrgate Command Line Interface

Usage:
    hrgate check [--repo <dir>] [--remote <name>]
    hrgate post-tool [--repo <dir>]
    hrgate sync-stats [--repo <dir>] [--remote <name>]
    hrgate keygen [--output <file>]
    hrgate init --subject-key <key> --public-key <hex> [--ttl <seconds>]

``check`` is the PreToolUse hook: exit 0 allows the tool call, exit 2
blocks it with the reason on stderr. Nothing decision-bearing is written
to stdout.
"""

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .bootstrap import DISABLE_FILENAME, generate_bootstrap_files, write_bootstrap_files
from .config import CONFIG_FILENAME, ConfigError, GateConfig, load_gate_config
from .logging_config import audit_log, configure_logging
from .signing import generate_keypair
from .transport import (
    DEFAULT_TIMEOUT_SECONDS,
    STATS_NAMESPACE,
    GitRemoteTransport,
    RefTransport,
    TransportError,
    ref_name_for,
)
from .verifier import Reason, VerificationResult, verify_signal

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_DENY = 2

STATS_LOG_FILENAME = "hrgate-stats.jsonl"
STATS_REMOTE_FILENAME = "tool-stats.jsonl"
STATS_SYNC_THRESHOLD = 10


def read_hook_input(stream=None) -> Dict[str, Any]:
    """Parse the hook JSON from stdin; anything unreadable yields an empty dict."""
    stream = stream or sys.stdin
    try:
        if stream is None or stream.isatty():
            return {}
        data = json.loads(stream.read() or "{}")
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def stats_log_path(repo: Path) -> Optional[Path]:
    git_dir = repo / ".git"
    if not git_dir.is_dir():
        return None
    return git_dir / STATS_LOG_FILENAME


def append_stats_line(repo: Path, entry: Dict[str, Any]) -> int:
    """
    Append one JSON line to the local stats log.

    Returns:
        Number of lines in the log afterwards (0 when there is no log)
    """
    path = stats_log_path(repo)
    if path is None:
        return 0
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, separators=(",", ":")) + "\n")
        with open(path, "r", encoding="utf-8") as f:
            return sum(1 for _ in f)
    except OSError as e:
        logger.warning("Could not write stats log %s: %s", path, e)
        return 0


def run_check(
    repo: Path,
    hook_input: Dict[str, Any],
    transport: Optional[RefTransport] = None,
    remote: str = "origin",
    now: Optional[int] = None
) -> VerificationResult:
    """Verify the signal for a checkout and record the attempt."""
    if (repo / DISABLE_FILENAME).exists():
        result = VerificationResult.disabled()
    else:
        try:
            config: Optional[GateConfig] = load_gate_config(repo / CONFIG_FILENAME)
        except ConfigError as e:
            logger.warning("%s", e)
            config = None
        if transport is None:
            transport = GitRemoteTransport(str(repo), remote, DEFAULT_TIMEOUT_SECONDS)
        result = verify_signal(config, transport, now=now)

    tool = hook_input.get("tool_name")
    append_stats_line(repo, {
        "ts": int(time.time()) if now is None else now,
        "type": "attempt",
        "tool": tool,
        "tool_use_id": hook_input.get("tool_use_id"),
        **result.to_dict(),
    })
    audit_log.verification_decision(result.allowed, result.reason.value, result.session_id, tool)
    if result.reason in (Reason.INVALID_SIGNATURE, Reason.IDENTITY_MISMATCH):
        audit_log.security_event(result.reason.value, severity="high", detail=result.detail)
    return result


def sync_stats(repo: Path, transport: Optional[RefTransport] = None, remote: str = "origin") -> bool:
    """
    Publish the local stats log to the subject's stats ref.

    Lines published are removed from the local log; lines appended while
    publishing are kept for the next sync.

    Returns:
        True if a publish happened
    """
    path = stats_log_path(repo)
    if path is None or not path.exists():
        return False
    data = path.read_bytes()
    if not data.strip():
        return False

    try:
        config = load_gate_config(repo / CONFIG_FILENAME)
    except ConfigError as e:
        logger.warning("Stats sync skipped: %s", e)
        return False

    if transport is None:
        transport = GitRemoteTransport(str(repo), remote, DEFAULT_TIMEOUT_SECONDS)
    try:
        transport.publish(ref_name_for(config.subject_key, STATS_NAMESPACE), data, STATS_REMOTE_FILENAME)
    except TransportError as e:
        logger.warning("Stats sync failed: %s", e)
        return False

    current = path.read_bytes()
    path.write_bytes(current[len(data):] if current.startswith(data) else b"")
    return True


def cmd_check(args) -> int:
    """PreToolUse hook."""
    try:
        result = run_check(Path(args.repo), read_hook_input(), remote=args.remote)
    except Exception:
        logger.exception("hrgate check crashed")
        print("hrgate: verifier crashed; tools locked", file=sys.stderr)
        return EXIT_DENY

    if not result.allowed:
        print(f"hrgate: {result.message()}; tools locked", file=sys.stderr)
        return EXIT_DENY
    if not result.gated:
        print(f"hrgate: {result.message()}", file=sys.stderr)
    return EXIT_ALLOW


def cmd_post_tool(args) -> int:
    """PostToolUse hook; never blocks."""
    repo = Path(args.repo)
    hook_input = read_hook_input()
    lines = append_stats_line(repo, {
        "ts": int(time.time()),
        "type": "outcome",
        "tool": hook_input.get("tool_name"),
        "tool_use_id": hook_input.get("tool_use_id"),
        "succeeded": True,
    })
    if lines >= STATS_SYNC_THRESHOLD:
        sync_stats(repo, remote=args.remote)
    return EXIT_ALLOW


def cmd_sync_stats(args) -> int:
    sync_stats(Path(args.repo), remote=args.remote)
    return EXIT_ALLOW


def cmd_keygen(args) -> int:
    """Generate an Ed25519 key pair."""
    private_key, public_key = generate_keypair()
    keypair = {"private_key": private_key, "public_key": public_key}

    if args.output:
        with open(args.output, "w") as f:
            json.dump(keypair, f, indent=2)
        os.chmod(args.output, 0o600)
        print(f"Key pair saved to: {args.output}", file=sys.stderr)
        print(json.dumps({"public_key": public_key}, indent=2))
    else:
        print(json.dumps(keypair, indent=2))
    return 0


def cmd_init(args) -> int:
    """Write bootstrap files into a checkout."""
    files = generate_bootstrap_files(args.subject_key, args.public_key, args.ttl)
    for path in write_bootstrap_files(files, args.repo):
        print(f"wrote {path}", file=sys.stderr)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="hrgate",
        description="hrgate heart-rate gate CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hrgate check                         PreToolUse hook (exit 0 allow, 2 deny)
  hrgate post-tool                     PostToolUse hook
  hrgate sync-stats                    Push the local stats log
  hrgate keygen -o authority-key.json
  hrgate init -s octocat -p <public key hex>
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def repo_args(p, remote: bool = True):
        p.add_argument("-C", "--repo", default=".", help="Repository root (default: cwd)")
        if remote:
            p.add_argument("-r", "--remote", default="origin", help="Git remote carrying the signal ref")

    repo_args(subparsers.add_parser("check", help="Verify the signal (PreToolUse hook)"))
    repo_args(subparsers.add_parser("post-tool", help="Record a tool outcome (PostToolUse hook)"))
    repo_args(subparsers.add_parser("sync-stats", help="Publish the local stats log"))

    keygen_parser = subparsers.add_parser("keygen", help="Generate signing key pair")
    keygen_parser.add_argument("-o", "--output", help="Output file for the key pair")

    init_parser = subparsers.add_parser("init", help="Write bootstrap files into a checkout")
    repo_args(init_parser, remote=False)
    init_parser.add_argument("-s", "--subject-key", required=True, help="Subject key")
    init_parser.add_argument("-p", "--public-key", required=True, help="Authority public key (hex)")
    init_parser.add_argument("-t", "--ttl", type=int, default=15, help="Token TTL in seconds")

    args = parser.parse_args(argv)

    configure_logging(
        level=os.getenv("HRGATE_LOG_LEVEL", "WARNING"),
        json_format=os.getenv("HRGATE_LOG_JSON", "false").lower() == "true",
        stream=sys.stderr,
    )

    commands = {
        "check": cmd_check,
        "post-tool": cmd_post_tool,
        "sync-stats": cmd_sync_stats,
        "keygen": cmd_keygen,
        "init": cmd_init,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help(sys.stderr)
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
