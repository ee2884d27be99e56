import argparse
import asyncio
import io
import sys

from smart_e2b.config import BACKENDS, config, parse_markers
from smart_e2b.guard import guard
from smart_e2b.utils import log_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SMART-E2B MCP server (code execution and files in pooled remote sandboxes)"
    )
    parser.add_argument("--backend", choices=BACKENDS, help="Sandbox backend (overrides SMART_E2B_BACKEND env)")
    parser.add_argument("--api-key", help="E2B API key (overrides E2B_API_KEY env)")
    parser.add_argument("--host", help="SSH host for the ssh backend (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument(
        "--debug-marker", action="append",
        help="Text that marks stdout writes as diagnostics (repeatable; overrides SMART_E2B_DEBUG_MARKERS env)",
    )
    return parser


def apply_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    if args.backend: config.BACKEND = args.backend
    if args.api_key: config.E2B_API_KEY = args.api_key
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    if args.debug_marker:
        config.DEBUG_MARKERS = parse_markers(",".join(args.debug_marker))

    # Validation
    if config.BACKEND not in BACKENDS:
        parser.error(f"unknown backend: {config.BACKEND} (expected one of {', '.join(BACKENDS)})")
    if config.BACKEND == "e2b" and not config.E2B_API_KEY:
        parser.error("E2B API key is required (via --api-key or E2B_API_KEY env)")
    if config.BACKEND == "ssh":
        if not config.SSH_HOST:
            parser.error("SSH host is required (via --host or SSH_HOST env)")
        if not config.SSH_USER:
            parser.error("SSH user is required (via --user or SSH_USER env)")
        if not config.SSH_PASSWORD and not config.SSH_KEY_PATH:
            parser.error("Either password or key must be provided (via args or env)")


def main() -> None:
    # Pre-load from environment
    config.load_from_env()
    parser = build_parser()
    apply_args(parser.parse_args(), parser)

    # Force UTF-8 on the protocol channel before the guard captures it
    sys.stdout.reconfigure(encoding="utf-8", line_buffering=True)
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")

    log_error("SMART-E2B MCP server starting...")
    guard.set_debug_markers(config.DEBUG_MARKERS)
    guard.install()
    try:
        # Backend clients are imported only once stdout is guarded
        from smart_e2b.pool import build_pools
        from smart_e2b.sandbox import sandbox_factory
        from smart_e2b.server import serve

        pools = build_pools(sandbox_factory(config.BACKEND))
        log_error(f"SMART-E2B MCP server started (backend={config.BACKEND})")
        asyncio.run(serve(stdin, pools))
    except KeyboardInterrupt:
        log_error("interrupted")
    finally:
        guard.uninstall()


if __name__ == "__main__":
    main()
