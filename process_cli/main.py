#!/usr/bin/env python3
"""
process-mcp CLI - Main entry point.

Usage:
    process-mcp                          # Serve over stdio (mode from env/config)
    process-mcp --mode docker            # Run commands in a Docker container
    process-mcp --workdir /tmp           # Default working directory for spawns
    process-mcp --config path/to/config.yaml
    process-mcp --verbose                # Debug logging
    process-mcp --version

stdout carries the MCP protocol, so all logging goes to stderr and to
~/.process-mcp/logs/process-mcp.log.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from process_cli import __version__
from process_cli.config import get_process_mcp_home, load_config

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Chatty third-party loggers, kept at WARNING unless something is wrong
_QUIET_LOGGERS = ("docker", "urllib3", "mcp")


def setup_logging(verbose: bool = False) -> None:
    """Log to stderr and a rotating file under ~/.process-mcp/logs."""
    level_name = os.getenv("PROCESS_MCP_LOG_LEVEL", "").upper()
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, level_name, None) if level_name else None
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(stderr_handler)

    try:
        log_dir = get_process_mcp_home() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "process-mcp.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
        )
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(file_handler)
    except OSError as e:
        logger.warning("File logging disabled: %s", e)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-mcp",
        description="MCP server for spawning and managing processes on the host or in Docker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--mode",
        choices=["host", "docker"],
        help="Execution mode (overrides PROCESS_MODE)",
    )
    parser.add_argument(
        "--workdir",
        help="Default working directory for spawned processes (overrides DEFAULT_WORKDIR)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml (default: ~/.process-mcp/config.yaml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def serve(config) -> None:
    """Run the MCP server on stdio until the client disconnects or a signal arrives."""
    from mcp_server import create_process_mcp

    logger.info("Starting in %s mode", config.mode)
    process_mcp = await create_process_mcp(config)

    loop = asyncio.get_running_loop()
    serve_task = asyncio.create_task(process_mcp.server.run_stdio_async())

    def signal_handler():
        logger.info("Shutdown signal received")
        serve_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    logger.info("Server running on stdio")
    try:
        await serve_task
    except asyncio.CancelledError:
        pass
    finally:
        await process_mcp.cleanup()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    # Command-line flags take precedence over the environment and config.yaml.
    if args.mode:
        os.environ["PROCESS_MODE"] = args.mode
    if args.workdir:
        os.environ["DEFAULT_WORKDIR"] = args.workdir

    try:
        config = load_config(args.config)
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=args.verbose)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
