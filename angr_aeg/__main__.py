"""Command-line entry point: generate an exploit or serve the MCP tools."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from mcp.server.fastmcp.utilities.logging import configure_logging

from .config import AegConfig
from .driver import generate_exploit
from .errors import AegError
from .server import mcp


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Leak-aware automatic exploit generation with angr.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Shortcut for --log-level=DEBUG.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Explore a binary and write an exploit script.")
    generate.add_argument("binary", help="Path to the target ELF.")
    generate.add_argument("--libc", help="Path to the libc the target runs with.")
    generate.add_argument("--config", help="JSON configuration file.")
    generate.add_argument("--output", help="Path of the generated script (default: exploit.py).")
    generate.add_argument("--max-states", type=int, help="Abort once more states than this are live.")

    serve = commands.add_parser("serve", help="Launch the MCP server.")
    serve.add_argument(
        "--transport",
        choices=("stdio", "sse"),
        default="stdio",
        help="Transport mode for the MCP server.",
    )
    serve.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for SSE transport (ignored for stdio).",
    )
    serve.add_argument(
        "--port",
        type=int,
        default=8081,
        help="Port for SSE transport (ignored for stdio).",
    )
    return parser


def _generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    overrides = {
        "elf_filename": args.binary,
        "libc_filename": args.libc,
        "output_filename": args.output,
        "max_states": args.max_states,
    }
    try:
        if args.config:
            config = AegConfig.from_file(args.config, **overrides)
        else:
            config = AegConfig.from_dict({k: v for k, v in overrides.items() if v is not None})
        result = generate_exploit(config)
    except AegError as exc:
        logger.error("%s", exc)
        return 2

    if result.exploit_path is None:
        logger.error("No exploit generated")
        return 1
    logger.info("Exploit written to %s using %s", result.exploit_path, result.technique)
    return 0


def _serve(args: argparse.Namespace, log_level_name: str, logger: logging.Logger) -> int:
    logger.info("Starting angr-aeg MCP server using %s transport", args.transport)
    if args.transport == "sse":
        mcp.settings.log_level = log_level_name
        mcp.settings.host = args.host
        mcp.settings.port = args.port
        try:
            mcp.run(transport="sse")
        except KeyboardInterrupt:
            logger.info("Server stopped by user")
    else:
        mcp.run()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else getattr(logging, args.log_level.upper(), logging.WARN)
    log_level_name = logging.getLevelName(log_level)
    configure_logging(log_level_name)

    logger = logging.getLogger("angr_aeg")
    if args.command == "serve":
        return _serve(args, log_level_name, logger)
    return _generate(args, logger)


if __name__ == "__main__":
    sys.exit(main())
