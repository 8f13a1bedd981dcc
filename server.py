"""FastMCP entry point for the batched pull-request reviewer."""

from __future__ import annotations

import argparse
import logging

from fastmcp import FastMCP

from review_agent.config import SERVER_HOST, SERVER_NAME, SERVER_PORT, SERVER_VERSION
from review_agent.mcp_tools import register_tools

# ── Logging ──────────────────────────────────────────────────────────────────
# Planner decisions, strategy fallbacks and token usage go to stderr.

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
    datefmt="%H:%M:%S",
)
for _noisy in ("botocore", "boto3", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_server() -> FastMCP:
    """Create the FastMCP server with the review tools registered."""
    server = FastMCP(name=SERVER_NAME, version=SERVER_VERSION)
    register_tools(server)
    return server


# Module-level instance for the FastMCP CLI
mcp = create_server()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Batched pull-request review MCP server")
    parser.add_argument("--stdio", action="store_true", help="serve over stdio instead of HTTP")
    parser.add_argument("--host", default=SERVER_HOST)
    parser.add_argument("--port", type=int, default=SERVER_PORT)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.stdio:
        logger.info("Starting %s v%s on stdio", SERVER_NAME, SERVER_VERSION)
        mcp.run(transport="stdio")
        return

    logger.info("Starting %s v%s on %s:%d", SERVER_NAME, SERVER_VERSION, args.host, args.port)
    try:
        mcp.run(transport="streamable-http", host=args.host, port=args.port)
    except OSError as e:
        logger.error("Server failed to start: %s", e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
