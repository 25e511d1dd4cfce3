"""CLI entry point for MCP Console."""

import argparse
import sys


def main():
    """Main entry point for MCP Console."""
    parser = argparse.ArgumentParser(
        prog="mcp-console",
        description="MCP Console - tool-server orchestration backend for desktop chat clients",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=8766,
        help="Port to run the server on (default: 8766)"
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at DEBUG level, including tool-server stderr"
    )
    parser.add_argument(
        "--version", "-v",
        action="store_true",
        help="Show version and exit"
    )

    args = parser.parse_args()

    if args.version:
        from mcp_console import __version__
        print(f"MCP Console v{__version__}")
        return 0

    from mcp_console.app.config import APP_HOME, ensure_directories
    ensure_directories()

    if args.debug:
        import os
        os.environ["MCP_CONSOLE_DEBUG"] = "1"

    print(f"""
  MCP Console
  App data:  {APP_HOME}
  Server:    http://{args.host}:{args.port}
    """)
    print("  Press Ctrl+C to stop the server.\n")

    # Start server
    import uvicorn
    uvicorn.run(
        "mcp_console.app.main:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
