"""
toolhub server CLI - start the MCP connection hub API.

Usage:
    toolhub-server                              # Start with defaults
    toolhub-server --port 8000                  # Custom port
    toolhub-server --env /path/to/.env          # Custom env file
    toolhub-server --config-dir /path/to/config # Directory holding mcp.json
"""

import argparse
import os
import sys
from pathlib import Path


def _apply_env_file(env_path: Path) -> None:
    """Load environment variables from a .env file."""
    from dotenv import load_dotenv

    if not env_path.exists():
        print(f"Error: env file not found: {env_path}", file=sys.stderr)
        sys.exit(2)

    load_dotenv(dotenv_path=str(env_path))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolhub-server",
        description="Start the toolhub API for managing MCP tool server connections.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the server on (default: 8000 or PORT env var).",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: 127.0.0.1 or TOOLHUB_HOST env var).",
    )
    parser.add_argument(
        "--env",
        dest="env_file",
        default=None,
        help="Path to .env file (default: .env in current directory or package root).",
    )
    parser.add_argument(
        "--config-dir",
        dest="config_dir",
        default=None,
        help="Directory containing mcp.json (sets APP_CONFIG_DIR).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    return parser


def run_server(args: argparse.Namespace) -> int:
    import uvicorn

    host = args.host or os.getenv("TOOLHUB_HOST", "127.0.0.1")
    port = args.port or int(os.getenv("PORT", "8000"))

    print(f"Starting toolhub server on {host}:{port}")

    # A single worker: connection state lives in process memory
    if args.reload:
        uvicorn.run("toolhub.main:app", host=host, port=port, reload=True)
    else:
        from toolhub.main import app

        uvicorn.run(app, host=host, port=port)
    return 0


def main() -> None:
    """Entry point for the toolhub-server CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        from toolhub.version import VERSION
        print(f"toolhub-server version {VERSION}")
        sys.exit(0)

    # Env file first, before anything reads settings
    if args.env_file:
        _apply_env_file(Path(args.env_file).expanduser())
    else:
        cwd_env = Path.cwd() / ".env"
        if cwd_env.exists():
            _apply_env_file(cwd_env)
        else:
            pkg_root_env = Path(__file__).resolve().parents[1] / ".env"
            if pkg_root_env.exists():
                _apply_env_file(pkg_root_env)

    if args.config_dir:
        config_dir = Path(args.config_dir).expanduser()
        if not config_dir.exists():
            print(f"Error: config directory not found: {config_dir}", file=sys.stderr)
            sys.exit(2)
        os.environ["APP_CONFIG_DIR"] = str(config_dir.resolve())

    sys.exit(run_server(args))


if __name__ == "__main__":
    main()
