#!/usr/bin/env python3
"""
Command-line interface for the request catcher.

Usage:
    uv run python cli.py [command] [options]

Commands:
    serve       Start the API server
    test        Run the test suite

Examples:
    uv run python cli.py serve --port 3000
    uv run python cli.py serve --reload
    uv run python cli.py test -v
"""

import argparse
import subprocess

from capture.config import load_settings


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"Create an endpoint at http://{host}:{port}/new")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    settings = load_settings()

    parser = argparse.ArgumentParser(
        description="Request Catcher CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve
  %(prog)s serve --host 0.0.0.0 --port 8080 --reload
  %(prog)s test -v
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=settings.host, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=settings.port, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
