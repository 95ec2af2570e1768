"""
CLI entry point for the Vibe Runtime web server.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import argparse
import logging
import os

from config import app_config
from runtime import Runtime, set_runtime


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Vibe Runtime - Web API")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--dir", default=app_config.working_directory, help="Working directory for the agent")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, app_config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    working_directory = os.path.abspath(os.path.expanduser(args.dir))
    if not os.path.isdir(working_directory):
        print(f"\n  Error: directory not found: {working_directory}")
        print(f"  Hint: use the full path, e.g. --dir ~/Desktop/my-project\n")
        raise SystemExit(1)

    runtime = Runtime(working_directory=working_directory)
    runtime.initialize()
    set_runtime(runtime)

    print(f"\n  Vibe Runtime - Web API")
    print(f"  http://{args.host}:{args.port}")
    print(f"  Working directory: {working_directory}")
    print(f"  Mode: {runtime.state_machine.mode.name}\n")

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
