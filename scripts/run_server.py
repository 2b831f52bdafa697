#!/usr/bin/env python
"""Start the strategy blocks API server."""

import argparse
import sys
from pathlib import Path

# Change to the project root directory
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import get_settings


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the strategy blocks API")
    parser.add_argument("--host", default=settings.server.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.server.port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    return parser.parse_args()


if __name__ == "__main__":
    import uvicorn

    args = parse_args()

    print("Starting Strategy Blocks API...")
    print(f"API will be available at: http://localhost:{args.port}")
    print(f"API docs available at: http://localhost:{args.port}/docs")
    print()

    uvicorn.run("src.api.app:create_app", factory=True, host=args.host, port=args.port, reload=args.reload)
