#!/usr/bin/env python3
"""
Run the Tilespace API with uvicorn.

Usage:
    python -m tilespace.scripts.serve [--host 0.0.0.0] [--port 8000] [--reload]
"""
import argparse
import sys

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the Tilespace backend")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    print(f"[Backend] Starting Tilespace on http://{args.host}:{args.port}")
    try:
        uvicorn.run(
            "tilespace.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
