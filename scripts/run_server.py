"""Script to launch the chat client host."""

from __future__ import annotations

import argparse
import os

import uvicorn

from chat_client.config import configure_logging, load_config
from chat_client.server import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the chat client host.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $CHAT_CLIENT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    args = parser.parse_args()

    configure_logging(load_config(args.config))
    # Sessions live in process memory, so the host runs as a single worker.
    app = create_app(args.config)

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
