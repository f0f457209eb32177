"""
Entry point for running the program manager via `python -m program_manager`.

Starts the FastAPI server with uvicorn. Exits 1 if the data directories
cannot be created and 2 if the listening socket cannot be bound.
"""

import logging
import socket
import sys

import uvicorn

from .config import Config
from .main import configure_logging, create_app

logger = logging.getLogger(__name__)


def _can_bind(host: str, port: int) -> bool:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            logger.error(f"Cannot bind {host}:{port}: {e}")
            return False
    return True


def main() -> int:
    """Run the program manager server."""
    config = Config()
    try:
        config.ensure_directories()
    except OSError as e:
        print(f"Failed to create directories: {e}", file=sys.stderr)
        return 1

    configure_logging(config)

    if not _can_bind(config.host, config.port):
        return 2

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        reload=False,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
