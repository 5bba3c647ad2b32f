#!/usr/bin/env python3
"""
Micro-lending API Entry Point

Starts the FastAPI server on the configured host and port.
"""

import sys

import uvicorn

from microlending.config import get_config
from microlending.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "microlending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_file=config.log_file)

    print("Starting micro-lending API...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
