#!/usr/bin/env python3
"""
Banking Backend Entry Point

Starts the FastAPI server on the configured host and port.
"""

import sys

from bank_backend.api import run_server
from bank_backend.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Banking Backend...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Banking Backend...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
