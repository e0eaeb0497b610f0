#!/usr/bin/env python3
"""
Member Loans Entry Point

Starts the FastAPI server with the member loan engine.
"""

import sys

from member_loans.api import run_server
from member_loans.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Member Loans API...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Member Loans API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
