#!/usr/bin/env python3
"""
Token Vault Entry Point

Starts the FastAPI server with the vault configured from VAULT_* settings.
"""

import sys

from token_vault.api import run_server
from token_vault.config import get_config
from token_vault.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    print("Starting Token Vault...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Token Vault...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
