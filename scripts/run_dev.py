#!/usr/bin/env python3
"""
Development launcher script.

Starts the metrics refresh loop with the dev.yaml configuration
(local SQLite database, in-process shared cache, no oracle).
"""

import asyncio
import sys
from pathlib import Path

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pricing.runner.service import main


if __name__ == "__main__":
    try:
        sys.exit(
            asyncio.run(
                main(["--config", "configs/dev.yaml", "--profile", "dev", "serve"])
            )
        )
    except KeyboardInterrupt:
        print("\nPricing service stopped by user.")
        sys.exit(0)
