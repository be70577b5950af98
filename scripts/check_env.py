#!/usr/bin/env python3
"""
Check that the required M-Pesa Daraja env vars are set (without starting the app).
Usage: python scripts/check_env.py
Exit 0 if all present, 1 otherwise.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from src.utils.config_loader import missing_required_env


def main() -> int:
    missing = missing_required_env()
    if missing:
        print("Missing required environment variables:", file=sys.stderr)
        for key in missing:
            print(f"  - {key}", file=sys.stderr)
        print("\nCopy .env.example to .env and set values.", file=sys.stderr)
        return 1

    environment = os.environ.get("MPESA_ENVIRONMENT") or "sandbox"
    print(f"OK: All required M-Pesa env vars set (MPESA_ENVIRONMENT={environment}).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
