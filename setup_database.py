#!/usr/bin/env python3
"""
Setup Database Tables for ContactSync
Creates the contacts table (unique on external_id + customer_id) in DATABASE_URL
"""

import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).parent / 'backend'
sys.path.insert(0, str(ROOT_DIR))

from database import DATABASE_URL, create_tables  # noqa: E402


if __name__ == "__main__":
    print("ContactSync Database Setup")
    print("=" * 50)

    url = sys.argv[1] if len(sys.argv) > 1 else DATABASE_URL
    print(f"Database: {url.split('@')[-1]}")

    try:
        asyncio.run(create_tables(url))
    except Exception as e:
        print(f"❌ Database setup failed: {str(e)}")
        sys.exit(1)

    print("✅ Database setup completed successfully!")
