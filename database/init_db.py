"""
Initialize database tables.

Run this script to create all tables in the database (development only;
production schemas are managed by migrations).
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging

from config import Settings
from database.db import create_db_engine, create_tables
from database.models import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if __name__ == "__main__":
    settings = Settings.from_env()
    print("Creating payment tables...")
    try:
        create_tables(create_db_engine(settings.database_url))
        print("\n✅ Tables created successfully!")

        print("\nTables:")
        for table_name in Base.metadata.tables.keys():
            print(f"  - {table_name}")
    except Exception as e:
        print(f"\n❌ Error creating tables: {e}")
        raise
