"""Initialize the database schema."""

import sys

from src.config import config
from src.database import Database

EXPECTED_TABLES = ("users", "periode", "batch", "hasil_clustering")


def init_database(database_url: str = None) -> Database:
    """Create the dashboard tables and report what is there."""
    database = Database(database_url)

    print("Connecting to database...")
    database.connect()
    print("\n✅ Database schema initialized successfully!")

    print("\nTables:")
    for table in EXPECTED_TABLES:
        count = database.execute_scalar(f"SELECT COUNT(*) FROM {table}")
        print(f"  - {table}: {count} rows")
    return database


if __name__ == "__main__":
    if not (config.postgres_url or config.postgres_host):
        print("❌ DATABASE_URL or POSTGRES_HOST must be set")
        sys.exit(1)
    try:
        init_database().close()
    except Exception as e:
        print(f"\n❌ Error: {str(e)}")
        sys.exit(1)
