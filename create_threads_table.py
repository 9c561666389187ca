"""
Simple script to create the threads, messages and users tables.
Run this once to set up the tables in your database.

Usage: python create_threads_table.py
"""

from sqlalchemy import inspect
from models import Base, Thread, Message, User  # Import models to register them
from database import engine

TABLES = ("threads", "messages", "users")


def create_tables() -> dict:
    """Create all tables and report which of the expected ones exist."""
    Base.metadata.create_all(bind=engine)

    existing = set(inspect(engine).get_table_names())
    return {table: table in existing for table in TABLES}


if __name__ == "__main__":
    print("Creating database tables...")
    status = create_tables()

    for table, exists in status.items():
        if exists:
            print(f"✓ {table.capitalize()} table created successfully!")
        else:
            print(f"✗ Failed to create {table} table")

    engine.dispose()
