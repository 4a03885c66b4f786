"""
Database initialization script
Drops all tables and recreates them with proper schema
"""
from sqlalchemy import create_engine, inspect

from app.config import get_settings
from app.database import Base

# Import all models
from app.attachment.models import Attachment  # noqa: F401
from app.audit.models import AuditEvent  # noqa: F401
from app.outbox.models import OutboxEvent  # noqa: F401


def init_db():
    settings = get_settings()
    engine = create_engine(settings.sqlalchemy_database_uri())

    # Drop all tables
    print("Dropping all tables...")
    Base.metadata.drop_all(bind=engine)

    # Create all tables
    print("Creating all tables...")
    Base.metadata.create_all(bind=engine)

    print("\n✅ Database initialized successfully!")

    # Show created tables
    inspector = inspect(engine)
    tables = inspector.get_table_names()
    print(f"\nCreated {len(tables)} tables:")
    for table in tables:
        print(f"  - {table}")

if __name__ == "__main__":
    init_db()
