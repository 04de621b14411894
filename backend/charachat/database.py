from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import settings
import os
from pathlib import Path

# Ensure data directory exists
os.makedirs(settings.data_dir, exist_ok=True)

# Convert relative database URL to absolute path if it's SQLite
database_url = settings.database_url
if "sqlite:///" in database_url and not database_url.startswith("sqlite:////") and ":memory:" not in database_url:
    backend_dir = Path(__file__).parent.parent  # backend/charachat -> backend/
    relative_path = database_url.replace("sqlite:///", "")
    absolute_path = (backend_dir / relative_path).resolve()
    os.makedirs(absolute_path.parent, exist_ok=True)
    database_url = f"sqlite:///{absolute_path}"

# Create SQLAlchemy engine
engine = create_engine(
    database_url,
    connect_args={"check_same_thread": False} if "sqlite" in database_url else {}
)


def enable_sqlite_foreign_keys(bind_engine):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection"""
    @event.listens_for(bind_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if database_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
