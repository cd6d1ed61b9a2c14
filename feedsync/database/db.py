from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from feedsync.config.settings import get_settings
from feedsync.database.models import Base

settings = get_settings()

engine_kwargs = {"echo": settings.debug}

if settings.database_url.startswith("sqlite"):
    # Lease rows are the run lock on SQLite; wait for writers instead of failing fast
    engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
else:
    # Advisory locks pin one extra connection per running sync
    engine_kwargs["pool_size"] = 10
    engine_kwargs["max_overflow"] = 20
    engine_kwargs["pool_pre_ping"] = True

engine = create_engine(settings.database_url, **engine_kwargs)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db():
    """Create all tables (development and tests; deployments use alembic)."""
    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    """FastAPI dependency: one session per request, always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
