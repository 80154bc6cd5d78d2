from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .models import Base
from .config import DATABASE_URL

def make_engine(url: str = DATABASE_URL):
    """Create an engine; SQLite connections are shared across threads."""
    kwargs = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One connection, so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)

def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine)

engine = make_engine()
SessionLocal = make_session_factory(engine)

def init_db(bind=None):
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=bind or engine)

def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
