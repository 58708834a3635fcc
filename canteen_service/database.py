from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL


def make_engine(url):
    """Create an engine; SQLite connections are shared with the request threadpool."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine):
    # Objects stay readable after commit so events can be published from them.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# Create the SQLAlchemy engine.
engine = make_engine(DATABASE_URL)

# Create a configured "Session" class.
SessionLocal = make_session_factory(engine)

# Base class for declarative models.
Base = declarative_base()