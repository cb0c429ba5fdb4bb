from shared.database import Base, get_engine, get_session

from .config import DATABASE_URL, SQL_ECHO

if not DATABASE_URL:
    raise RuntimeError("DISPATCH_DB environment variable is not set")

engine = get_engine(DATABASE_URL, echo=SQL_ECHO)

SessionLocal = get_session(engine)

__all__ = ["Base", "engine", "SessionLocal"]
