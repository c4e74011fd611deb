from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from payments.config import settings

if not settings.database_url:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

_is_sqlite = settings.database_url.startswith("sqlite")

# Webhook handlers run in the threadpool, so SQLite must accept cross-thread use
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    pool_pre_ping=not _is_sqlite,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
