from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from pharmacy_queue.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True)

# Engines hand snapshots back after the session is closed, so attributes must
# survive the commit.
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    import pharmacy_queue.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
