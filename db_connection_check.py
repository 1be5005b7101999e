from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from pharmacy_queue.config import settings
from pharmacy_queue.db import Base
import pharmacy_queue.models  # noqa: F401


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
        print("DB connection OK")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return
    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        print(f"Missing tables: {', '.join(missing)} (set CREATE_TABLES=true to create them on startup)")
    else:
        print("Schema OK")


if __name__ == "__main__":
    main()
