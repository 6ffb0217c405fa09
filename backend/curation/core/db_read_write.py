from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from curation.core.config import settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_options(url: str) -> dict:
    if _is_sqlite(url):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_pre_ping": True,
        "pool_size": max(1, settings.DB_POOL_SIZE),
        "max_overflow": max(0, settings.DB_MAX_OVERFLOW),
        "pool_timeout": max(1, settings.DB_POOL_TIMEOUT),
        "pool_recycle": max(30, settings.DB_POOL_RECYCLE),
    }


def _enable_sqlite_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


write_engine = create_engine(settings.DATABASE_WRITE_URL, **_engine_options(settings.DATABASE_WRITE_URL))
if settings.DATABASE_READ_URL == settings.DATABASE_WRITE_URL:
    read_engine = write_engine
else:
    read_engine = create_engine(settings.DATABASE_READ_URL, **_engine_options(settings.DATABASE_READ_URL))

for _engine in {write_engine, read_engine}:
    if _is_sqlite(str(_engine.url)):
        _enable_sqlite_foreign_keys(_engine)

WriteSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=write_engine)
ReadSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=read_engine)
