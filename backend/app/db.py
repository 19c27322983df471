from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings

# TCP keepalives for long-lived pooled connections to the cache database.
_POSTGRES_KEEPALIVES = {
    "keepalives": 1,
    "keepalives_idle": 120,
    "keepalives_interval": 30,
    "keepalives_count": 5,
}


def _connect_args(url: URL) -> dict[str, object]:
    backend = url.get_backend_name()
    if backend == "sqlite":
        # Syncs write from worker threads, so the connection must cross threads.
        return {"check_same_thread": False}
    if not backend.startswith("postgresql"):
        return {}
    args: dict[str, object] = dict(_POSTGRES_KEEPALIVES)
    if url.get_driver_name() == "psycopg":
        # PgBouncer's transaction pooler rejects PREPARE.
        args["prepare_threshold"] = None
    return args


def create_cache_engine(url: str) -> Engine:
    parsed = make_url(url)
    engine_kwargs: dict[str, object] = {"echo": settings.debug, "future": True, "pool_pre_ping": True}
    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        engine_kwargs["pool_recycle"] = 300

    connect_args = _connect_args(parsed)
    if connect_args:
        engine_kwargs["connect_args"] = connect_args
    return create_engine(url, **engine_kwargs)


def build_db_components(url: str) -> tuple[Engine, sessionmaker[Session]]:
    engine = create_cache_engine(url)
    return engine, sessionmaker(bind=engine, autoflush=True, autocommit=False, future=True)


engine, SessionLocal = build_db_components(settings.resolved_database_url)
Base = declarative_base()


@contextmanager
def session_scope(factory: Callable[[], Session] | None = None) -> Iterator[Session]:
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine | None = None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
