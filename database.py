import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _is_sqlite_memory(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (
        None,
        "",
        ":memory:",
    )


class Database:
    """Process-wide data-access handle.

    Created once per process and handed to the application, which calls
    ``connect()`` on startup and ``disconnect()`` on shutdown. Sessions are
    only available while connected.
    """

    def __init__(self, url: str, *, create_schema: bool = True) -> None:
        self.url = url
        self.create_schema = create_schema
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    def connect(self) -> None:
        if self._engine is not None:
            return
        connect_args: dict[str, object] = {}
        engine_kwargs: dict[str, object] = {}
        is_sqlite = self.url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            if _is_sqlite_memory(self.url):
                engine_kwargs["poolclass"] = StaticPool

        eng = create_engine(self.url, connect_args=connect_args, **engine_kwargs)
        if is_sqlite:
            event.listen(eng, "connect", _enable_sqlite_pragmas)

        if self.create_schema:
            import models  # noqa: F401

            Base.metadata.create_all(eng)

        self._engine = eng
        self._sessionmaker = sessionmaker(
            bind=eng, autoflush=False, expire_on_commit=False
        )
        logger.info(
            "database_connected: url=%s",
            eng.url.render_as_string(hide_password=True),
        )

    def disconnect(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("database_disconnected")

    def session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not connected")
        return self._sessionmaker()
