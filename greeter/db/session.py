from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from greeter.db.models import Base


class GuestStore:
    """Process-wide handle on the guest database, closed once at shutdown."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self.closed = False

    @classmethod
    def open(cls, database_url: str) -> GuestStore:
        """Connect and create the schema; raises SQLAlchemyError if the store is unusable."""

        connect_args = {}
        if database_url.startswith("sqlite"):
            # Requests are served from a thread pool.
            connect_args["check_same_thread"] = False

        engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(engine)
        except Exception:
            engine.dispose()
            raise
        return cls(engine)

    def session(self) -> Session:
        return self.session_factory()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.engine.dispose()


def get_db(request: Request) -> Generator[Session | None, None, None]:
    store: GuestStore | None = request.app.state.store
    if store is None:
        yield None
        return

    db = store.session()
    try:
        yield db
    finally:
        db.close()
