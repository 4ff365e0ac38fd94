from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from greeter.config import get_settings
from greeter.db.session import GuestStore
from greeter.main import create_app


class RecordingLogger:
    """Stands in for the structlog logger; keeps every call for assertions."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        self.records.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, **kwargs)

    def critical(self, event: str, **kwargs: Any) -> None:
        self._log("critical", event, **kwargs)

    def events(self, level: str | None = None) -> list[str]:
        return [event for lvl, event, _ in self.records if level is None or lvl == level]

    def find(self, event: str) -> list[dict[str, Any]]:
        return [kwargs for _, name, kwargs in self.records if name == event]


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'guests.db'}")
    monkeypatch.setenv("ELASTICSEARCH_URL", "")
    monkeypatch.setenv("APM_SERVER_URL", "")
    monkeypatch.setenv("LOG_FILE_LOCATION", "")
    monkeypatch.setenv("PERSIST_GUESTS", "true")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def store() -> Iterator[GuestStore]:
    guest_store = GuestStore.open(get_settings().database_url)
    yield guest_store
    guest_store.close()


@pytest.fixture
def app(store: GuestStore, recording_logger: RecordingLogger):
    return create_app(get_settings(), logger=recording_logger, store=store)


@pytest.fixture
async def api_client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
