from __future__ import annotations

import gzip
import json
import logging
import os
import time

import httpx
import pytest

from greeter.config import get_settings
from greeter.observability.logging import configure_logging, parse_level
from greeter.observability.rotation import CompressingRotatingFileHandler
from greeter.observability.sinks import SinkUnavailableError
from greeter.observability.tracing import CorrelationContext


class FakeBackend:
    def __init__(self, ping_status: int = 200) -> None:
        self.ping_status = ping_status
        self.bodies: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(self.ping_status, json={})
        self.bodies.append(request.content.decode("utf-8"))
        return httpx.Response(200, json={"errors": False, "items": []})

    def documents(self) -> list[dict]:
        docs: list[dict] = []
        for body in self.bodies:
            lines = body.splitlines()
            if lines and lines[0].startswith("["):
                docs.extend(json.loads(body))
                continue
            docs.extend(json.loads(line) for line in lines[1::2])
        return docs


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_parse_level() -> None:
    assert parse_level("debug") == logging.DEBUG
    assert parse_level(" ERROR ") == logging.ERROR
    with pytest.raises(ValueError):
        parse_level("chatty")


def test_records_reach_the_index_with_trace_fields(monkeypatch, restore_root_logging) -> None:
    monkeypatch.setenv("ELASTICSEARCH_URL", "http://es.test:9200")
    monkeypatch.setenv("LOG_SINK_HOST", "web-1")
    get_settings.cache_clear()
    backend = FakeBackend()

    runtime = configure_logging(get_settings(), sink_client=httpx.Client(transport=httpx.MockTransport(backend)))
    ctx = CorrelationContext.new()
    runtime.get_logger("greeter.test").info("hello", name="Ada", **ctx.log_fields())
    runtime.close()

    docs = [doc for doc in backend.documents() if doc.get("message") == "hello"]
    assert len(docs) == 1
    doc = docs[0]
    assert doc["log.level"] == "info"
    assert doc["log.logger"] == "greeter.test"
    assert doc["host"] == "web-1"
    assert doc["name"] == "Ada"
    assert doc["trace.id"] == ctx.trace_id
    assert "@timestamp" in doc


def test_shipping_does_not_feed_back_into_the_sink(monkeypatch, restore_root_logging) -> None:
    monkeypatch.setenv("ELASTICSEARCH_URL", "http://es.test:9200")
    get_settings.cache_clear()
    backend = FakeBackend()

    runtime = configure_logging(get_settings(), sink_client=httpx.Client(transport=httpx.MockTransport(backend)))
    try:
        runtime.get_logger("greeter.test.loop").info("hello")
        time.sleep(1.0)
        posts = len(backend.bodies)
    finally:
        runtime.close()

    assert posts == 1
    assert [doc["message"] for doc in backend.documents()] == ["hello"]


def test_sink_minimum_level_is_configurable(monkeypatch, restore_root_logging) -> None:
    monkeypatch.setenv("ELASTICSEARCH_URL", "http://es.test:9200")
    monkeypatch.setenv("LOG_SINK_LEVEL", "WARNING")
    get_settings.cache_clear()
    backend = FakeBackend()

    runtime = configure_logging(get_settings(), sink_client=httpx.Client(transport=httpx.MockTransport(backend)))
    log = runtime.get_logger("greeter.test.level")
    log.info("skipped")
    log.warning("kept")
    runtime.close()

    messages = [doc["message"] for doc in backend.documents()]
    assert "kept" in messages
    assert "skipped" not in messages


def test_errors_are_also_sent_to_monitoring(monkeypatch, restore_root_logging) -> None:
    monkeypatch.setenv("APM_SERVER_URL", "http://apm.test:8200/intake")
    get_settings.cache_clear()
    monitor = FakeBackend()

    runtime = configure_logging(get_settings(), monitor_client=httpx.Client(transport=httpx.MockTransport(monitor)))
    log = runtime.get_logger("greeter.test.monitor")
    log.info("fine")
    log.error("unknown route error", path="/missing")
    runtime.close()

    assert [doc["message"] for doc in monitor.documents()] == ["unknown route error"]


def test_unreachable_sink_refuses_to_start(monkeypatch, restore_root_logging) -> None:
    monkeypatch.setenv("ELASTICSEARCH_URL", "http://es.test:9200")
    get_settings.cache_clear()
    before = logging.getLogger().handlers[:]

    with pytest.raises(SinkUnavailableError):
        configure_logging(get_settings(), sink_client=httpx.Client(transport=httpx.MockTransport(FakeBackend(ping_status=503))))

    assert logging.getLogger().handlers == before


def test_log_file_location_redirects_output(monkeypatch, tmp_path, restore_root_logging) -> None:
    log_file = tmp_path / "logs" / "greeter.log"
    monkeypatch.setenv("LOG_FILE_LOCATION", str(log_file))
    get_settings.cache_clear()

    runtime = configure_logging(get_settings())
    assert isinstance(runtime.output, CompressingRotatingFileHandler)
    runtime.get_logger("greeter.test.file").info("Starting Server")
    runtime.close()

    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert any(line["event"] == "Starting Server" and line["level"] == "info" for line in lines)


def test_stdlib_records_are_rendered_as_json(monkeypatch, tmp_path, restore_root_logging) -> None:
    log_file = tmp_path / "stdlib.log"
    monkeypatch.setenv("LOG_FILE_LOCATION", str(log_file))
    get_settings.cache_clear()

    runtime = configure_logging(get_settings())
    logging.getLogger("uvicorn.error").warning("from the server")
    runtime.close()

    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert lines[-1]["event"] == "from the server"
    assert lines[-1]["logger"] == "uvicorn.error"


def _fill(handler: logging.Handler, count: int) -> None:
    for i in range(count):
        handler.emit(logging.makeLogRecord({"msg": f"line {i:04d} " + "x" * 40, "levelno": logging.INFO}))


def test_rotation_compresses_backups(tmp_path) -> None:
    path = tmp_path / "app.log"
    handler = CompressingRotatingFileHandler(path, max_bytes=200, backup_count=3)
    try:
        _fill(handler, 20)
    finally:
        handler.close()

    backups = sorted(p.name for p in tmp_path.iterdir() if p.name != "app.log")
    assert backups == ["app.log.1.gz", "app.log.2.gz", "app.log.3.gz"]
    with gzip.open(tmp_path / "app.log.1.gz", "rt", encoding="utf-8") as f:
        assert "line" in f.read()


def test_rotation_purges_expired_backups(tmp_path) -> None:
    path = tmp_path / "app.log"
    stale = tmp_path / "app.log.2.gz"
    with gzip.open(stale, "wt", encoding="utf-8") as f:
        f.write("old\n")
    old = time.time() - 40 * 86400
    os.utime(stale, (old, old))

    handler = CompressingRotatingFileHandler(path, max_bytes=200, backup_count=3, max_age_days=28)
    try:
        _fill(handler, 6)
    finally:
        handler.close()

    assert (tmp_path / "app.log.1.gz").exists()
    assert not (tmp_path / "app.log.3.gz").exists()
    assert not stale.exists()
