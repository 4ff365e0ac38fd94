from __future__ import annotations

import json
import logging
import queue
import sys
import threading
from datetime import datetime, timezone

import httpx


_STOP = None

# The sinks' own HTTP client logs every request it makes.
TRANSPORT_LOGGERS = ("httpx", "httpcore")


class SinkUnavailableError(RuntimeError):
    """Raised when a log sink cannot be reached while the process starts."""


class TransportFilter(logging.Filter):
    """Rejects records from the HTTP client the sinks ship with."""

    def __init__(self, names: tuple[str, ...] = TRANSPORT_LOGGERS) -> None:
        super().__init__()
        self.names = names

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(record.name == name or record.name.startswith(name + ".") for name in self.names)


class ForwardingSink(logging.Handler):
    """Queue formatted records and ship them from a background thread.

    ``emit`` never blocks: when the queue is full the record is dropped and
    counted. Delivery failures are counted and reported on stderr, since
    logging them would feed straight back into this handler.
    """

    sink_name = "sink"

    def __init__(
        self,
        client: httpx.Client,
        *,
        level: int = logging.NOTSET,
        capacity: int = 1000,
        batch_size: int = 100,
    ) -> None:
        super().__init__(level=level)
        self.addFilter(TransportFilter())
        self._client = client
        self._queue: queue.Queue[str | None] = queue.Queue(maxsize=capacity)
        self._batch_size = batch_size
        self._closed = False
        self.dropped = 0
        self.failed = 0
        self.delivered = 0
        self._worker = threading.Thread(target=self._run, name=f"{self.sink_name}-forwarder", daemon=True)
        self._worker.start()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            doc = self.format(record)
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return

        try:
            self._queue.put_nowait(doc)
        except queue.Full:
            self.dropped += 1

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True

        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            pass
        self._worker.join(timeout)
        self._client.close()
        super().close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            stop = item is _STOP
            batch: list[str] = [] if stop else [item]

            while not stop and len(batch) < self._batch_size:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    stop = True
                else:
                    batch.append(item)

            if batch:
                self._deliver(batch)
            if stop:
                return

    def _deliver(self, batch: list[str]) -> None:
        try:
            rejected = self._send(batch)
        except (httpx.HTTPError, ValueError) as exc:
            self.failed += len(batch)
            sys.stderr.write(f"{self.sink_name}: failed to forward {len(batch)} log record(s): {exc}\n")
            return

        self.failed += rejected
        self.delivered += len(batch) - rejected

    def _send(self, batch: list[str]) -> int:
        """Deliver ``batch`` and return how many documents were rejected."""

        raise NotImplementedError


class ElasticsearchSink(ForwardingSink):
    """Ships JSON log documents to an Elasticsearch ``_bulk`` endpoint, one index per day."""

    sink_name = "elasticsearch"

    def __init__(self, client: httpx.Client, url: str, *, index_prefix: str, **kwargs) -> None:
        self.url = url.rstrip("/")
        self.index_prefix = index_prefix
        super().__init__(client, **kwargs)

    @classmethod
    def connect(
        cls,
        url: str,
        *,
        index_prefix: str,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
        **kwargs,
    ) -> ElasticsearchSink:
        """Check the cluster answers before building the sink.

        A sink that is down at startup is fatal: the service refuses to run
        unobservable.
        """

        client = client or httpx.Client(timeout=timeout)
        try:
            resp = client.get(url.rstrip("/") + "/")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            client.close()
            raise SinkUnavailableError(f"log sink at {url} is unreachable: {exc}") from exc

        return cls(client, url, index_prefix=index_prefix, **kwargs)

    def index_name(self, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        return f"{self.index_prefix}{now:%Y.%m.%d}"

    def _send(self, batch: list[str]) -> int:
        action = json.dumps({"index": {"_index": self.index_name()}})
        lines: list[str] = []
        for doc in batch:
            lines.append(action)
            lines.append(doc)
        body = "\n".join(lines) + "\n"

        resp = self._client.post(
            f"{self.url}/_bulk",
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        resp.raise_for_status()

        payload = resp.json()
        if not payload.get("errors"):
            return 0
        return sum(1 for item in payload.get("items", []) if "error" in item.get("index", {}))


class MonitoringSink(ForwardingSink):
    """Forwards severe records to a monitoring backend as a JSON array."""

    sink_name = "monitoring"

    def __init__(self, client: httpx.Client, url: str, **kwargs) -> None:
        self.url = url
        kwargs.setdefault("level", logging.ERROR)
        super().__init__(client, **kwargs)

    def _send(self, batch: list[str]) -> int:
        body = "[" + ",".join(batch) + "]"
        resp = self._client.post(
            self.url,
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        resp.raise_for_status()
        return 0
