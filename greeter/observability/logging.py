from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from greeter.config import Settings
from greeter.observability.rotation import CompressingRotatingFileHandler
from greeter.observability.sinks import ElasticsearchSink, ForwardingSink, MonitoringSink


_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def parse_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name!r}")
    return level


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename structlog's keys to the ECS names the index mappings expect."""

    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    if "logger" in event_dict:
        event_dict["log.logger"] = event_dict.pop("logger")
    if "event" in event_dict:
        event_dict["message"] = event_dict.pop("event")
    return event_dict


def _static_fields(**fields: Any) -> Processor:
    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def _pre_chain() -> list[Processor]:
    return [
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _sink_formatter(pre_chain: list[Processor], **fields: Any) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _static_fields(**fields),
            _ecs_fields,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=pre_chain,
    )


@dataclass
class LoggingRuntime:
    """Handlers installed by :func:`configure_logging`.

    Built once at startup and closed last, after every other resource, so the
    shutdown records still reach the sinks.
    """

    output: logging.Handler
    sinks: list[ForwardingSink] = field(default_factory=list)
    _closed: bool = False

    def get_logger(self, name: str) -> Any:
        return structlog.get_logger(name)

    @property
    def handlers(self) -> list[logging.Handler]:
        return [self.output, *self.sinks]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        root = logging.getLogger()
        for name in _SERVER_LOGGERS:
            logger = logging.getLogger(name)
            logger.handlers = []
            logger.propagate = True
        for handler in reversed(self.handlers):
            root.removeHandler(handler)
            handler.close()


def configure_logging(
    settings: Settings,
    *,
    sink_client: httpx.Client | None = None,
    monitor_client: httpx.Client | None = None,
) -> LoggingRuntime:
    """Configure structlog + stdlib logging for JSON output and attach the sinks.

    Raises :class:`SinkUnavailableError` when the indexing sink is configured but
    cannot be reached.
    """

    level = parse_level(settings.log_level)
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[
            *pre_chain,
            # Let ProcessorFormatter render JSON for stdlib log records too.
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    log_path = settings.log_file_path
    output: logging.Handler
    if log_path is not None:
        output = CompressingRotatingFileHandler(log_path)
    else:
        output = logging.StreamHandler(sys.stdout)
    output.setFormatter(formatter)

    runtime = LoggingRuntime(output=output)
    try:
        if settings.elasticsearch_url:
            indexer = ElasticsearchSink.connect(
                settings.elasticsearch_url,
                index_prefix=settings.log_index_prefix,
                client=sink_client,
                level=parse_level(settings.log_sink_level),
            )
            indexer.setFormatter(_sink_formatter(pre_chain, host=settings.log_sink_host))
            runtime.sinks.append(indexer)

        if settings.apm_server_url:
            monitor = MonitoringSink(monitor_client or httpx.Client(timeout=5.0), settings.apm_server_url)
            monitor.setFormatter(_sink_formatter(pre_chain, host=settings.log_sink_host))
            runtime.sinks.append(monitor)
    except Exception:
        for sink in runtime.sinks:
            sink.close()
        output.close()
        raise

    root = logging.getLogger()
    root.handlers = runtime.handlers
    root.setLevel(level)

    # Keep uvicorn's own loggers consistent with our handlers.
    for name in _SERVER_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers = runtime.handlers
        logger.propagate = False
        logger.setLevel(level)

    return runtime
