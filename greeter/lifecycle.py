"""Process lifecycle: start the listener, wait for a termination signal, drain, release, exit.

States only move forward::

    CREATED -> LISTENING -> DRAINING -> STOPPED

``STOPPED`` is terminal. Owned resources are released only once the listener
has stopped, in reverse order of acquisition.
"""

from __future__ import annotations

import enum
import signal
import threading
from collections.abc import Iterable
from typing import Any, Protocol

import uvicorn

from greeter.config import SHUTDOWN_GRACE_SECONDS, Settings


FORCE_EXIT_GRACE_SECONDS = 1.0
# uvicorn starts its own graceful-shutdown timer only after it notices should_exit.
DRAIN_MARGIN_SECONDS = 1.0
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleError(RuntimeError):
    pass


class LifecycleState(str, enum.Enum):
    CREATED = "created"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


_NEXT_STATE = {
    LifecycleState.CREATED: LifecycleState.LISTENING,
    LifecycleState.LISTENING: LifecycleState.DRAINING,
    LifecycleState.DRAINING: LifecycleState.STOPPED,
}


class Resource(Protocol):
    def close(self) -> None: ...


class Listener(Protocol):
    should_exit: bool
    force_exit: bool

    def run(self) -> None: ...


class ShutdownToken:
    """One-shot shutdown event. Only the first trigger counts."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._fired = False
        self.reason: str | None = None

    def trigger(self, reason: str) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
        self.reason = reason
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def build_server(app: Any, settings: Settings, *, timeout: float = SHUTDOWN_GRACE_SECONDS) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        timeout_keep_alive=int(settings.read_timeout),
        timeout_graceful_shutdown=int(timeout),
        lifespan="off",
        # Records go through the handlers installed by configure_logging.
        log_config=None,
        access_log=False,
    )
    return uvicorn.Server(config)


class LifecycleCoordinator:
    def __init__(
        self,
        server: Listener,
        *,
        logger: Any,
        resources: Iterable[Resource] = (),
        timeout: float = SHUTDOWN_GRACE_SECONDS,
        token: ShutdownToken | None = None,
    ) -> None:
        self.server = server
        self.logger = logger
        self.resources = list(resources)
        self.timeout = timeout
        self.token = token or ShutdownToken()
        self.state = LifecycleState.CREATED
        self.listener_error: BaseException | None = None
        self._thread: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}

    def _transition(self, target: LifecycleState) -> None:
        if _NEXT_STATE.get(self.state) is not target:
            raise LifecycleError(f"cannot move from {self.state.value} to {target.value}")
        self.logger.debug("lifecycle.transition", from_state=self.state.value, to_state=target.value)
        self.state = target

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to the shutdown token. Must run on the main thread."""

        for sig in TERMINATION_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: Any) -> None:
        self.token.trigger(signal.Signals(signum).name)

    def start(self) -> None:
        self._transition(LifecycleState.LISTENING)
        self.logger.info("Starting Server")
        self._thread = threading.Thread(target=self._serve, name="listener", daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        try:
            self.server.run()
        except (Exception, SystemExit) as exc:
            # uvicorn reports a failed bind with sys.exit(1).
            self.listener_error = exc

        if self.token.is_set():
            return

        if self.listener_error is None:
            self.listener_error = LifecycleError("listener stopped unexpectedly")
        self.logger.error("listener.failed", error=repr(self.listener_error))
        self.token.trigger("listener_failed")

    def await_termination(self) -> str | None:
        """Block until a termination signal (or a listener failure) fires the token."""

        # Poll so signal handlers get to run on the main thread.
        while not self.token.wait(timeout=0.5):
            pass
        self.logger.info("shutdown.requested", reason=self.token.reason)
        return self.token.reason

    def shutdown(self) -> int:
        """Drain the listener, release owned resources and return the exit status."""

        self._transition(LifecycleState.DRAINING)
        self.server.should_exit = True

        abandoned = False
        if self._thread is not None:
            self._thread.join(self.timeout + DRAIN_MARGIN_SECONDS)
            if self._thread.is_alive():
                self.logger.error("server.drain_timeout", timeout_s=self.timeout)
                self.server.force_exit = True
                self._thread.join(FORCE_EXIT_GRACE_SECONDS)
                abandoned = self._thread.is_alive()
                if abandoned:
                    self.logger.error("server.abandoned")

        self._transition(LifecycleState.STOPPED)
        self._release_resources()
        self.restore_signal_handlers()

        self.logger.info("Shutting down")
        if abandoned or self.listener_error is not None:
            return 1
        return 0

    def _release_resources(self) -> None:
        for resource in reversed(self.resources):
            try:
                resource.close()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("resource.close_failed", resource=type(resource).__name__, error=str(exc))
