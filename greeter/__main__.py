from __future__ import annotations

import sys

from sqlalchemy.exc import SQLAlchemyError

from greeter.config import get_settings
from greeter.db.session import GuestStore
from greeter.lifecycle import LifecycleCoordinator, build_server
from greeter.main import create_app
from greeter.observability.logging import configure_logging
from greeter.observability.sinks import SinkUnavailableError


def main() -> int:
    settings = get_settings()
    try:
        runtime = configure_logging(settings)
    except SinkUnavailableError as exc:
        sys.stderr.write(f"greeter: {exc}\n")
        return 1

    log = runtime.get_logger("greeter")
    try:
        resources = []
        store = None
        if settings.persist_guests:
            try:
                store = GuestStore.open(settings.database_url)
            except SQLAlchemyError as exc:
                log.critical("failed to connect database", error=str(exc))
                return 1
            resources.append(store)

        try:
            app = create_app(settings, logger=log, store=store)
            server = build_server(app, settings)
        except Exception:
            for resource in reversed(resources):
                resource.close()
            raise

        coordinator = LifecycleCoordinator(server, logger=log, resources=resources)
        coordinator.install_signal_handlers()
        coordinator.start()
        coordinator.await_termination()
        return coordinator.shutdown()
    finally:
        # Closed last so the shutdown records still reach the sinks.
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
