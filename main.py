"""Process entrypoint: ``python main.py`` or the ``hbs`` console script."""

from __future__ import annotations

import logging
import signal
from datetime import datetime, timezone
from threading import Event

from hbs.app import run
from hbs.errors import ConfigError
from hbs.logs import setup_logging
from hbs.settings import load_settings

log = logging.getLogger("hbs")


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging()
        log.error("Failed to load configuration: %s", e)
        return 1
    setup_logging(settings.log_level)

    stop = Event()

    def _shutdown(signum, frame) -> None:
        log.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    code = run(settings, stop)
    if code == 0:
        log.info("Exited gracefully at %s", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
