from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import ConfigError, load_config
from .observability import configure_logging
from .runner import Runner
from .version import AGENT_VERSION


log = logging.getLogger("traffic_agent.cli")


def install_signal_handlers(stop: threading.Event) -> None:
    def _handle(signum: int, _frame: object) -> None:
        log.info("received %s; shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: Optional[Sequence[str]] = None) -> int:
    # Load working-directory .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    try:
        config = load_config(argv)
    except ConfigError as exc:
        raise SystemExit(f"[traffic-agent] config error: {exc}") from exc

    configure_logging(
        level=config.log_level,
        log_format=config.log_format,
        enabled=config.log_enabled,
        agent_id=config.agent_id,
    )
    log.info("traffic-agent %s starting %s", AGENT_VERSION, config.describe())

    stop = threading.Event()
    install_signal_handlers(stop)

    Runner(config).run(stop)
    log.info("traffic-agent stopped")
    return 0
