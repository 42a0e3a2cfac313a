"""
Process plumbing shared by the worker entry points.

- `setup_signals`: SIGINT/SIGTERM flip an asyncio.Event for graceful shutdown.
- `bootstrap`: load `.env`, configure the ``postwatch`` logger, start metrics.
- `run_service`: run the worker coroutine; unreachable infrastructure is fatal.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Coroutine, Optional

from aiokafka.errors import KafkaConnectionError
from dotenv import load_dotenv
from redis.exceptions import ConnectionError as RedisConnectionError

from core.config.config import WorkerCfg, get_worker_cfg, load_or_exit
from core.logging.logger import get_logger
from core.metrics import start_metrics_server

log = logging.getLogger("postwatch.core.runtime")

STARTUP_ERRORS = (KafkaConnectionError, RedisConnectionError, OSError)


def setup_signals(loop: asyncio.AbstractEventLoop, log: logging.Logger) -> asyncio.Event:
    """Install SIGINT/SIGTERM handlers that flip an asyncio.Event for graceful shutdown."""
    stop = asyncio.Event()

    def on_signal(sig: signal.Signals) -> None:
        """Signal handler that logs and triggers shutdown."""
        log.info("received signal %s, shutting down…", getattr(sig, "name", str(sig)))
        stop.set()

    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, on_signal, s)
        except NotImplementedError:
            # Windows event loops: fall back to a synchronous handler.
            signal.signal(s, lambda sig, frame: loop.call_soon_threadsafe(stop.set))

    return stop


def bootstrap(log_dir: Optional[str] = None, metrics: bool = True) -> WorkerCfg:
    """Load `.env`, validate worker settings, configure logging and the metrics endpoint."""
    load_dotenv()
    cfg = load_or_exit(get_worker_cfg)
    get_logger("postwatch", log_dir=log_dir, json_logs=cfg.log_json)
    if metrics:
        start_metrics_server(cfg.metrics_port)
        log.info("metrics exposed on :%d", cfg.metrics_port)
    return cfg


def run_service(main: Coroutine[Any, Any, None]) -> None:
    """Run a worker to completion; exit non-zero if the queue or bus is unreachable."""
    try:
        asyncio.run(main)
    except STARTUP_ERRORS as e:
        log.critical("infrastructure unreachable: %s", e)
        raise SystemExit(1) from e
