"""Entry point: ``postwatch-resizer``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

from core.config.config import get_kafka_cfg, get_redis_cfg, get_s3_cfg, load_or_exit
from core.kafka_producer import EventBusProducer
from core.runtime import bootstrap, run_service, setup_signals
from core.task_queue import TaskQueue
from packages.common.storage import BlobStore
from services.resizer.worker import ResizeWorker

log = logging.getLogger("postwatch.services.resizer.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="postwatch-resizer", description="Image resize worker")
    p.add_argument("--log-dir", default=None, help="Also write rotating log files here")
    p.add_argument("--no-metrics", action="store_true", help="Do not start the Prometheus endpoint")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    cfg = bootstrap(args.log_dir, metrics=not args.no_metrics)
    redis_cfg = load_or_exit(get_redis_cfg)
    kafka_cfg = load_or_exit(get_kafka_cfg)
    blobs = BlobStore.from_config(load_or_exit(get_s3_cfg), cfg.public_base_url)
    stop = setup_signals(asyncio.get_running_loop(), log)

    async with TaskQueue.from_config(redis_cfg) as queue, EventBusProducer.from_config(kafka_cfg) as bus:
        worker = ResizeWorker(
            queue,
            redis_cfg.resize_queue,
            blobs,
            bus,
            concurrency=cfg.max_concurrent_calls,
            slots=cfg.resize_slots,
            dead_letter_after=cfg.dead_letter_after,
            receive_wait=cfg.receive_wait,
            width=cfg.resize_width,
            min_latency=cfg.resize_min_latency,
        )
        await worker.run(stop)


def main(argv: Optional[List[str]] = None) -> None:
    run_service(_run(parse_args(argv)))


if __name__ == "__main__":
    main()
