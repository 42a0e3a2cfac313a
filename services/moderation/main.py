"""Entry point: ``postwatch-moderation``.

Drains the validation queue, scores each comment or image, and appends
Validated/Refused events. SIGINT/SIGTERM stop receiving and let in-flight
messages settle.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import AsyncExitStack
from typing import List, Optional

from core.config.config import (
    get_content_safety_cfg,
    get_database_cfg,
    get_kafka_cfg,
    get_redis_cfg,
    get_s3_cfg,
    load_or_exit,
)
from core.kafka_producer import EventBusProducer
from core.runtime import bootstrap, run_service, setup_signals
from core.task_queue import TaskQueue
from packages.common.storage import BlobStore
from services.moderation.safety import ContentSafetyClient
from services.moderation.worker import ModerationWorker
from storage.read_store import ReadStore

log = logging.getLogger("postwatch.services.moderation.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="postwatch-moderation", description="Safety-analysis worker")
    p.add_argument("--log-dir", default=None, help="Also write rotating log files here")
    p.add_argument("--no-metrics", action="store_true", help="Do not start the Prometheus endpoint")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    cfg = bootstrap(args.log_dir, metrics=not args.no_metrics)
    redis_cfg = load_or_exit(get_redis_cfg)
    kafka_cfg = load_or_exit(get_kafka_cfg)
    safety_cfg = load_or_exit(get_content_safety_cfg)
    blobs = BlobStore.from_config(load_or_exit(get_s3_cfg), cfg.public_base_url)
    stop = setup_signals(asyncio.get_running_loop(), log)

    async with AsyncExitStack() as stack:
        queue = await stack.enter_async_context(TaskQueue.from_config(redis_cfg))
        bus = await stack.enter_async_context(EventBusProducer.from_config(kafka_cfg))
        analyzer = await stack.enter_async_context(ContentSafetyClient.from_config(safety_cfg))
        read_store = None
        if cfg.direct_verdict_write:
            read_store = ReadStore.from_config(load_or_exit(get_database_cfg))
            stack.push_async_callback(read_store.close)

        worker = ModerationWorker(
            queue,
            redis_cfg.validation_queue,
            analyzer,
            blobs,
            bus,
            read_store,
            concurrency=cfg.max_concurrent_calls,
            slots=cfg.moderation_slots,
            dead_letter_after=cfg.dead_letter_after,
            receive_wait=cfg.receive_wait,
            image_threshold=safety_cfg.image_severity_threshold,
            not_found_retries=cfg.not_found_retries,
            not_found_delay=cfg.not_found_delay,
        )
        await worker.run(stop)


def main(argv: Optional[List[str]] = None) -> None:
    run_service(_run(parse_args(argv)))


if __name__ == "__main__":
    main()
