"""Entry point: ``postwatch-projector``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

from core.config.config import get_database_cfg, get_kafka_cfg, load_or_exit
from core.kafka_consumer import EventBusConsumer
from core.kafka_producer import EventBusProducer
from core.runtime import bootstrap, run_service, setup_signals
from services.projector.worker import Projector
from storage.read_store import ReadStore

log = logging.getLogger("postwatch.services.projector.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="postwatch-projector", description="Read-store projector")
    p.add_argument("--log-dir", default=None, help="Also write rotating log files here")
    p.add_argument("--no-metrics", action="store_true", help="Do not start the Prometheus endpoint")
    p.add_argument("--init-db", action="store_true", help="Create the read-store tables before consuming")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    cfg = bootstrap(args.log_dir, metrics=not args.no_metrics)
    kafka_cfg = load_or_exit(get_kafka_cfg)
    store = ReadStore.from_config(load_or_exit(get_database_cfg))
    stop = setup_signals(asyncio.get_running_loop(), log)

    try:
        if args.init_db:
            await store.init_db()
        async with EventBusProducer.from_config(kafka_cfg) as bus, EventBusConsumer(
            kafka_cfg.bootstrap,
            kafka_cfg.topic_events,
            kafka_cfg.consumer_group,
            client_id=f"{kafka_cfg.client_id}-projector",
        ) as consumer:
            projector = Projector(
                consumer,
                store,
                bus,
                concurrency=cfg.projector_concurrency,
                not_found_retries=cfg.not_found_retries,
                not_found_delay=cfg.not_found_delay,
                public_base_url=cfg.public_base_url,
            )
            await projector.run(stop)
    finally:
        await store.close()


def main(argv: Optional[List[str]] = None) -> None:
    run_service(_run(parse_args(argv)))


if __name__ == "__main__":
    main()
