from __future__ import annotations

from redis import Redis
from rq.worker_pool import WorkerPool

from callsight.config import settings
from callsight.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    connection = Redis.from_url(settings.redis_url)
    queues = [settings.processing_queue_name, settings.transcript_fetch_queue_name]
    logger.info(
        "worker.start queues=%s workers=%s redis=%s",
        ",".join(queues),
        settings.worker_concurrency,
        settings.redis_url,
    )
    pool = WorkerPool(
        queues,
        connection=connection,
        num_workers=max(1, settings.worker_concurrency),
    )
    pool.start()


if __name__ == "__main__":
    main()
