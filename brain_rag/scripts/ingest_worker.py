from __future__ import annotations

from redis import Redis
from rq import Queue, Worker

from brain_rag.config import settings
from brain_rag.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    connection = Redis.from_url(settings.redis_url)
    logger.info(
        "ingest_worker.start queue=%s redis=%s mode=%s",
        settings.ingest_queue_name,
        settings.redis_url,
        "development" if settings.development_mode else "live",
    )
    queue = Queue(settings.ingest_queue_name, connection=connection)
    worker = Worker([queue], connection=connection)
    worker.work()


if __name__ == "__main__":
    main()
