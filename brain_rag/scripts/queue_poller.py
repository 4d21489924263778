from __future__ import annotations

import argparse
import time

from brain_rag.config import settings
from brain_rag.ingest import OUTCOME_COMPLETED, build_worker, drain_queue
from brain_rag.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Periodically drain due ingestion jobs from the job queue."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one pass and exit.",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=settings.worker_poll_seconds,
        help="Polling interval in seconds when not using --once.",
    )
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=settings.worker_max_jobs_per_pass,
        help="Maximum jobs processed per pass.",
    )
    args = parser.parse_args()

    if args.poll_seconds <= 0:
        raise SystemExit("--poll-seconds must be > 0")
    if args.max_jobs <= 0:
        raise SystemExit("--max-jobs must be > 0")

    queue, pipeline = build_worker()
    while True:
        try:
            outcomes = drain_queue(queue, pipeline, max_jobs=args.max_jobs)
            completed = sum(1 for outcome in outcomes if outcome.status == OUTCOME_COMPLETED)
            logger.info(
                "queue_poller.pass processed=%s completed=%s failed=%s",
                len(outcomes),
                completed,
                len(outcomes) - completed,
            )
        except Exception as exc:  # pragma: no cover - runtime hardening for service loop
            logger.exception("queue_poller.pass_failed error=%s", str(exc))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(args.poll_seconds)


if __name__ == "__main__":
    main()
