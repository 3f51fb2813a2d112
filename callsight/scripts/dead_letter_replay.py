from __future__ import annotations

import argparse
import time

from callsight.config import settings
from callsight.dead_letter import replay_retryable_dead_letter_jobs
from callsight.logging_utils import configure_logging, get_logger
from callsight.services import get_services


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Replay retryable failed process-call jobs on a schedule."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one replay pass and exit.",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=settings.dead_letter_replay_interval_s,
        help="Interval between replay passes when not using --once.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.dead_letter_replay_batch_size,
        help="Maximum failed jobs to scan per pass.",
    )
    args = parser.parse_args()

    if args.poll_seconds <= 0:
        raise SystemExit("--poll-seconds must be > 0")
    if not settings.dead_letter_auto_replay_enabled and not args.once:
        logger.info("dead_letter_replay.disabled")
        return

    services = get_services()
    while True:
        try:
            summary = replay_retryable_dead_letter_jobs(
                services.processing_queue,
                limit=args.limit,
                trigger="scheduled",
                audit=services.audit,
            )
            logger.info(
                "dead_letter_replay.pass scanned=%s replayed=%s skipped=%s",
                summary.scanned,
                summary.replayed,
                summary.skipped,
            )
        except Exception as exc:  # pragma: no cover - runtime hardening for service loop
            logger.exception("dead_letter_replay.pass_failed error=%s", str(exc))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(args.poll_seconds)


if __name__ == "__main__":
    main()
