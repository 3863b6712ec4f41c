#!/usr/bin/env python3
"""
Notification worker and scheduler entry points.

Usage:
    python -m notification.worker work
    python -m notification.worker work --burst
    python -m notification.worker sweep-retries
    python -m notification.worker send-digests --frequency daily
    python -m notification.worker cleanup-deliveries
    python -m notification.worker init-db
"""

import sys
import argparse
import logging
from typing import List, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Worker

from core.app_context import CONFIG_PATH_ENV, get_app_context, set_config_path
from database.init_db import init_db
from notification.service import QUEUE_NAME

logger = logging.getLogger(__name__)


def start_worker(redis_url: str, burst: bool = False, queues: Optional[List[str]] = None):
    """Start the RQ worker."""
    if queues is None:
        queues = [QUEUE_NAME]

    logger.info("Starting RQ Worker")
    logger.info(f"Queues: {', '.join(queues)}")
    logger.info(f"Burst mode: {burst}")

    try:
        redis_conn = Redis.from_url(redis_url)
        redis_conn.ping()
        logger.info("Connected to Redis")

        worker = Worker(queues, connection=redis_conn)

        if burst:
            logger.info("Running in burst mode...")
            worker.work(burst=True)
        else:
            logger.info("Worker started. Press Ctrl+C to stop.")
            worker.work()

    except KeyboardInterrupt:
        logger.info("Worker stopped")
    except RedisError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Mention alert notification worker')
    parser.add_argument('--config', help=f'Path to config.yaml (default: ${CONFIG_PATH_ENV} or config.yaml)')
    parser.add_argument('--verbose', action='store_true')

    sub = parser.add_subparsers(dest='command', required=True)

    work = sub.add_parser('work', help='Process queued dispatches and deliveries')
    work.add_argument('--burst', action='store_true', help='Process all and exit')
    work.add_argument('--queues', nargs='+', default=[QUEUE_NAME])

    sub.add_parser('sweep-retries', help='Re-attempt webhook deliveries that are due')

    digests = sub.add_parser('send-digests', help='Dispatch all digest alerts of a frequency')
    digests.add_argument('--frequency', required=True, choices=['daily', 'weekly', 'monthly'])

    sub.add_parser('cleanup-deliveries', help='Delete old completed webhook deliveries')

    sub.add_parser('init-db', help='Create missing tables')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.config:
        # RQ tasks run in forked work horses and look the path up again
        set_config_path(args.config)
    ctx = get_app_context()
    service = ctx.notification_service

    if args.command == 'work':
        start_worker(ctx.config.notifications.redis_url or 'redis://localhost:6379/0',
                     burst=args.burst, queues=args.queues)
    elif args.command == 'sweep-retries':
        count = service.sweep_webhook_retries()
        logger.info(f"Re-attempted {count} webhook deliveries")
    elif args.command == 'send-digests':
        dispatched = service.send_digests(args.frequency)
        logger.info(f"Dispatched {len(dispatched)} {args.frequency} digest alert(s)")
    elif args.command == 'cleanup-deliveries':
        deleted = service.cleanup_deliveries()
        logger.info(f"Deleted {deleted} webhook deliveries")
    elif args.command == 'init-db':
        init_db()

    return 0


if __name__ == '__main__':
    sys.exit(main())
