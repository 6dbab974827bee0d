#!/usr/bin/env python3
"""
RQ worker for the blog's background jobs (temp upload sweeps).
Run it next to the web app; jobs enqueued by main.py are picked up here.
"""

import logging
import os

import dotenv
import redis
from rq import Worker, Queue

dotenv.load_dotenv(override=True)

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')
logger = logging.getLogger('worker')

queues = [name.strip() for name in os.getenv('RQ_QUEUES', 'default').split(',') if name.strip()]

redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
if not redis_url.startswith(('redis://', 'rediss://')):
    redis_url = f'redis://{redis_url}'


def main():
    conn = redis.from_url(redis_url)
    try:
        conn.ping()
    except redis.exceptions.ConnectionError as e:
        logger.error(f"Redis unreachable at {redis_url}, worker not started: {e}")
        return 1
    logger.info(f"Worker listening on {', '.join(queues)}")
    worker = Worker([Queue(name, connection=conn) for name in queues], connection=conn)
    worker.work()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
