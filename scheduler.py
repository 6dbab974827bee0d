#!/usr/bin/env python3
"""
Long-running scheduler for blog maintenance.
Sweeps the blog owner's stale temp uploads once a day by running
cleanup_temp_uploads.py in a child process.
"""

import logging
import os
import subprocess
import sys
import time

import schedule
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')
logger = logging.getLogger('scheduler')

CLEANUP_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'cleanup_temp_uploads.py')
CLEANUP_AT = os.environ.get('TEMP_CLEANUP_AT', '03:00')


def run_cleanup_temp_uploads(user_id):
    command = [sys.executable, CLEANUP_SCRIPT, '--user-id', user_id]
    logger.info(f"Running temp upload sweep for {user_id}")
    try:
        subprocess.run(command, check=True)
    except subprocess.CalledProcessError as e:
        logger.error(f"Temp upload sweep exited with status {e.returncode}")
    except OSError as e:
        logger.error(f"Could not start {CLEANUP_SCRIPT}: {e}")


def main():
    user_id = os.environ.get('TEMP_CLEANUP_USER_ID')
    if not user_id:
        logger.error("TEMP_CLEANUP_USER_ID is not set; nothing to schedule")
        return 1

    schedule.every().day.at(CLEANUP_AT).do(run_cleanup_temp_uploads, user_id)
    logger.info(f"Scheduler started, temp upload sweep daily at {CLEANUP_AT}")
    while True:
        schedule.run_pending()
        time.sleep(60)


if __name__ == '__main__':
    raise SystemExit(main())
