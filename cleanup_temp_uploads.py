#!/usr/bin/env python3
"""
Cleanup script for abandoned temp uploads.
Media uploaded while a post is still being written lives under temp/<user_id>/
until the post is saved. This deletes whatever was left there for longer than
the allowed age.
"""

import argparse
import datetime
import os
import sys

# Add the parent directory to the path so we can import the blog modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import cloudinary

from config import get_env_variable, TEMP_MAX_AGE
from blobs import CloudinaryBlobStore
from media import MediaManager


def cleanup_temp_uploads(user_id, max_age=TEMP_MAX_AGE):
    cloudinary.config(
        cloud_name=get_env_variable('CLOUDINARY_CLOUD_NAME'),
        api_key=get_env_variable('CLOUDINARY_API_KEY'),
        api_secret=get_env_variable('CLOUDINARY_API_SECRET'),
        secure=True,
    )
    manager = MediaManager(CloudinaryBlobStore())
    deleted = manager.cleanup_temp(user_id, max_age=max_age)
    print(f"Cleanup completed at {datetime.datetime.now(datetime.timezone.utc).isoformat()}")
    print(f"  - Temp uploads deleted for {user_id}: {deleted}")
    return deleted


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Delete stale temp uploads for a user.')
    parser.add_argument('--user-id', default=os.environ.get('TEMP_CLEANUP_USER_ID'),
                        help='Owner of the temp uploads (defaults to TEMP_CLEANUP_USER_ID)')
    parser.add_argument('--max-age-hours', type=float, default=TEMP_MAX_AGE.total_seconds() / 3600,
                        help='Delete uploads older than this many hours (default 24)')
    args = parser.parse_args()

    if not args.user_id:
        parser.error('--user-id is required when TEMP_CLEANUP_USER_ID is not set')

    cleanup_temp_uploads(args.user_id, datetime.timedelta(hours=args.max_age_hours))
