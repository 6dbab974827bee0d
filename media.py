import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed

from werkzeug.utils import secure_filename

from config import (
    ALLOWED_MEDIA_TYPES, MAX_FILE_SIZE, TEMP_MAX_AGE,
    IMAGE_EXTENSIONS, VIDEO_EXTENSIONS, MEDIA_EXTENSIONS,
)
from errors import BlogError, ValidationError
from store import utcnow

logger = logging.getLogger(__name__)


class MediaFile:
    """An uploaded file held in memory: name, MIME type and bytes."""

    def __init__(self, filename, content_type, data=b'', size=None):
        self.filename = filename
        self.content_type = content_type
        self.data = data
        self.size = len(data) if size is None else size

    @classmethod
    def from_storage(cls, file_storage):
        """Build from a werkzeug ``FileStorage`` (``request.files``)."""
        data = file_storage.read()
        return cls(file_storage.filename, file_storage.mimetype, data)

    def __repr__(self):
        return f"MediaFile({self.filename!r}, {self.content_type!r}, size={self.size})"


def media_type_for(content_type):
    return 'image' if content_type and content_type.startswith('image/') else 'video'


def post_media_path(post_id, media_id):
    return f"posts/{post_id}/{media_id}"


def temp_prefix(user_id):
    return f"temp/{user_id}"


def temp_media_path(user_id, media_id):
    return f"{temp_prefix(user_id)}/{media_id}"


def _safe_name(filename):
    return secure_filename(filename or '') or 'file'


def stored_name(filename, content_type):
    """Filesystem-safe name whose extension matches the media type.

    ``secure_filename`` drops non-ASCII stems (``動画.mp4`` becomes ``mp4``)
    and some uploads carry no extension at all; the blob store reads the
    resource type back from the extension, so one is appended when missing.
    """
    name = _safe_name(filename)
    suffix = os.path.splitext(name)[1].lower()
    known = VIDEO_EXTENSIONS if media_type_for(content_type) == 'video' else IMAGE_EXTENSIONS
    if suffix not in known:
        name = name + MEDIA_EXTENSIONS.get(content_type, '')
    return name


def _content_type_for(item, header):
    content_type = (header or '').split(';')[0].strip().lower()
    if content_type in ALLOWED_MEDIA_TYPES:
        return content_type
    suffix = os.path.splitext(item['id'])[1].lower()
    for candidate, extension in MEDIA_EXTENSIONS.items():
        if extension == suffix:
            return candidate
    return 'image/jpeg' if item.get('type') == 'image' else 'video/mp4'


class MediaManager:
    """Uploads post media, moves it out of the temp area and sweeps stale temp uploads.

    Media uploaded before its post exists lives under ``temp/{user_id}/``;
    once the post is saved it is copied under ``posts/{post_id}/``.
    """

    def __init__(self, blobs, clock=utcnow, max_workers=None):
        self.blobs = blobs
        self.clock = clock
        self.max_workers = max_workers

    def validate(self, file):
        if file.size > MAX_FILE_SIZE:
            raise ValidationError(f"{file.filename}: File size exceeds 500MB limit", code='file_too_large')
        if file.content_type not in ALLOWED_MEDIA_TYPES:
            raise ValidationError(
                f"{file.filename}: File type not supported. Please upload images (JPEG, PNG, WebP, GIF) "
                "or videos (MP4, MKV, WebM, MOV, AVI)",
                code='unsupported_file_type',
            )

    def upload(self, file, user_id, post_id=None):
        self.validate(file)
        return self._store(file, user_id, post_id)

    def upload_many(self, files, user_id, post_id=None, on_progress=None):
        """Upload several files at once.

        Everything is validated before the first upload starts. Uploads run
        concurrently; ``on_progress(completed, total)`` fires after each one
        finishes. The first failure fails the whole batch. Results keep the
        order of ``files``.
        """
        files = list(files)
        for file in files:
            self.validate(file)
        if not files:
            return []

        total = len(files)
        results = [None] * total
        completed = 0
        with ThreadPoolExecutor(max_workers=self.max_workers or total) as executor:
            futures = {executor.submit(self._store, file, user_id, post_id): index
                       for index, file in enumerate(files)}
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
                    completed += 1
                    if on_progress:
                        on_progress(completed, total)
            except Exception as e:
                logger.error(f"Error uploading multiple files: {e}")
                for future in futures:
                    future.cancel()
                raise
        return results

    def validate_items(self, items):
        """Check temp MediaItems sent back by a client before anything is written.

        Only ``id`` and ``filename`` are trusted; the id must be a name this
        manager could have produced, so it cannot point outside the temp folder.
        """
        if not isinstance(items, (list, tuple)):
            raise ValidationError('Media must be a list of uploaded items', code='invalid_media_item')
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError('Media item must be an object', code='invalid_media_item')
            missing = [key for key in ('id', 'filename') if not item.get(key)]
            if missing:
                raise ValidationError(f"Media item is missing {', '.join(missing)}", code='invalid_media_item')
            if not isinstance(item['id'], str) or secure_filename(item['id']) != item['id']:
                raise ValidationError(f"Invalid media id {item['id']!r}", code='invalid_media_item')

    def move_to_post(self, items, user_id, post_id):
        """Copy temp media under the post's folder and delete the temp originals.

        Items are handled one at a time. There is no rename on the blob store,
        so each item is read back from ``temp/{user_id}/{id}``, uploaded again
        and then deleted. A failed read or upload stops the loop with earlier
        items already moved; a failed delete leaves the temp copy for
        ``cleanup_temp`` and the move carries on.
        """
        self.validate_items(items)

        moved = []
        for item in items:
            temp_path = temp_media_path(user_id, item['id'])
            data, header = self.blobs.read(temp_path)
            copy = MediaFile(item['filename'], _content_type_for(item, header), data)
            new_item = self._store(copy, user_id, post_id)
            moved.append(new_item)
            try:
                self.blobs.delete(temp_path)
            except BlogError as e:
                logger.warning(f"Moved {item['id']} to post {post_id} but could not delete the temp copy: {e}")
                continue
            logger.info(f"Moved {item['id']} from temp to post {post_id} as {new_item['id']}")
        return moved

    def delete_media(self, path):
        self.blobs.delete(path)

    def cleanup_temp(self, user_id, max_age=TEMP_MAX_AGE, now=None):
        """Delete temp uploads older than ``max_age``. Never raises; returns how many were deleted."""
        now = now or self.clock()
        deleted = 0
        try:
            paths = self.blobs.list_prefix(temp_prefix(user_id))
        except Exception as e:
            logger.error(f"Error cleaning up temp files for {user_id}: {e}")
            return 0

        for path in paths:
            try:
                metadata = self.blobs.get_metadata(path)
                if now - metadata['created_at'] > max_age:
                    self.blobs.delete(path)
                    deleted += 1
            except Exception as e:
                # The file might have been deleted already
                logger.warning(f"Could not check file metadata: {path}: {e}")
        if deleted:
            logger.info(f"Removed {deleted} stale temp uploads for {user_id}")
        return deleted

    def _store(self, file, user_id, post_id=None):
        if not post_id and not user_id:
            raise ValidationError('Temp uploads need a user id', code='missing_user')
        created_at = self.clock()
        media_id = f"{int(created_at.timestamp() * 1000)}-{stored_name(file.filename, file.content_type)}"
        path = post_media_path(post_id, media_id) if post_id else temp_media_path(user_id, media_id)
        url = self.blobs.put(path, file.data, file.content_type)
        return {
            'id': media_id,
            'url': url,
            'type': media_type_for(file.content_type),
            'filename': file.filename,
            'size': file.size,
            'created_at': created_at,
        }
