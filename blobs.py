import datetime
import io
import logging
import os

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils
import requests

from config import VIDEO_EXTENSIONS
from errors import BackendError, NotFoundError

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ('image', 'video')


def resource_type_for(content_type):
    """Cloudinary keeps images and videos apart; everything that is not video is stored as an image."""
    if content_type and content_type.startswith('video/'):
        return 'video'
    return 'image'


def resource_type_for_path(path):
    if os.path.splitext(path)[1].lower() in VIDEO_EXTENSIONS:
        return 'video'
    return 'image'


def _other_resource_type(resource_type):
    return 'image' if resource_type == 'video' else 'video'


def parse_timestamp(value):
    """Parse Cloudinary's ISO timestamps (``2024-05-01T10:00:00Z``) into aware datetimes."""
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        parsed = datetime.datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class CloudinaryBlobStore:
    """Blob storage on Cloudinary. Paths are used verbatim as public ids.

    Cloudinary needs the resource type (image or video) on every call. It is
    read from the path's extension; when that misses, the other type is tried
    before an object counts as absent.
    """

    def put(self, path, data, content_type):
        try:
            upload_result = cloudinary.uploader.upload(
                io.BytesIO(data),
                public_id=path,
                resource_type=resource_type_for(content_type),
                overwrite=True,
            )
        except cloudinary.exceptions.Error as e:
            logger.error(f"Cloudinary upload failed for {path}: {e}")
            raise BackendError(f"Blob upload failed: {e}", code='blob_store') from e
        url = upload_result.get('secure_url') or upload_result.get('url')
        if not url:
            raise BackendError(f"Blob store returned no URL for {path}", code='blob_store')
        return url

    def _destroy(self, path, resource_type):
        try:
            result = cloudinary.uploader.destroy(path, resource_type=resource_type, invalidate=True)
        except cloudinary.exceptions.Error as e:
            logger.error(f"Cloudinary delete failed for {path}: {e}")
            raise BackendError(f"Blob delete failed: {e}", code='blob_store') from e
        outcome = result.get('result')
        if outcome not in ('ok', 'not found'):
            raise BackendError(f"Blob delete for {path} returned {outcome}", code='blob_store')
        return outcome == 'ok'

    def delete(self, path):
        resource_type = resource_type_for_path(path)
        if self._destroy(path, resource_type):
            return
        if self._destroy(path, _other_resource_type(resource_type)):
            logger.warning(f"Blob {path} was stored as {_other_resource_type(resource_type)}, not {resource_type}")
            return
        logger.debug(f"Blob {path} was already gone")

    def list_prefix(self, prefix):
        """Return every stored path under ``prefix`` (treated as a folder)."""
        if not prefix.endswith('/'):
            prefix = prefix + '/'
        paths = []
        for resource_type in RESOURCE_TYPES:
            next_cursor = None
            while True:
                params = {'type': 'upload', 'prefix': prefix, 'resource_type': resource_type, 'max_results': 500}
                if next_cursor:
                    params['next_cursor'] = next_cursor
                try:
                    result = cloudinary.api.resources(**params)
                except cloudinary.exceptions.Error as e:
                    logger.error(f"Cloudinary listing failed for {prefix}: {e}")
                    raise BackendError(f"Blob listing failed: {e}", code='blob_store') from e
                paths.extend(r['public_id'] for r in result.get('resources', []))
                next_cursor = result.get('next_cursor')
                if not next_cursor:
                    break
        return paths

    def _resource(self, path):
        resource_type = resource_type_for_path(path)
        for candidate in (resource_type, _other_resource_type(resource_type)):
            try:
                return cloudinary.api.resource(path, resource_type=candidate)
            except cloudinary.exceptions.NotFound:
                continue
            except cloudinary.exceptions.Error as e:
                raise BackendError(f"Blob metadata lookup failed: {e}", code='blob_store') from e
        raise NotFoundError(f"Blob {path} not found", code='blob_not_found')

    def get_metadata(self, path):
        resource = self._resource(path)
        return {
            'created_at': parse_timestamp(resource['created_at']),
            'size': resource.get('bytes', 0),
            'content_type': f"{resource.get('resource_type', 'image')}/{resource.get('format', '')}".rstrip('/'),
        }

    def read(self, path):
        """Download a stored object by path. Returns ``(bytes, content_type)``.

        The URL is built from the path, so only objects in this account are read.
        """
        resource = self._resource(path)
        url = resource.get('secure_url') or cloudinary.utils.cloudinary_url(
            path, resource_type=resource.get('resource_type', resource_type_for_path(path)), secure=True
        )[0]
        try:
            response = requests.get(url)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to download {path}: {e}")
            raise BackendError(f"Blob download failed: {e}", code='blob_store') from e
        return response.content, response.headers.get('Content-Type')
