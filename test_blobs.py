import datetime
import unittest
from unittest.mock import MagicMock, patch

import cloudinary.exceptions

from blobs import CloudinaryBlobStore, resource_type_for_path
from errors import BackendError, NotFoundError


class FakeCloudinary:
    """Cloudinary resources keyed on (public_id, resource_type), like the real service."""

    def __init__(self):
        self.resources = {}
        self.destroy_calls = []

    def store(self, public_id, resource_type, fmt):
        self.resources[(public_id, resource_type)] = {
            'public_id': public_id,
            'resource_type': resource_type,
            'format': fmt,
            'bytes': 3,
            'created_at': '2024-05-01T10:00:00Z',
            'secure_url': f"https://res.cloudinary.com/demo/{resource_type}/upload/{public_id}",
        }

    def destroy(self, public_id, resource_type='image', invalidate=False):
        self.destroy_calls.append((public_id, resource_type))
        if self.resources.pop((public_id, resource_type), None) is None:
            return {'result': 'not found'}
        return {'result': 'ok'}

    def resource(self, public_id, resource_type='image'):
        try:
            return dict(self.resources[(public_id, resource_type)])
        except KeyError:
            raise cloudinary.exceptions.NotFound(f"Resource not found - {public_id}")


class CloudinaryBlobStoreTestCase(unittest.TestCase):
    """Tests for the Cloudinary adapter's handling of image and video resource types."""

    def setUp(self):
        self.cloud = FakeCloudinary()
        for target, fake in (('cloudinary.uploader.destroy', self.cloud.destroy),
                             ('cloudinary.api.resource', self.cloud.resource)):
            patcher = patch(target, side_effect=fake)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.blobs = CloudinaryBlobStore()

    def test_resource_type_for_path(self):
        self.assertEqual(resource_type_for_path('temp/u1/1-mp4.mp4'), 'video')
        self.assertEqual(resource_type_for_path('posts/p1/1-clip.MOV'), 'video')
        self.assertEqual(resource_type_for_path('posts/p1/1-a.png'), 'image')
        self.assertEqual(resource_type_for_path('posts/p1/1-clip'), 'image')

    def test_delete_video_uses_video_resource_type(self):
        self.cloud.store('temp/u1/1-mp4.mp4', 'video', 'mp4')

        self.blobs.delete('temp/u1/1-mp4.mp4')

        self.assertEqual(self.cloud.resources, {})
        self.assertEqual(self.cloud.destroy_calls, [('temp/u1/1-mp4.mp4', 'video')])

    def test_delete_falls_back_to_other_resource_type(self):
        # Uploaded before names always carried an extension
        self.cloud.store('temp/u1/1-clip', 'video', 'mp4')

        self.blobs.delete('temp/u1/1-clip')

        self.assertEqual(self.cloud.resources, {})
        self.assertEqual(self.cloud.destroy_calls, [('temp/u1/1-clip', 'image'), ('temp/u1/1-clip', 'video')])

    def test_delete_missing_blob_is_quiet(self):
        self.blobs.delete('temp/u1/1-gone.png')
        self.assertEqual(len(self.cloud.destroy_calls), 2)

    def test_delete_error_result_raises(self):
        with patch('cloudinary.uploader.destroy', return_value={'result': 'error'}):
            with self.assertRaises(BackendError):
                self.blobs.delete('temp/u1/1-a.png')

    def test_metadata_finds_video_without_extension(self):
        self.cloud.store('temp/u1/1-clip', 'video', 'mp4')

        metadata = self.blobs.get_metadata('temp/u1/1-clip')

        self.assertEqual(metadata['content_type'], 'video/mp4')
        self.assertEqual(metadata['created_at'], datetime.datetime(2024, 5, 1, 10, tzinfo=datetime.timezone.utc))

    def test_metadata_missing_blob(self):
        with self.assertRaises(NotFoundError):
            self.blobs.get_metadata('temp/u1/1-gone.mp4')

    @patch('blobs.requests.get')
    def test_read_downloads_the_stored_resource(self, mock_get):
        self.cloud.store('temp/u1/1-a.png', 'image', 'png')
        response = MagicMock()
        response.content = b'png'
        response.headers = {'Content-Type': 'image/png'}
        mock_get.return_value = response

        data, content_type = self.blobs.read('temp/u1/1-a.png')

        self.assertEqual((data, content_type), (b'png', 'image/png'))
        mock_get.assert_called_once_with('https://res.cloudinary.com/demo/image/upload/temp/u1/1-a.png')

    @patch('blobs.requests.get')
    def test_read_missing_blob_never_downloads(self, mock_get):
        with self.assertRaises(NotFoundError):
            self.blobs.read('temp/u1/1-gone.png')
        mock_get.assert_not_called()

    @patch('cloudinary.uploader.upload')
    def test_put_sends_video_resource_type(self, mock_upload):
        mock_upload.return_value = {'secure_url': 'https://res.cloudinary.com/demo/video/upload/p.mp4'}

        url = self.blobs.put('posts/p1/1-clip.mp4', b'mp4', 'video/mp4')

        self.assertEqual(url, 'https://res.cloudinary.com/demo/video/upload/p.mp4')
        self.assertEqual(mock_upload.call_args.kwargs['resource_type'], 'video')
        self.assertEqual(mock_upload.call_args.kwargs['public_id'], 'posts/p1/1-clip.mp4')


if __name__ == '__main__':
    unittest.main()
