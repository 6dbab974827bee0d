import unittest

from auth import Identity
from comments import CommentService
from config import COMMENTS_COLLECTION
from errors import NotFoundError, ValidationError
from fakes import FakeDocumentStore, StepClock
from posts import PostService

AUTHOR = Identity('owner-1', 'owner@example.com', 'Owner')


class CommentServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.store = FakeDocumentStore()
        self.clock = StepClock()
        self.comments = CommentService(self.store, clock=self.clock)
        self.post_id = PostService(self.store, clock=self.clock).create_post({'title': 'T', 'content': 'B'}, AUTHOR)

    def test_add_and_list_newest_first(self):
        first = self.comments.add_comment(self.post_id, ' First ', AUTHOR)
        second = self.comments.add_comment(self.post_id, 'Second', AUTHOR)

        comments = self.comments.get_comments(self.post_id)

        self.assertEqual([c['id'] for c in comments], [second, first])
        self.assertEqual(comments[1]['content'], 'First')
        self.assertEqual(comments[0]['author_name'], 'Owner')

    def test_empty_comment_rejected(self):
        for content in ('', '   ', None):
            with self.subTest(content=content):
                with self.assertRaises(ValidationError):
                    self.comments.add_comment(self.post_id, content, AUTHOR)

    def test_comment_on_missing_post(self):
        with self.assertRaises(NotFoundError):
            self.comments.add_comment('missing', 'Hello', AUTHOR)

    def test_count_cache_follows_writes(self):
        self.assertEqual(self.comments.count_comments(self.post_id), 0)
        comment_id = self.comments.add_comment(self.post_id, 'Hello', AUTHOR)
        self.assertEqual(self.comments.count_comments(self.post_id), 1)

        # Served from cache until the next write
        self.store.failures.add(('query', COMMENTS_COLLECTION))
        self.assertEqual(self.comments.count_comments(self.post_id), 1)
        self.store.failures.clear()

        self.comments.delete_comment(comment_id)
        self.assertEqual(self.comments.count_comments(self.post_id), 0)

    def test_update_comment(self):
        comment_id = self.comments.add_comment(self.post_id, 'Helo', AUTHOR)
        comment = self.comments.update_comment(comment_id, 'Hello')
        self.assertEqual(comment['content'], 'Hello')
        self.assertGreater(comment['updated_at'], comment['created_at'])

    def test_missing_comment(self):
        with self.assertRaises(NotFoundError):
            self.comments.update_comment('missing', 'Hello')
        with self.assertRaises(NotFoundError):
            self.comments.delete_comment('missing')
        with self.assertRaises(NotFoundError):
            self.comments.get_comment('missing')

    def test_delete_for_post(self):
        for i in range(3):
            self.comments.add_comment(self.post_id, f"Comment {i}", AUTHOR)
        self.assertEqual(self.comments.delete_for_post(self.post_id), 3)
        self.assertEqual(self.comments.get_comments(self.post_id), [])


if __name__ == '__main__':
    unittest.main()
