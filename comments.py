import logging

from cachetools import TTLCache

from config import COMMENTS_COLLECTION, POSTS_COLLECTION
from errors import BackendError, NotFoundError, ValidationError
from store import utcnow

logger = logging.getLogger(__name__)


def _clean_content(content):
    if not isinstance(content, str) or not content.strip():
        raise ValidationError('Comment cannot be empty', code='empty_comment')
    return content.strip()


class CommentService:
    def __init__(self, store, clock=utcnow, cache_ttl=300):
        self.store = store
        self.clock = clock
        # Comment counts shown in post listings, cleared on every write
        self.count_cache = TTLCache(maxsize=512, ttl=cache_ttl)

    def add_comment(self, post_id, content, author):
        content = _clean_content(content)
        if self.store.get(POSTS_COLLECTION, post_id) is None:
            raise NotFoundError(f"Post {post_id} not found", code='post_not_found')
        now = self.clock()
        comment = {
            'post_id': post_id,
            'content': content,
            'author_id': author.uid,
            'author_name': author.display_name,
            'author_email': author.email,
            'created_at': now,
            'updated_at': now,
        }
        comment_id = self.store.insert(COMMENTS_COLLECTION, comment)
        self.count_cache.clear()
        logger.info(f"Comment {comment_id} added to post {post_id}")
        return comment_id

    def get_comment(self, comment_id):
        comment = self.store.get(COMMENTS_COLLECTION, comment_id)
        if comment is None:
            raise NotFoundError(f"Comment {comment_id} not found", code='comment_not_found')
        return comment

    def get_comments(self, post_id):
        """Comments for a post, newest first."""
        comments = self.store.query(COMMENTS_COLLECTION, [('post_id', '==', post_id)])
        return sorted(comments, key=lambda c: c['created_at'], reverse=True)

    def update_comment(self, comment_id, content):
        content = _clean_content(content)
        if not self.store.update(COMMENTS_COLLECTION, comment_id, {'content': content, 'updated_at': self.clock()}):
            raise NotFoundError(f"Comment {comment_id} not found", code='comment_not_found')
        self.count_cache.clear()
        return self.get_comment(comment_id)

    def delete_comment(self, comment_id):
        if not self.store.delete(COMMENTS_COLLECTION, comment_id):
            raise NotFoundError(f"Comment {comment_id} not found", code='comment_not_found')
        self.count_cache.clear()

    def delete_for_post(self, post_id):
        """Best-effort removal of every comment on a post. Returns how many were deleted."""
        deleted = 0
        try:
            comments = self.store.query(COMMENTS_COLLECTION, [('post_id', '==', post_id)])
        except BackendError as e:
            logger.warning(f"Could not list comments of post {post_id} for deletion: {e}")
            return 0
        for comment in comments:
            try:
                self.store.delete(COMMENTS_COLLECTION, comment['id'])
                deleted += 1
            except BackendError as e:
                logger.warning(f"Failed to delete comment {comment['id']} of post {post_id}: {e}")
        self.count_cache.clear()
        return deleted

    def count_comments(self, post_id):
        if post_id in self.count_cache:
            return self.count_cache[post_id]
        count = len(self.store.query(COMMENTS_COLLECTION, [('post_id', '==', post_id)]))
        self.count_cache[post_id] = count
        return count
