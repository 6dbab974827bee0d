import logging

from config import (
    POSTS_COLLECTION, COMMENTS_COLLECTION, RATINGS_COLLECTION,
    MAX_TITLE_LENGTH, MAX_EXCERPT_LENGTH, AUTO_EXCERPT_LENGTH, MAX_TAGS,
    DEFAULT_PAGE_SIZE, SEARCH_BATCH_SIZE, TAG_RESULTS_LIMIT,
)
from errors import BlogError, BackendError, NotFoundError, ValidationError
from media import post_media_path
from store import utcnow, encode_cursor, decode_cursor

logger = logging.getLogger(__name__)

# sort option -> (field, direction)
SORT_FIELDS = {
    'newest': ('created_at', 'desc'),
    'oldest': ('created_at', 'asc'),
    'rating': ('avg_rating', 'desc'),
    'views': ('view_count', 'desc'),
}


def _clean_tags(tags):
    if tags is None:
        return []
    if not isinstance(tags, (list, tuple)):
        raise ValidationError('Tags must be a list', code='invalid_tags')
    cleaned = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError('Tags must be strings', code='invalid_tags')
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f"Maximum {MAX_TAGS} tags allowed", code='too_many_tags')
    return cleaned


def clean_post_input(data):
    """Validate title/content/excerpt/tags of a post form and return the stored fields.

    An empty excerpt is filled from the start of the content.
    """
    title = data.get('title')
    if not isinstance(title, str) or not title.strip():
        raise ValidationError('Title is required', code='missing_title')
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be less than {MAX_TITLE_LENGTH} characters", code='title_too_long')

    content = data.get('content')
    if not isinstance(content, str) or not content.strip():
        raise ValidationError('Content is required', code='missing_content')

    excerpt = data.get('excerpt') or ''
    if not isinstance(excerpt, str):
        raise ValidationError('Excerpt must be text', code='invalid_excerpt')
    excerpt = excerpt.strip()
    if len(excerpt) > MAX_EXCERPT_LENGTH:
        raise ValidationError(f"Excerpt must be less than {MAX_EXCERPT_LENGTH} characters", code='excerpt_too_long')
    if not excerpt:
        excerpt = content[:AUTO_EXCERPT_LENGTH].strip()

    return {'title': title, 'content': content, 'excerpt': excerpt, 'tags': _clean_tags(data.get('tags'))}


def searchable_text(post):
    return ' '.join([
        post.get('title') or '',
        post.get('content') or '',
        post.get('excerpt') or '',
        ' '.join(post.get('tags') or []),
    ]).lower()


class PostService:
    def __init__(self, store, media=None, comments=None, clock=utcnow):
        self.store = store
        self.media = media
        self.comments = comments
        self.clock = clock

    def create_post(self, data, author):
        post = clean_post_input(data)
        now = self.clock()
        post.update({
            'published': True,
            'author_id': author.uid,
            'author_name': author.display_name,
            'author_email': author.email,
            'created_at': now,
            'updated_at': now,
            'view_count': 0,
            'avg_rating': 0.0,
            'total_ratings': 0,
            'media': [],
        })
        post_id = self.store.insert(POSTS_COLLECTION, post)
        logger.info(f"Post {post_id} created by {author.email}, tags={len(post['tags'])}")
        return post_id

    def get_post(self, post_id):
        post = self.store.get(POSTS_COLLECTION, post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found", code='post_not_found')
        return post

    def update_post(self, post_id, updates):
        """Apply a partial edit of title/content/excerpt/tags."""
        post = self.get_post(post_id)
        candidate = {key: post.get(key) for key in ('title', 'content', 'excerpt', 'tags')}
        if 'content' in updates and 'excerpt' not in updates:
            auto_excerpt = (post.get('content') or '')[:AUTO_EXCERPT_LENGTH].strip()
            if post.get('excerpt') == auto_excerpt:
                # Derived excerpts follow the content
                candidate['excerpt'] = ''
        for key in ('title', 'content', 'excerpt', 'tags'):
            if key in updates:
                candidate[key] = updates[key]
        fields = clean_post_input(candidate)
        fields['updated_at'] = self.clock()
        self.store.update(POSTS_COLLECTION, post_id, fields)
        logger.info(f"Post {post_id} updated")
        return self.get_post(post_id)

    def delete_post(self, post_id):
        """Delete a post after best-effort removal of its comments, ratings and media."""
        post = self.get_post(post_id)

        if self.comments is not None:
            self.comments.delete_for_post(post_id)
        else:
            self._delete_related(COMMENTS_COLLECTION, post_id)
        self._delete_related(RATINGS_COLLECTION, post_id)

        if self.media is not None:
            for item in post.get('media') or []:
                try:
                    self.media.delete_media(post_media_path(post_id, item['id']))
                except BlogError as e:
                    logger.warning(f"Failed to delete media {item.get('id')} of post {post_id}: {e}")

        self.store.delete(POSTS_COLLECTION, post_id)
        logger.info(f"Post {post_id} deleted")

    def increment_view_count(self, post_id):
        if not self.store.increment(POSTS_COLLECTION, post_id, 'view_count', 1):
            raise NotFoundError(f"Post {post_id} not found", code='post_not_found')

    def attach_media(self, post_id, items):
        post = self.get_post(post_id)
        media = list(post.get('media') or []) + list(items)
        self.store.update(POSTS_COLLECTION, post_id, {'media': media, 'updated_at': self.clock()})
        return media

    def remove_media(self, post_id, media_id):
        post = self.get_post(post_id)
        media = post.get('media') or []
        remaining = [item for item in media if item.get('id') != media_id]
        if len(remaining) == len(media):
            raise NotFoundError(f"Media {media_id} not found on post {post_id}", code='media_not_found')
        self.store.update(POSTS_COLLECTION, post_id, {'media': remaining, 'updated_at': self.clock()})
        if self.media is not None:
            try:
                self.media.delete_media(post_media_path(post_id, media_id))
            except BlogError as e:
                logger.warning(f"Failed to delete media {media_id} of post {post_id}: {e}")
        return remaining

    def list_posts(self, sort_by='newest', page_size=DEFAULT_PAGE_SIZE, cursor=None):
        """One page of posts in the given order.

        Returns ``{'posts', 'has_more', 'next_cursor'}``. Pass ``next_cursor``
        back unchanged to get the following page; it is None on the last page.
        """
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"Unknown sort order '{sort_by}'", code='invalid_sort')
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            raise ValidationError('Page size must be a positive integer', code='invalid_page_size')

        field, direction = SORT_FIELDS[sort_by]
        start_after = decode_cursor(cursor, sort_by) if cursor else None
        docs = self.store.query(
            POSTS_COLLECTION,
            order_by=(field, direction),
            limit=page_size + 1,  # one extra tells us whether another page exists
            start_after=start_after,
        )

        has_more = len(docs) > page_size
        posts = docs[:page_size]
        next_cursor = None
        if has_more:
            last = posts[-1]
            next_cursor = encode_cursor(sort_by, {'value': last.get(field), 'id': last['id']})
        return {'posts': posts, 'has_more': has_more, 'next_cursor': next_cursor}

    def search_posts(self, query):
        """Substring search over the newest posts.

        Any whitespace-separated term found in title, content, excerpt or tags
        is a match. Only the newest 100 posts are searched and results are not
        ranked.
        """
        terms = (query or '').lower().split()
        if not terms:
            return []
        posts = self.list_posts('newest', SEARCH_BATCH_SIZE)['posts']
        return [post for post in posts if any(term in searchable_text(post) for term in terms)]

    def posts_by_tag(self, tag):
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError('Tag is required', code='missing_tag')
        return self.store.query(
            POSTS_COLLECTION,
            [('tags', 'array-contains', tag.strip())],
            order_by=('created_at', 'desc'),
            limit=TAG_RESULTS_LIMIT,
        )

    def _delete_related(self, collection, post_id):
        try:
            docs = self.store.query(collection, [('post_id', '==', post_id)])
        except BackendError as e:
            logger.warning(f"Error listing {collection} of post {post_id} (continuing with post deletion): {e}")
            return
        for doc in docs:
            try:
                self.store.delete(collection, doc['id'])
            except BackendError as e:
                logger.warning(f"Failed to delete {collection} {doc['id']} of post {post_id}: {e}")
