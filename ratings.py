import logging
import math

from config import POSTS_COLLECTION, RATINGS_COLLECTION
from errors import NotFoundError, ValidationError
from store import utcnow

logger = logging.getLogger(__name__)


def round_rating(value):
    """Round half up to one decimal (4.25 -> 4.3), not Python's round-half-even."""
    return math.floor(value * 10 + 0.5) / 10


def validate_stars(stars):
    if isinstance(stars, bool) or not isinstance(stars, int) or not 1 <= stars <= 5:
        raise ValidationError('Rating must be a whole number between 1 and 5', code='invalid_rating')


class RatingAggregator:
    """Keeps ``avg_rating``/``total_ratings`` on a post equal to its rating rows.

    Every change recounts the full set of ratings for the post instead of
    applying a delta. Each operation runs through ``store.run_transaction``;
    without transaction support two concurrent raters may briefly leave a
    stale average, which the next rating event corrects.
    """

    def __init__(self, store, clock=utcnow):
        self.store = store
        self.clock = clock

    def submit_rating(self, post_id, author_id, stars):
        """Add or replace ``author_id``'s rating of a post. Returns ``(avg_rating, total_ratings)``."""
        validate_stars(stars)
        if not author_id:
            raise ValidationError('A rating needs an author', code='missing_author')

        def _submit(tx):
            self._require_post(tx, post_id)
            created = tx.upsert(
                RATINGS_COLLECTION,
                [('post_id', '==', post_id), ('author_id', '==', author_id)],
                {'rating': stars, 'created_at': self.clock()},
            )
            logger.info(f"{'New' if created else 'Updated'} rating {stars} on post {post_id} by {author_id}")
            return self._recompute(tx, post_id)

        return self.store.run_transaction(_submit)

    def remove_rating(self, post_id, author_id):
        def _remove(tx):
            self._require_post(tx, post_id)
            existing = tx.query(RATINGS_COLLECTION, [('post_id', '==', post_id), ('author_id', '==', author_id)])
            for rating in existing:
                tx.delete(RATINGS_COLLECTION, rating['id'])
            if existing:
                logger.info(f"Removed rating on post {post_id} by {author_id}")
            return self._recompute(tx, post_id)

        return self.store.run_transaction(_remove)

    def recompute(self, post_id):
        return self.store.run_transaction(lambda tx: self._recompute(tx, post_id))

    def get_user_rating(self, post_id, author_id):
        ratings = self.store.query(RATINGS_COLLECTION, [('post_id', '==', post_id), ('author_id', '==', author_id)])
        if not ratings:
            return None
        return ratings[0]['rating']

    def get_post_ratings(self, post_id):
        ratings = self.store.query(RATINGS_COLLECTION, [('post_id', '==', post_id)])
        return sorted(ratings, key=lambda r: r['created_at'], reverse=True)

    def _require_post(self, tx, post_id):
        if tx.get(POSTS_COLLECTION, post_id) is None:
            raise NotFoundError(f"Post {post_id} not found", code='post_not_found')

    def _recompute(self, tx, post_id):
        ratings = tx.query(RATINGS_COLLECTION, [('post_id', '==', post_id)])
        if not ratings:
            avg_rating, total_ratings = 0.0, 0
        else:
            total_ratings = len(ratings)
            avg_rating = round_rating(sum(r['rating'] for r in ratings) / total_ratings)
        tx.update(POSTS_COLLECTION, post_id, {'avg_rating': avg_rating, 'total_ratings': total_ratings})
        return avg_rating, total_ratings
