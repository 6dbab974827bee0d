import base64
import binascii
import datetime
import logging
from functools import wraps

from bson import json_util
from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure, PyMongoError

from config import POSTS_COLLECTION, COMMENTS_COLLECTION, RATINGS_COLLECTION
from errors import BackendError, ValidationError

logger = logging.getLogger(__name__)

# Server error code for "Transaction numbers are only allowed on a replica set member or mongos"
ILLEGAL_OPERATION = 20

# Cursors must round-trip datetimes and keep ints and floats apart.
CURSOR_JSON_OPTIONS = json_util.JSONOptions(
    json_mode=json_util.JSONMode.CANONICAL,
    tz_aware=True,
    tzinfo=datetime.timezone.utc,
)


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def backend_call(f):
    """Re-raise driver failures as BackendError so callers see one error type.

    Calls made through a session-bound store (inside ``run_transaction``) let
    PyMongoError through untouched: ``with_transaction`` only retries on the
    driver's own transient-error labels, and converts at its boundary.
    """
    @wraps(f)
    def decorated_function(self, *args, **kwargs):
        try:
            return f(self, *args, **kwargs)
        except PyMongoError as e:
            if self._session is not None:
                raise
            logger.error(f"Document store call '{f.__name__}' failed: {e}")
            raise BackendError(f"Document store error: {e}", code='document_store') from e
    return decorated_function


def _to_object_id(doc_id):
    if isinstance(doc_id, ObjectId):
        return doc_id
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


def _from_mongo(doc):
    if doc is None:
        return None
    doc = dict(doc)
    doc['id'] = str(doc.pop('_id'))
    return doc


def _build_filter(filters):
    criteria = {}
    for field, op, value in filters or ():
        if field == 'id':
            field, value = '_id', _to_object_id(value)
        if op in ('==', 'array-contains'):
            # Equality on an array field already matches any element.
            criteria[field] = value
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return criteria


def encode_cursor(sort_by: str, position: dict) -> str:
    """Turn the position of the last returned document into an opaque token."""
    payload = json_util.dumps(
        {'sort': sort_by, 'value': position.get('value'), 'id': position['id']},
        json_options=CURSOR_JSON_OPTIONS,
    )
    return base64.urlsafe_b64encode(payload.encode('utf-8')).decode('ascii')


def decode_cursor(token: str, sort_by: str) -> dict:
    try:
        raw = base64.urlsafe_b64decode(token.encode('ascii'))
        payload = json_util.loads(raw.decode('utf-8'), json_options=CURSOR_JSON_OPTIONS)
    except (ValueError, TypeError, UnicodeError, binascii.Error) as e:
        raise ValidationError('Invalid pagination cursor', code='invalid_cursor') from e
    if not isinstance(payload, dict) or 'id' not in payload:
        raise ValidationError('Invalid pagination cursor', code='invalid_cursor')
    if payload.get('sort') != sort_by:
        raise ValidationError(f"Cursor was issued for a different sort order than '{sort_by}'",
                              code='cursor_sort_mismatch')
    return {'value': payload.get('value'), 'id': payload['id']}


class MongoDocumentStore:
    """Document store operations used by the blog services, backed by MongoDB.

    Documents go in and come out as plain dicts carrying a string ``id``
    instead of Mongo's ``_id``. A store bound to a client session (see
    ``run_transaction``) sends every call through that session.
    """

    def __init__(self, db, client=None, transactions=False, session=None):
        self.db = db
        self.client = client
        self.transactions = transactions
        self._session = session

    def bind(self, session):
        return MongoDocumentStore(self.db, client=self.client, transactions=self.transactions, session=session)

    @backend_call
    def insert(self, collection, doc):
        doc = {k: v for k, v in doc.items() if k != 'id'}
        result = self.db[collection].insert_one(doc, session=self._session)
        return str(result.inserted_id)

    @backend_call
    def get(self, collection, doc_id):
        oid = _to_object_id(doc_id)
        if oid is None:
            return None
        return _from_mongo(self.db[collection].find_one({'_id': oid}, session=self._session))

    @backend_call
    def update(self, collection, doc_id, fields):
        oid = _to_object_id(doc_id)
        if oid is None:
            return False
        fields = {k: v for k, v in fields.items() if k != 'id'}
        result = self.db[collection].update_one({'_id': oid}, {'$set': fields}, session=self._session)
        return result.matched_count > 0

    @backend_call
    def upsert(self, collection, filters, fields):
        """Set ``fields`` on the single document matching ``filters``, inserting it if absent.

        Returns True when a new document was created.
        """
        result = self.db[collection].update_one(
            _build_filter(filters), {'$set': fields}, upsert=True, session=self._session
        )
        return result.upserted_id is not None

    @backend_call
    def delete(self, collection, doc_id):
        oid = _to_object_id(doc_id)
        if oid is None:
            return False
        result = self.db[collection].delete_one({'_id': oid}, session=self._session)
        return result.deleted_count > 0

    @backend_call
    def query(self, collection, filters=(), order_by=None, limit=None, start_after=None):
        """Run a filtered query ordered on a single field.

        ``start_after`` is the position ``{'value', 'id'}`` of the last
        document already seen. Documents with an equal sort value continue in
        ``_id`` order, the same direction as the sort.
        """
        criteria = _build_filter(filters)
        sort = None
        if order_by is not None:
            field, direction = order_by
            mongo_direction = DESCENDING if direction == 'desc' else ASCENDING
            sort = [(field, mongo_direction), ('_id', mongo_direction)]
            if start_after is not None:
                op = '$lt' if direction == 'desc' else '$gt'
                value = start_after.get('value')
                last_id = _to_object_id(start_after.get('id'))
                position = {'$or': [{field: {op: value}}, {field: value, '_id': {op: last_id}}]}
                criteria = {'$and': [criteria, position]} if criteria else position
        elif start_after is not None:
            raise ValueError("start_after requires order_by")

        cursor = self.db[collection].find(criteria, session=self._session)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [_from_mongo(doc) for doc in cursor]

    @backend_call
    def increment(self, collection, doc_id, field, delta=1):
        oid = _to_object_id(doc_id)
        if oid is None:
            return False
        result = self.db[collection].update_one({'_id': oid}, {'$inc': {field: delta}}, session=self._session)
        return result.matched_count > 0

    def batch(self, ops):
        """Apply insert/update/delete ops together.

        Each op is ``('insert', collection, doc)``, ``('update', collection, id, fields)``
        or ``('delete', collection, id)``.
        """
        def _apply(tx):
            results = []
            for op in ops:
                kind = op[0]
                if kind == 'insert':
                    results.append(tx.insert(op[1], op[2]))
                elif kind == 'update':
                    results.append(tx.update(op[1], op[2], op[3]))
                elif kind == 'delete':
                    results.append(tx.delete(op[1], op[2]))
                else:
                    raise ValueError(f"Unsupported batch operation: {kind}")
            return results
        return self.run_transaction(_apply)

    def run_transaction(self, fn):
        """Call ``fn(store)`` inside a multi-document transaction when enabled.

        Transactions need a replica set. Without them ``fn`` runs directly
        against this store and concurrent writers are only eventually consistent.
        """
        if not self.transactions or self.client is None or self._session is not None:
            return fn(self)
        try:
            with self.client.start_session() as session:
                return session.with_transaction(lambda s: fn(self.bind(s)))
        except OperationFailure as e:
            if e.code != ILLEGAL_OPERATION:
                logger.error(f"Transaction failed: {e}")
                raise BackendError(f"Document store transaction failed: {e}", code='document_store') from e
            # Standalone mongod: no transactions, so stop asking for them
            logger.warning(f"Transactions unsupported by this deployment, continuing without them: {e}")
            self.transactions = False
        except PyMongoError as e:
            logger.error(f"Transaction failed: {e}")
            raise BackendError(f"Document store transaction failed: {e}", code='document_store') from e
        return fn(self)

    @backend_call
    def ensure_indexes(self):
        # One rating per (post, author), even when two writes race.
        self.db[RATINGS_COLLECTION].create_index(
            [('post_id', ASCENDING), ('author_id', ASCENDING)], unique=True
        )
        self.db[COMMENTS_COLLECTION].create_index([('post_id', ASCENDING), ('created_at', DESCENDING)])
        self.db[POSTS_COLLECTION].create_index([('tags', ASCENDING), ('created_at', DESCENDING)])
        self.db[POSTS_COLLECTION].create_index([('avg_rating', DESCENDING)])
        self.db[POSTS_COLLECTION].create_index([('view_count', DESCENDING)])
        logger.info("Document store indexes ensured")

    @backend_call
    def ping(self):
        if self.client is None:
            return True
        self.client.admin.command('ping')
        return True
