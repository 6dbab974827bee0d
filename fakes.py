"""In-memory stand-ins for the document store and blob store, used by the tests."""
import copy
import datetime
import threading

from errors import BackendError, NotFoundError
from store import utcnow


def _truncate_ms(value):
    # Mongo keeps datetimes at millisecond precision
    if isinstance(value, datetime.datetime):
        return value.replace(microsecond=value.microsecond // 1000 * 1000)
    return value


def _matches(doc, filters):
    for field, op, value in filters or ():
        actual = doc.get(field)
        if op == '==':
            if actual != value:
                return False
        elif op == 'array-contains':
            if not isinstance(actual, list) or value not in actual:
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


class StepClock:
    """Clock that moves forward by ``step`` on every call."""

    def __init__(self, start=None, step=datetime.timedelta(seconds=1)):
        self.now = start or datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        self.step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now = self.now + self.step
            return self.now


class FakeDocumentStore:
    """Dict-backed store with the same call surface as MongoDocumentStore.

    Ids are zero-padded counters so they sort in insertion order, like
    ObjectIds do. Add ``(method, collection)`` pairs to ``failures`` to make
    those calls raise BackendError.
    """

    def __init__(self):
        self.collections = {}
        self.failures = set()
        self.transactions_run = 0
        self._next_id = 0
        self._lock = threading.RLock()

    def _check(self, method, collection):
        if (method, collection) in self.failures:
            raise BackendError(f"Injected {method} failure on {collection}", code='document_store')

    def _coll(self, collection):
        return self.collections.setdefault(collection, {})

    def _new_id(self):
        self._next_id += 1
        return f"{self._next_id:024d}"

    def insert(self, collection, doc):
        self._check('insert', collection)
        with self._lock:
            doc_id = self._new_id()
            stored = {k: _truncate_ms(copy.deepcopy(v)) for k, v in doc.items() if k != 'id'}
            stored['id'] = doc_id
            self._coll(collection)[doc_id] = stored
            return doc_id

    def get(self, collection, doc_id):
        self._check('get', collection)
        with self._lock:
            return copy.deepcopy(self._coll(collection).get(doc_id))

    def update(self, collection, doc_id, fields):
        self._check('update', collection)
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            if doc is None:
                return False
            doc.update({k: _truncate_ms(copy.deepcopy(v)) for k, v in fields.items() if k != 'id'})
            return True

    def upsert(self, collection, filters, fields):
        self._check('upsert', collection)
        with self._lock:
            for doc in self._coll(collection).values():
                if _matches(doc, filters):
                    doc.update({k: _truncate_ms(copy.deepcopy(v)) for k, v in fields.items()})
                    return False
            doc = {field: value for field, op, value in filters if op == '=='}
            doc.update(fields)
            self.insert(collection, doc)
            return True

    def delete(self, collection, doc_id):
        self._check('delete', collection)
        with self._lock:
            return self._coll(collection).pop(doc_id, None) is not None

    def query(self, collection, filters=(), order_by=None, limit=None, start_after=None):
        self._check('query', collection)
        with self._lock:
            docs = [d for d in self._coll(collection).values() if _matches(d, filters)]
            if order_by is not None:
                field, direction = order_by
                descending = direction == 'desc'
                docs.sort(key=lambda d: (d.get(field), d['id']), reverse=descending)
                if start_after is not None:
                    position = (start_after.get('value'), start_after['id'])
                    if descending:
                        docs = [d for d in docs if (d.get(field), d['id']) < position]
                    else:
                        docs = [d for d in docs if (d.get(field), d['id']) > position]
            elif start_after is not None:
                raise ValueError("start_after requires order_by")
            if limit:
                docs = docs[:limit]
            return copy.deepcopy(docs)

    def increment(self, collection, doc_id, field, delta=1):
        self._check('increment', collection)
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            if doc is None:
                return False
            doc[field] = doc.get(field, 0) + delta
            return True

    def batch(self, ops):
        def _apply(tx):
            results = []
            for op in ops:
                if op[0] == 'insert':
                    results.append(tx.insert(op[1], op[2]))
                elif op[0] == 'update':
                    results.append(tx.update(op[1], op[2], op[3]))
                elif op[0] == 'delete':
                    results.append(tx.delete(op[1], op[2]))
                else:
                    raise ValueError(f"Unsupported batch operation: {op[0]}")
            return results
        return self.run_transaction(_apply)

    def run_transaction(self, fn):
        # Holding the lock serializes transactions the way a real one would isolate them
        with self._lock:
            self.transactions_run += 1
            return fn(self)

    def ensure_indexes(self):
        return None

    def ping(self):
        self._check('ping', None)
        return True


class FakeBlobStore:
    """Blob store kept in a dict of path -> object.

    ``fail_puts`` holds substrings; a put whose path contains one fails.
    ``fail_deletes`` and ``fail_metadata`` hold exact paths.
    """

    base_url = 'https://blobs.test/'

    def __init__(self, clock=utcnow):
        self.clock = clock
        self.objects = {}
        self.fail_puts = set()
        self.fail_deletes = set()
        self.fail_metadata = set()
        self.fail_listing = False
        self.put_calls = []
        self.read_calls = []
        self._lock = threading.Lock()

    def add(self, path, data, content_type, created_at=None):
        with self._lock:
            self.objects[path] = {
                'data': data,
                'content_type': content_type,
                'created_at': created_at or self.clock(),
            }
        return self.base_url + path

    def put(self, path, data, content_type):
        if any(marker in path for marker in self.fail_puts):
            raise BackendError(f"Injected upload failure for {path}", code='blob_store')
        with self._lock:
            self.put_calls.append(path)
        return self.add(path, data, content_type)

    def delete(self, path):
        if path in self.fail_deletes:
            raise BackendError(f"Injected delete failure for {path}", code='blob_store')
        with self._lock:
            self.objects.pop(path, None)

    def list_prefix(self, prefix):
        if self.fail_listing:
            raise BackendError('Injected listing failure', code='blob_store')
        if not prefix.endswith('/'):
            prefix = prefix + '/'
        with self._lock:
            return sorted(path for path in self.objects if path.startswith(prefix))

    def get_metadata(self, path):
        if path in self.fail_metadata:
            raise BackendError(f"Injected metadata failure for {path}", code='blob_store')
        with self._lock:
            obj = self.objects.get(path)
        if obj is None:
            raise NotFoundError(f"Blob {path} not found", code='blob_not_found')
        return {'created_at': obj['created_at'], 'size': len(obj['data']), 'content_type': obj['content_type']}

    def read(self, path):
        with self._lock:
            self.read_calls.append(path)
            obj = self.objects.get(path)
        if obj is None:
            raise NotFoundError(f"Blob {path} not found", code='blob_not_found')
        return obj['data'], obj['content_type']
