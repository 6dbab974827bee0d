import unittest
from unittest.mock import MagicMock

from pymongo.errors import OperationFailure, PyMongoError

from errors import BackendError, NotFoundError
from store import MongoDocumentStore


def _client_with_transaction(with_transaction):
    client = MagicMock()
    session = client.start_session.return_value.__enter__.return_value
    session.with_transaction.side_effect = lambda callback: with_transaction(callback, session)
    return client, session


class MongoDocumentStoreTestCase(unittest.TestCase):
    """Tests for driver error handling and transaction boundaries."""

    def setUp(self):
        self.db = MagicMock()

    def test_driver_errors_become_backend_errors(self):
        self.db['posts'].insert_one.side_effect = PyMongoError('connection reset')
        store = MongoDocumentStore(self.db)
        with self.assertRaises(BackendError):
            store.insert('posts', {'title': 'T'})

    def test_session_bound_calls_let_driver_errors_through(self):
        write_conflict = OperationFailure('WriteConflict', code=112)
        self.db['posts'].update_one.side_effect = write_conflict
        store = MongoDocumentStore(self.db).bind(MagicMock())
        with self.assertRaises(OperationFailure):
            store.update('posts', '5f43a1b2c3d4e5f6a7b8c9d0', {'avg_rating': 4.0})

    def test_transaction_retries_see_raw_driver_errors(self):
        seen = []

        def with_transaction(callback, session):
            # The driver inspects exceptions from the callback to decide on a retry
            try:
                return callback(session)
            except PyMongoError as e:
                seen.append(e)
                return callback(session)

        client, _ = _client_with_transaction(with_transaction)
        store = MongoDocumentStore(self.db, client=client, transactions=True)
        self.db['posts'].update_one.side_effect = [OperationFailure('WriteConflict', code=112), MagicMock(matched_count=1)]

        result = store.run_transaction(lambda tx: tx.update('posts', '5f43a1b2c3d4e5f6a7b8c9d0', {'avg_rating': 4.0}))

        self.assertTrue(result)
        self.assertEqual(len(seen), 1)
        self.assertIsInstance(seen[0], OperationFailure)

    def test_transaction_failure_becomes_backend_error(self):
        def with_transaction(callback, session):
            raise OperationFailure('WriteConflict', code=112)

        client, _ = _client_with_transaction(with_transaction)
        store = MongoDocumentStore(self.db, client=client, transactions=True)
        with self.assertRaises(BackendError):
            store.run_transaction(lambda tx: None)

    def test_standalone_server_falls_back_without_transaction(self):
        def with_transaction(callback, session):
            raise OperationFailure('Transaction numbers are only allowed on a replica set member or mongos', code=20)

        client, _ = _client_with_transaction(with_transaction)
        store = MongoDocumentStore(self.db, client=client, transactions=True)
        stores_seen = []

        result = store.run_transaction(lambda tx: stores_seen.append(tx) or 'done')

        self.assertEqual(result, 'done')
        self.assertEqual(stores_seen, [store])
        self.assertFalse(store.transactions)

    def test_domain_errors_propagate_from_transaction(self):
        client, _ = _client_with_transaction(lambda callback, session: callback(session))
        store = MongoDocumentStore(self.db, client=client, transactions=True)

        def _fail(tx):
            raise NotFoundError('Post missing', code='post_not_found')

        with self.assertRaises(NotFoundError):
            store.run_transaction(_fail)

    def test_transactions_off_runs_directly(self):
        client = MagicMock()
        store = MongoDocumentStore(self.db, client=client, transactions=False)
        self.assertEqual(store.run_transaction(lambda tx: tx is store), True)
        client.start_session.assert_not_called()


if __name__ == '__main__':
    unittest.main()
