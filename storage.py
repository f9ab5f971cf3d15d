"""
Transactional Key-Value Store.
Reads and writes happen inside transactions; commits are made durable
through the Write-Ahead Log before they become visible.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Optional, List, Dict, Iterator
from wal import WriteAheadLog


logger = logging.getLogger(__name__)


class StorageFailure(Exception):
    """A transaction could not be completed because of an I/O error."""


class TransactionClosed(Exception):
    """The transaction was already committed or rolled back."""


class Transaction:
    """
    A unit of work against a TransactionalStore.

    Writes are buffered and only applied on commit. Reads see the
    transaction's own writes. The store lock is held from begin until
    commit or rollback, so transactions are serialized.
    """

    def __init__(self, store: 'TransactionalStore'):
        self._store = store
        self._writes: Dict[str, str] = {}
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def _check_open(self):
        if not self._open:
            raise TransactionClosed("Transaction is no longer active")

    def get(self, key: str) -> Optional[str]:
        """
        Get a value by key.

        Args:
            key: The key to retrieve

        Returns:
            The value if found, None otherwise
        """
        self._check_open()
        if key in self._writes:
            return self._writes[key]
        return self._store._data.get(key)

    def set(self, key: str, value: str):
        """
        Buffer a write; it takes effect on commit.

        Args:
            key: The key to set
            value: The value to store
        """
        self._check_open()
        self._writes[key] = value

    def commit(self) -> int:
        """
        Make the buffered writes durable and visible.

        Returns:
            WAL sequence number of the commit (unchanged for read-only
            transactions)

        Raises:
            StorageFailure: if the WAL could not be written; the
                transaction is rolled back
        """
        self._check_open()
        try:
            return self._store._apply(self._writes)
        except OSError as e:
            raise StorageFailure(f"Commit failed: {e}") from e
        finally:
            self._finish()

    def rollback(self):
        """Discard buffered writes."""
        if self._open:
            self._writes.clear()
            self._finish()

    def _finish(self):
        self._open = False
        self._store._lock.release()


class TransactionalStore:
    """
    Key-value store with serializable transactions and WAL durability.

    Example:
        store = TransactionalStore('data')
        with store.transaction() as txn:
            txn.set('name', 'Alice')
        store.close()
    """

    def __init__(self, data_dir: str = "data", checkpoint_interval: int = 1000):
        self.data_dir = data_dir
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._wal = WriteAheadLog(data_dir)
        self._checkpoint_interval = checkpoint_interval
        self._commits_since_checkpoint = 0

        self._recover()

    def _recover(self):
        """Recover state from checkpoint and WAL."""
        checkpoint_state = self._wal.load_checkpoint()
        if checkpoint_state:
            self._data = checkpoint_state.copy()

        entries = self._wal.recover()
        for entry in entries:
            self._data.update(entry.writes)

        logger.info("Recovered %d keys (%d WAL records replayed)", len(self._data), len(entries))

    def begin_transaction(self) -> Transaction:
        """Start a transaction. Blocks while another transaction is active."""
        self._lock.acquire()
        return Transaction(self)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Run a block inside a transaction.

        Commits when the block finishes, rolls back if it raises.

        Raises:
            StorageFailure: if the commit or the block hit an I/O error
        """
        txn = self.begin_transaction()
        try:
            yield txn
        except OSError as e:
            txn.rollback()
            raise StorageFailure(f"Transaction failed: {e}") from e
        except BaseException:
            txn.rollback()
            raise
        if txn.is_open:
            txn.commit()

    def _apply(self, writes: Dict[str, str]) -> int:
        """Log and apply committed writes. Caller holds the lock."""
        if not writes:
            return self._wal.get_sequence()

        seq = self._wal.append_commit(writes)
        self._data.update(writes)
        self._maybe_checkpoint()
        return seq

    def _maybe_checkpoint(self):
        """Create checkpoint if enough commits have occurred."""
        self._commits_since_checkpoint += 1
        if self._commits_since_checkpoint >= self._checkpoint_interval:
            # The commit is already durable in the WAL at this point
            try:
                self.checkpoint()
            except OSError as e:
                logger.warning("Checkpoint failed, WAL retained: %s", e)

    def checkpoint(self):
        """Create a checkpoint of current state."""
        with self._lock:
            self._wal.checkpoint(self._data.copy())
            self._commits_since_checkpoint = 0

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def count(self) -> int:
        with self._lock:
            return len(self._data)

    def close(self):
        """Close the store gracefully. A failed checkpoint keeps the WAL for recovery."""
        with self._lock:
            try:
                self.checkpoint()
            except OSError as e:
                logger.warning("Checkpoint on close failed, WAL retained: %s", e)
            self._wal.close()

    def get_sequence(self) -> int:
        """Get current WAL sequence number."""
        return self._wal.get_sequence()
