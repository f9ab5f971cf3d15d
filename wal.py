"""
Write-Ahead Log (WAL) for durability.
Each committed transaction is one record, fsynced before the commit returns.
"""

import os
import json
import struct
import threading
import time
from typing import Optional, List, Tuple, Dict, Any
from dataclasses import dataclass
from enum import Enum


class Operation(Enum):
    COMMIT = 1


@dataclass
class WALEntry:
    """Represents a single WAL entry."""
    sequence: int
    operation: Operation
    writes: Dict[str, str]
    timestamp: float

    def to_bytes(self) -> bytes:
        """Serialize entry to bytes."""
        data = {
            'seq': self.sequence,
            'op': self.operation.value,
            'writes': self.writes,
            'ts': self.timestamp
        }
        # ASCII output keeps undecodable key bytes (lone surrogates) encodable
        json_bytes = json.dumps(data, ensure_ascii=True).encode('ascii')
        # Format: length (4 bytes) + data + checksum (4 bytes)
        length = len(json_bytes)
        checksum = sum(json_bytes) & 0xFFFFFFFF
        return struct.pack('>I', length) + json_bytes + struct.pack('>I', checksum)

    @classmethod
    def from_bytes(cls, data: bytes) -> Tuple['WALEntry', int]:
        """Deserialize entry from bytes. Returns entry and bytes consumed."""
        if len(data) < 8:
            raise ValueError("Insufficient data")

        length = struct.unpack('>I', data[:4])[0]
        if len(data) < 8 + length:
            raise ValueError("Insufficient data for entry")

        json_bytes = data[4:4+length]
        stored_checksum = struct.unpack('>I', data[4+length:8+length])[0]

        # Verify checksum
        computed_checksum = sum(json_bytes) & 0xFFFFFFFF
        if stored_checksum != computed_checksum:
            raise ValueError("Checksum mismatch - corrupted entry")

        entry_data = json.loads(json_bytes.decode('ascii'))
        entry = cls(
            sequence=entry_data['seq'],
            operation=Operation(entry_data['op']),
            writes=entry_data['writes'],
            timestamp=entry_data['ts']
        )
        return entry, 8 + length


class WriteAheadLog:
    """
    Write-Ahead Log for durability.
    Records are appended and fsynced; a checkpoint snapshots the full
    state and truncates the log.
    """

    def __init__(self, data_dir: str = "data"):
        self.data_dir = data_dir
        self.wal_file = os.path.join(data_dir, "wal.log")
        self.checkpoint_file = os.path.join(data_dir, "checkpoint.json")
        self._lock = threading.Lock()
        self._sequence = 0
        self._file_handle: Optional[Any] = None
        self._pending_truncate: Optional[int] = None

        os.makedirs(data_dir, exist_ok=True)

        self._load_sequence()

    def _load_sequence(self):
        """Load the last sequence number from checkpoint or WAL."""
        if os.path.exists(self.checkpoint_file):
            try:
                with open(self.checkpoint_file, 'r') as f:
                    data = json.load(f)
                    self._sequence = data.get('sequence', 0)
            except (json.JSONDecodeError, IOError):
                self._sequence = 0

        # Entries written after the last checkpoint
        entries = self.recover()
        if entries:
            self._sequence = max(e.sequence for e in entries)

    def _get_file_handle(self):
        """Get or create an unbuffered file handle for WAL."""
        if self._file_handle is None:
            self._file_handle = open(self.wal_file, 'ab', buffering=0)
        return self._file_handle

    def _write_record(self, fh, data: bytes):
        """Write all of data; raw writes may be partial."""
        view = memoryview(data)
        while view:
            written = fh.write(view)
            view = view[written:]

    def _truncate_tail(self, offset: int):
        """
        Cut the WAL back to `offset`, removing a failed or torn record.
        Caller holds the lock.
        """
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None

        with open(self.wal_file, 'r+b') as f:
            f.truncate(offset)
            f.flush()
            os.fsync(f.fileno())
        self._pending_truncate = None

    def append_commit(self, writes: Dict[str, str]) -> int:
        """
        Append one committed transaction to the WAL and fsync.

        All writes of the transaction share a single record, so a torn
        write at the tail drops the whole transaction on recovery. If the
        write or fsync fails, the log is cut back to where the record
        started before the error is raised.

        Returns:
            The sequence number of the record
        """
        with self._lock:
            # An earlier failed record could not be removed; retry first
            if self._pending_truncate is not None:
                self._truncate_tail(self._pending_truncate)

            entry = WALEntry(
                sequence=self._sequence + 1,
                operation=Operation.COMMIT,
                writes=dict(writes),
                timestamp=time.time()
            )

            fh = self._get_file_handle()
            offset = fh.seek(0, os.SEEK_END)
            try:
                self._write_record(fh, entry.to_bytes())
                os.fsync(fh.fileno())
            except OSError:
                self._pending_truncate = offset
                self._truncate_tail(offset)
                raise

            self._sequence = entry.sequence
            return self._sequence

    def recover(self) -> List[WALEntry]:
        """
        Read all entries from WAL for recovery.
        Stops at the first truncated or corrupted entry.
        """
        entries = []

        if not os.path.exists(self.wal_file):
            return entries

        with open(self.wal_file, 'rb') as f:
            data = f.read()

        offset = 0
        while offset < len(data):
            try:
                entry, consumed = WALEntry.from_bytes(data[offset:])
            except ValueError:
                break
            entries.append(entry)
            offset += consumed

        return entries

    def checkpoint(self, state: Dict[str, str]):
        """
        Write a checkpoint of the full state and truncate the WAL.
        """
        with self._lock:
            temp_file = self.checkpoint_file + ".tmp"
            with open(temp_file, 'w') as f:
                json.dump({
                    'sequence': self._sequence,
                    'state': state,
                    'timestamp': time.time()
                }, f)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_file, self.checkpoint_file)

            if self._file_handle:
                self._file_handle.close()
                self._file_handle = None

            with open(self.wal_file, 'wb') as f:
                f.flush()
                os.fsync(f.fileno())
            self._pending_truncate = None

    def load_checkpoint(self) -> Optional[Dict[str, str]]:
        """Load state from checkpoint file."""
        if not os.path.exists(self.checkpoint_file):
            return None

        try:
            with open(self.checkpoint_file, 'r') as f:
                data = json.load(f)
                return data.get('state', {})
        except (json.JSONDecodeError, IOError):
            return None

    def close(self):
        """Close the WAL file handle."""
        with self._lock:
            if self._file_handle:
                self._file_handle.close()
                self._file_handle = None

    def get_sequence(self) -> int:
        """Get current sequence number."""
        return self._sequence
