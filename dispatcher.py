"""
Command dispatch for the key-value store.
Turns one request line into at most one storage transaction and an
optional reply.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from codec import (
    Command,
    Get,
    ProtocolError,
    Shutdown,
    Store,
    decode_request,
    encode_reply,
    render_response,
)
from storage import TransactionalStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one request: bytes to send back (if any) and whether to stop."""
    response: Optional[bytes] = None
    shutdown: bool = False


NO_REPLY = DispatchResult()


class CommandDispatcher:
    """
    Executes decoded commands against the store it owns.

    Exactly one transaction is run per Store or Get command; none for
    Shutdown or for requests that fail to decode.
    """

    def __init__(self, store: TransactionalStore):
        self._store = store

    @property
    def store(self) -> TransactionalStore:
        return self._store

    def dispatch(self, line: bytes) -> DispatchResult:
        """
        Decode and execute one request line.

        Undecodable requests are dropped without a reply.

        Raises:
            StorageFailure: if the storage transaction fails
        """
        try:
            command = decode_request(line)
        except ProtocolError as e:
            logger.warning("Dropping request: %s", e)
            return NO_REPLY

        return self.execute(command)

    def execute(self, command: Command) -> DispatchResult:
        if isinstance(command, Store):
            with self._store.transaction() as txn:
                txn.set(command.key, command.value)
            logger.debug("Stored key %r", command.key)
            return NO_REPLY

        if isinstance(command, Get):
            with self._store.transaction() as txn:
                value = txn.get(command.key)
            return DispatchResult(response=encode_reply(render_response(value)))

        if isinstance(command, Shutdown):
            logger.info("Shutdown requested")
            return DispatchResult(shutdown=True)

        raise TypeError(f"Not a command: {command!r}")
