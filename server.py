"""
Unix socket server for the Key-Value Store.
Reads one request line per connection, dispatches it and closes.
"""

import logging
import os
import signal
import socket
import threading
from typing import Optional, List

from dispatcher import CommandDispatcher
from storage import StorageFailure, TransactionalStore


logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/store"
DEFAULT_DATA_DIR = "data"
DEFAULT_READ_TIMEOUT = 10.0
MAX_LINE_LENGTH = 1024 * 1024


class RequestTooLarge(Exception):
    """The client sent more than MAX_LINE_LENGTH bytes without a newline."""


class KVServer:
    """
    Unix socket server for the key-value store.

    Each accepted connection carries exactly one request. By default every
    connection is handled on its own thread; with serial=True connections
    are handled one after another on the accept thread.

    A 'done' request stops the accept loop. Connections already accepted
    are allowed to finish before the store is closed.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, data_dir: str = DEFAULT_DATA_DIR,
                 read_timeout: Optional[float] = DEFAULT_READ_TIMEOUT, serial: bool = False,
                 max_line_length: int = MAX_LINE_LENGTH):
        self.socket_path = socket_path
        self.data_dir = data_dir
        self.read_timeout = read_timeout
        self.serial = serial
        self.max_line_length = max_line_length
        self._dispatcher: Optional[CommandDispatcher] = None
        self._socket: Optional[socket.socket] = None
        self._running = False
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self):
        """Open the store, bind the socket and serve until shut down."""
        self._dispatcher = CommandDispatcher(TransactionalStore(self.data_dir))

        # A socket file left behind by a crashed server blocks bind()
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self._socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._socket.bind(self.socket_path)
        self._socket.listen(128)
        self._socket.settimeout(1.0)  # Allow periodic checks for shutdown

        self._running = True

        # Signals can only be wired up from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info("KV Server listening on %s", self.socket_path)

        try:
            self._serve()
        finally:
            self._cleanup()

    def _serve(self):
        while self._running:
            try:
                client_socket, _ = self._socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            # accept() can race a 'done' handled on another thread
            if not self._running:
                client_socket.close()
                break

            if self.serial:
                self._handle_client(client_socket)
                continue

            worker = threading.Thread(
                target=self._handle_client,
                args=(client_socket,),
                daemon=True
            )
            with self._lock:
                self._workers = [w for w in self._workers if w.is_alive()]
                self._workers.append(worker)
            worker.start()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info("Received signal %d, shutting down", signum)
        self._running = False

    def _cleanup(self):
        """Drain in-flight connections, then release the socket and the store."""
        with self._lock:
            workers = list(self._workers)
            self._workers.clear()
        for worker in workers:
            worker.join()

        with self._lock:
            if self._socket:
                self._socket.close()
                self._socket = None

            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)

        if self._dispatcher:
            self._dispatcher.store.close()

        logger.info("Server stopped.")

    def stop(self):
        """Stop accepting connections."""
        self._running = False

    def _stop_listening(self):
        """
        Stop accepting right away: unlink the socket path so new clients
        cannot connect, and wake the accept loop.
        """
        self._running = False
        with self._lock:
            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)
            if self._socket:
                try:
                    self._socket.shutdown(socket.SHUT_RDWR)
                except OSError as e:
                    # Not every platform can shut down a listening socket;
                    # the accept timeout still ends the loop
                    logger.debug("Listener shutdown failed: %s", e)

    def _read_line(self, client_socket: socket.socket) -> bytes:
        """Read up to and including the first newline, or until EOF."""
        buffer = b""
        while b"\n" not in buffer:
            if len(buffer) > self.max_line_length:
                raise RequestTooLarge(f"Request exceeds {self.max_line_length} bytes")
            chunk = client_socket.recv(65536)
            if not chunk:
                break
            buffer += chunk
        line, _, _ = buffer.partition(b"\n")
        if len(line) > self.max_line_length:
            raise RequestTooLarge(f"Request exceeds {self.max_line_length} bytes")
        return line

    def _handle_client(self, client_socket: socket.socket):
        """Handle a single-request connection."""
        client_socket.settimeout(self.read_timeout)

        try:
            line = self._read_line(client_socket)
            result = self._dispatcher.dispatch(line)
            if result.response is not None:
                client_socket.sendall(result.response)
            if result.shutdown:
                # Before this connection closes, so a client that saw
                # 'done' complete cannot reach the listener any more
                self._stop_listening()
        except StorageFailure as e:
            logger.error("Storage failure: %s", e)
        except socket.timeout:
            logger.warning("Client did not send a request within %ss", self.read_timeout)
        except RequestTooLarge as e:
            logger.warning("Dropping request: %s", e)
        except OSError as e:
            logger.warning("Connection error: %s", e)
        except Exception:
            logger.exception("Unexpected error handling client")
        finally:
            client_socket.close()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='KV Store Server')
    parser.add_argument('--socket', default=DEFAULT_SOCKET_PATH, help='Unix socket path')
    parser.add_argument('--data-dir', default=DEFAULT_DATA_DIR, help='Data directory')
    parser.add_argument('--read-timeout', type=float, default=DEFAULT_READ_TIMEOUT,
                        help='Seconds to wait for a request line')
    parser.add_argument('--serial', action='store_true', help='Handle one connection at a time')

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    server = KVServer(
        socket_path=args.socket,
        data_dir=args.data_dir,
        read_timeout=args.read_timeout,
        serial=args.serial
    )
    server.start()


if __name__ == '__main__':
    main()
