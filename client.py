"""
Client library for the Key-Value Store.
Provides a simple interface for interacting with the KV server.
"""

import socket
import sys
from typing import Optional

from codec import Command, Get, Shutdown, Store, decode_reply, encode_request


DEFAULT_SOCKET_PATH = "/tmp/store"


class KVClient:
    """
    Client for the KV Store server.

    The server handles one request per connection, so every call opens a
    fresh connection.

    Example:
        client = KVClient('/tmp/store')
        client.store('name', 'Alice')
        print(client.get('name'))  # 'Alice'

    Keys ending in a backslash cannot be stored: the escape scheme reads
    the delimiter after them as an escaped colon and the server drops the
    request.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, timeout: float = 30.0):
        """
        Initialize the client.

        Args:
            socket_path: Path of the server's Unix socket
            timeout: Socket timeout in seconds
        """
        self.socket_path = socket_path
        self.timeout = timeout

    def _connect(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        return sock

    def _send_command(self, command: Command, expect_reply: bool = False) -> Optional[bytes]:
        """
        Send one command on a new connection.

        Args:
            command: Command to send
            expect_reply: Read the reply line before closing

        Returns:
            The raw reply line (without newline) if expect_reply, else None
        """
        with self._connect() as sock:
            sock.sendall(encode_request(command))
            if not expect_reply:
                # Wait for the server to finish and close its end
                while sock.recv(4096):
                    pass
                return None

            buffer = b""
            while b"\n" not in buffer:
                chunk = sock.recv(65536)
                if not chunk:
                    break
                buffer += chunk
            line, _, _ = buffer.partition(b"\n")
            return line

    def store(self, key: str, value: str):
        """
        Store a value under a key.

        Args:
            key: The key to set
            value: The value to store
        """
        self._send_command(Store(key=key, value=value))

    def get(self, key: str) -> str:
        """
        Get a value by key.

        Args:
            key: The key to retrieve

        Returns:
            The stored value, or an empty string if the key is absent
        """
        return decode_reply(self._send_command(Get(key=key), expect_reply=True))

    def stop(self):
        """Ask the server to shut down."""
        self._send_command(Shutdown())

    def ping(self) -> bool:
        """
        Check if the server socket accepts connections.

        Returns:
            True if a connection could be made
        """
        try:
            sock = self._connect()
        except OSError:
            return False
        sock.close()
        return True


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description='KV Store Client')
    parser.add_argument('--socket', default=DEFAULT_SOCKET_PATH, help='Unix socket path')
    sub = parser.add_subparsers(dest='command', required=True)

    store_parser = sub.add_parser('store', help='Store a value under a key')
    store_parser.add_argument('key')
    store_parser.add_argument('value')

    get_parser = sub.add_parser('get', help='Print the value stored under a key')
    get_parser.add_argument('key')

    sub.add_parser('stop', help='Shut the server down')

    args = parser.parse_args(argv)
    client = KVClient(args.socket)

    try:
        if args.command == 'store':
            client.store(args.key, args.value)
        elif args.command == 'get':
            # Values may hold bytes that are not UTF-8
            value = client.get(args.key)
            sys.stdout.buffer.write(value.encode("utf-8", "surrogateescape") + b"\n")
            sys.stdout.buffer.flush()
        else:
            client.stop()
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
