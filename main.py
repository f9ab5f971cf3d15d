"""
Main entry point for the KV store.
Starts the Unix socket server in the foreground.
"""

import argparse
import logging
import os
import sys

from server import (
    DEFAULT_DATA_DIR,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_SOCKET_PATH,
    KVServer,
)


def main():
    parser = argparse.ArgumentParser(
        description='KV Store - a key-value store on a Unix socket',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the server on the default socket
  python main.py

  # Start with a custom socket and data directory
  python main.py --socket /tmp/kv.sock --data-dir /path/to/data

  # Use the client
  python client.py store name Alice
  python client.py get name
  python client.py stop

  # Run tests
  python -m pytest tests/ -v
"""
    )

    parser.add_argument(
        '--socket',
        default=DEFAULT_SOCKET_PATH,
        help=f'Unix socket path (default: {DEFAULT_SOCKET_PATH})'
    )
    parser.add_argument(
        '--data-dir',
        default=DEFAULT_DATA_DIR,
        help=f'Data directory for persistence (default: {DEFAULT_DATA_DIR})'
    )
    parser.add_argument(
        '--read-timeout',
        type=float,
        default=DEFAULT_READ_TIMEOUT,
        help=f'Seconds to wait for a request line (default: {DEFAULT_READ_TIMEOUT})'
    )
    parser.add_argument(
        '--serial',
        action='store_true',
        help='Handle one connection at a time on the accept thread'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version='KV Store 1.0.0'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    print("Configuration:")
    print(f"  Socket:   {args.socket}")
    print(f"  Data Dir: {os.path.abspath(args.data_dir)}")
    print(f"  Mode:     {'serial' if args.serial else 'threaded'}")
    print()

    server = KVServer(
        socket_path=args.socket,
        data_dir=args.data_dir,
        read_timeout=args.read_timeout,
        serial=args.serial
    )

    try:
        server.start()
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
