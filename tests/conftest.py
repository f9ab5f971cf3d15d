"""
Pytest fixtures for KV Store tests.
"""

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time

import pytest

# Add parent directory to path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

from client import KVClient


class ServerManager:
    """Helper class to manage a server process for tests."""

    def __init__(self, data_dir: str, socket_path: str, extra_args=None):
        self.data_dir = data_dir
        self.socket_path = socket_path
        self.extra_args = list(extra_args or [])
        self.process = None

    def start(self, clean: bool = True):
        """Start the server and wait until it accepts connections."""
        if clean and os.path.exists(self.data_dir):
            shutil.rmtree(self.data_dir)
        os.makedirs(self.data_dir, exist_ok=True)

        # A SIGKILLed server leaves its socket file behind
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self.process = subprocess.Popen(
            [sys.executable, "server.py", "--socket", self.socket_path,
             "--data-dir", self.data_dir] + self.extra_args,
            cwd=ROOT_DIR,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE
        )

        client = KVClient(self.socket_path, timeout=5)
        for _ in range(50):
            if self.process.poll() is not None:
                _, stderr = self.process.communicate()
                raise RuntimeError(f"Server failed to start: {stderr.decode()}")
            if os.path.exists(self.socket_path) and client.ping():
                return
            time.sleep(0.1)
        raise RuntimeError("Server did not start listening in time")

    def stop(self, graceful: bool = True):
        """Stop the server."""
        if self.process:
            if graceful and self.process.poll() is None:
                self.process.send_signal(signal.SIGTERM)
                try:
                    self.process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    self.process.kill()
                    self.process.wait()
            else:
                self.process.kill()
                self.process.wait()
            self.process = None

    def kill_hard(self):
        """Force kill with SIGKILL (-9)."""
        if self.process:
            os.kill(self.process.pid, signal.SIGKILL)
            self.process.wait()
            self.process = None

    def wait_for_exit(self, timeout: float = 5) -> int:
        """Wait for the server to exit on its own and return its exit code."""
        code = self.process.wait(timeout=timeout)
        self.process = None
        return code


@pytest.fixture
def socket_dir():
    """Short directory for socket files (Unix socket paths are length limited)."""
    path = tempfile.mkdtemp(prefix="kv-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def server_factory(tmp_path, socket_dir):
    """Build server managers that are stopped when the test ends."""
    managers = []

    def factory(*extra_args):
        manager = ServerManager(
            data_dir=str(tmp_path / "data"),
            socket_path=os.path.join(socket_dir, "store"),
            extra_args=extra_args
        )
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        manager.stop()


@pytest.fixture
def server(server_factory):
    """Fixture that provides a running server."""
    manager = server_factory()
    manager.start()
    return manager


@pytest.fixture
def client(server):
    """Fixture that provides a client for the running server."""
    return KVClient(server.socket_path, timeout=5)
