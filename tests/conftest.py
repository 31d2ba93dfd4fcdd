"""
Shared pytest fixtures for streamback tests.

This module provides fixtures for:
- Flask app and test client
- An in-memory fake source that records reads and open streams
- Run state and executor fixtures
- Mock fixtures for external services (S3, SSH)
"""

import io
import posixpath
import threading
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from streamback import create_app
from streamback.backup.executor import BackupExecutor
from streamback.backup.sources import (
    ENTRY_DIRECTORY,
    ENTRY_FILE,
    ConnectError,
    ListError,
    ReadError,
    TreeEntry
)
from streamback.backup.storage import LocalStorage
from streamback.state import RunState


class TrackingStream(io.BytesIO):
    """BytesIO that reports its close to the owning FakeSource."""

    def __init__(self, data, on_close, fail_after=None):
        super().__init__(data)
        self._on_close = on_close
        self._fail_after = fail_after
        self._reported = False

    def read(self, size=-1):
        if self._fail_after is not None and self.tell() >= self._fail_after:
            raise OSError("connection reset while reading")
        return super().read(size)

    def close(self):
        if not self._reported:
            self._reported = True
            self._on_close()
        super().close()


class FakeSource:
    """
    In-memory source adapter.

    ``tree`` is a nested dict: bytes values are files, dict values are
    directories. Paths are '/'-joined from the tree root ('' is the root).
    """

    def __init__(self, tree, fail_list=(), fail_read=(), fail_connect=False, block_list=None):
        self.tree = tree
        self.fail_list = set(fail_list)
        self.fail_read = set(fail_read)
        self.fail_connect = fail_connect
        self.block_list = block_list

        self.connected = False
        self.close_calls = 0
        self.list_calls = []
        self.read_calls = []
        self.open_streams = 0
        self.peak_open_streams = 0
        self._lock = threading.Lock()

    def _node(self, path):
        node = self.tree
        for part in [p for p in path.split('/') if p]:
            node = node[part]
        return node

    def connect(self):
        if self.fail_connect:
            raise ConnectError("Failed to connect to fake host: connection refused")
        self.connected = True
        return self

    def list(self, path):
        self.list_calls.append(path)
        if self.block_list is not None:
            self.block_list.wait(timeout=5)
        if path in self.fail_list:
            raise ListError(f"Failed to list {path}: permission denied")
        try:
            node = self._node(path)
        except KeyError:
            raise ListError(f"Directory not found: {path}")

        entries = []
        for name, value in node.items():
            if isinstance(value, dict):
                entries.append(TreeEntry(name, posixpath.join(path, name), ENTRY_DIRECTORY))
            else:
                entries.append(TreeEntry(name, posixpath.join(path, name), ENTRY_FILE, len(value)))
        return entries

    def open_read(self, path):
        self.read_calls.append(path)
        data = self._node(path)
        if path in self.fail_read:
            fail_after = 0
        else:
            fail_after = None

        with self._lock:
            self.open_streams += 1
            self.peak_open_streams = max(self.peak_open_streams, self.open_streams)
        return TrackingStream(data, self._stream_closed, fail_after)

    def _stream_closed(self):
        with self._lock:
            self.open_streams -= 1

    def close(self):
        self.close_calls += 1
        self.connected = False


class UnseekableBuffer:
    """Write-only sink without tell(), like the write end of a pipe."""

    def __init__(self):
        self._buffer = io.BytesIO()
        self.closed = False

    def write(self, data):
        return self._buffer.write(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True

    def getvalue(self):
        return self._buffer.getvalue()


@pytest.fixture
def sample_tree():
    """
    Source tree used by most scenarios:

    a.txt
    logs/x.log           (junk folder)
    world/level.dat
    world/region/r.0.0.mca
    world/empty/
    """
    return {
        'a.txt': b'hello world',
        'logs': {'x.log': b'noisy log line\n' * 10},
        'world': {
            'level.dat': b'\x00level-data' * 50,
            'region': {'r.0.0.mca': b'region-bytes' * 100},
            'empty': {},
        },
    }


@pytest.fixture
def fake_source(sample_tree):
    return FakeSource(sample_tree)


@pytest.fixture
def source_factory():
    """The FakeSource class, for tests that need custom failure settings."""
    return FakeSource


@pytest.fixture
def unseekable_buffer():
    return UnseekableBuffer()


@pytest.fixture
def run_state():
    return RunState()


@pytest.fixture
def local_storage(tmp_path):
    storage = LocalStorage(str(tmp_path / 'backups'))
    yield storage
    storage.close()


@pytest.fixture
def make_executor(local_storage, run_state):
    """Factory for executors backed by a given source and local storage."""
    def _make(source, folders=('',), storage=None, **kwargs):
        return BackupExecutor(
            source_factory=lambda: source,
            storage=storage or local_storage,
            folders=list(folders),
            run_state=run_state,
            **kwargs
        )
    return _make


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses a local source rooted in tmp_path and local storage, no scheduler.
    """
    source_root = tmp_path / 'source'
    (source_root / 'world').mkdir(parents=True)
    (source_root / 'world' / 'level.dat').write_bytes(b'level')

    app = create_app('testing', test_config={
        'LOCAL_SOURCE_ROOT': str(source_root),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'TARGET_FOLDERS': ['world'],
        'SFTP_HOST': 'mc.example.com',
    })

    yield app

    app.extensions['backup_executor'].storage.close()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('streamback.backup.sources.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh
