"""
Source handlers for streaming backups.

Supports:
- SSHSource: Read files from remote systems via SSH/SFTP
- LocalSource: Read files from the local filesystem

Both expose the same connection contract: connect(), list(), open_read()
and an idempotent close(). Nothing is copied to local disk; open_read()
hands back a readable stream that the archive builder consumes directly.
"""

import logging
import os
import posixpath
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy


logger = logging.getLogger(__name__)

ENTRY_FILE = 'file'
ENTRY_DIRECTORY = 'directory'


class SourceError(Exception):
    """Raised when source access fails."""
    pass


class ConnectError(SourceError):
    """Raised when the source connection cannot be established."""
    pass


class ListError(SourceError):
    """Raised when a directory listing fails."""
    pass


class ReadError(SourceError):
    """Raised when a file cannot be opened or read."""
    pass


@dataclass(frozen=True)
class TreeEntry:
    """A node discovered while listing a source directory."""
    name: str
    path: str
    kind: str
    size: Optional[int] = None

    @property
    def is_dir(self) -> bool:
        return self.kind == ENTRY_DIRECTORY


class SSHSource:
    """
    Handler for remote filesystem sources via SSH/SFTP.

    A connection is single-use: create one SSHSource per backup run.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SSH source handler.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - timeout: Connect timeout in seconds (default 30)
        """
        self.host = config.get('host') or config.get('hostname')
        self.port = int(config.get('port') or 22)
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')
        self.timeout = config.get('timeout') or 30

        self.ssh_client = None
        self.sftp_client = None

    def connect(self):
        """
        Establish SSH connection and open an SFTP session.

        Raises:
            ConnectError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout,
                'banner_timeout': self.timeout,
                'auth_timeout': self.timeout,
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise ConnectError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise ConnectError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            self.sftp_client.get_channel().settimeout(self.timeout)

        except ConnectError:
            raise
        except paramiko.AuthenticationException as e:
            raise ConnectError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise ConnectError(f"SSH connection failed: {e}")
        except Exception as e:
            raise ConnectError(f"Failed to connect to {self.host}: {e}")

        logger.info("Connected to %s:%s as %s", self.host, self.port, self.username)
        return self

    def list(self, path: str) -> List[TreeEntry]:
        """
        List a remote directory in the order the server returns it.

        Symlinks and other special files are reported as files.

        Raises:
            ListError: If the directory cannot be listed
        """
        if self.sftp_client is None:
            raise ListError(f"Not connected, cannot list {path}")

        try:
            attrs = self.sftp_client.listdir_attr(path)
        except FileNotFoundError:
            raise ListError(f"Remote directory not found: {path}")
        except PermissionError:
            raise ListError(f"Permission denied accessing remote directory: {path}")
        except Exception as e:
            raise ListError(f"Failed to list {path}: {e}")

        entries = []
        for attr in attrs:
            if attr.filename in ('.', '..'):
                continue
            is_dir = attr.st_mode is not None and stat.S_ISDIR(attr.st_mode)
            entries.append(TreeEntry(
                name=attr.filename,
                path=posixpath.join(path, attr.filename),
                kind=ENTRY_DIRECTORY if is_dir else ENTRY_FILE,
                size=attr.st_size,
            ))
        return entries

    def open_read(self, path: str):
        """
        Open a remote file for streaming reads.

        Raises:
            ReadError: If the file cannot be opened
        """
        if self.sftp_client is None:
            raise ReadError(f"Not connected, cannot read {path}")

        try:
            return self.sftp_client.open(path, 'rb')
        except FileNotFoundError:
            raise ReadError(f"Remote file not found: {path}")
        except PermissionError:
            raise ReadError(f"Permission denied accessing remote file: {path}")
        except Exception as e:
            raise ReadError(f"Failed to open {path}: {e}")

    def close(self):
        """Close SSH/SFTP connections. Safe to call repeatedly."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug("Ignoring SFTP close error: %s", e)
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug("Ignoring SSH close error: %s", e)
            self.ssh_client = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()


class LocalSource:
    """
    Handler for local filesystem sources.

    Lists are sorted by name so archives are reproducible. Symlinks to
    directories are followed and reported as directories.
    """

    def __init__(self, root: str = '/'):
        """
        Args:
            root: Directory that source paths are resolved against
        """
        self.root = Path(root).expanduser()
        self.connected = False

    def _resolve(self, path: str) -> Path:
        return self.root / path.lstrip('/')

    def connect(self):
        if not self.root.is_dir():
            raise ConnectError(f"Source root does not exist: {self.root}")
        self.connected = True
        return self

    def list(self, path: str) -> List[TreeEntry]:
        directory = self._resolve(path)
        try:
            with os.scandir(directory) as it:
                items = sorted(it, key=lambda item: item.name)
                entries = []
                for item in items:
                    is_dir = item.is_dir()
                    entries.append(TreeEntry(
                        name=item.name,
                        path=posixpath.join(path, item.name),
                        kind=ENTRY_DIRECTORY if is_dir else ENTRY_FILE,
                        size=None if is_dir else self._entry_size(item),
                    ))
                return entries
        except FileNotFoundError:
            raise ListError(f"Directory not found: {path}")
        except PermissionError:
            raise ListError(f"Permission denied accessing directory: {path}")
        except OSError as e:
            raise ListError(f"Failed to list {path}: {e}")

    @staticmethod
    def _entry_size(item) -> Optional[int]:
        try:
            return item.stat().st_size
        except OSError:
            # Dangling symlink: still listed as a file, opening it fails later
            return None

    def open_read(self, path: str):
        try:
            return open(self._resolve(path), 'rb')
        except FileNotFoundError:
            raise ReadError(f"File not found: {path}")
        except PermissionError:
            raise ReadError(f"Permission denied accessing file: {path}")
        except OSError as e:
            raise ReadError(f"Failed to open {path}: {e}")

    def close(self):
        """Local source has no persistent connections."""
        self.connected = False

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()


def create_source(source_type: str, config: Dict[str, Any]):
    """
    Factory function to create appropriate source handler.

    Args:
        source_type: 'ssh' or 'local'
        config: Configuration dict for the source

    Returns:
        SSHSource or LocalSource instance

    Raises:
        ValueError: If source_type is invalid
    """
    if source_type == 'ssh':
        return SSHSource(config)
    elif source_type == 'local':
        return LocalSource(config.get('root', '/'))
    else:
        raise ValueError(f"Invalid source type: {source_type}")
