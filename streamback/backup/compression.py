"""
Streaming archive builder for backups.

Entries are appended one at a time and written straight to an output
stream, which never needs to be seekable. Supports:
- zip: Deflate compressed zip (data descriptors, zip64 entries)
- tar.gz: Gzip compressed tar stream (entry sizes must be known upfront)
"""

import gzip
import logging
import tarfile
import time
import zipfile
from datetime import datetime, timezone
from typing import Optional

from .pipe import PipeClosedError
from .sources import ENTRY_DIRECTORY, ENTRY_FILE, ReadError


logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 5
DEFAULT_CHUNK_SIZE = 64 * 1024  # 64KB

ARCHIVE_FORMATS = {
    'zip': ('zip', 'application/zip'),
    'tar.gz': ('tar.gz', 'application/gzip'),
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class BuilderError(CompressionError):
    """Raised when the builder is used out of order or cannot write an entry."""
    pass


class _SourceReader:
    """Wraps a content stream so read failures surface as ReadError."""

    def __init__(self, stream, name: str):
        self._stream = stream
        self._name = name
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        try:
            data = self._stream.read(size)
        except Exception as e:
            raise ReadError(f"Failed to read {self._name}: {e}") from e
        self.bytes_read += len(data)
        return data


class ArchiveBuilder:
    """
    Incrementally builds a compressed archive into ``output``.

    append() relays a file's content stream to completion before it
    returns, so only one entry is ever in flight. finalize() seals the
    archive and closes ``output``.
    """

    def __init__(
        self,
        output,
        compression_format: str = 'zip',
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        if compression_format not in ARCHIVE_FORMATS:
            raise ValueError(
                f"Invalid compression format: {compression_format}. "
                f"Valid options: {list(ARCHIVE_FORMATS.keys())}"
            )
        if not 0 <= compression_level <= 9:
            raise ValueError(f"Compression level must be between 0 and 9, got {compression_level}")

        self.output = output
        self.compression_format = compression_format
        self.compression_level = compression_level
        self.chunk_size = chunk_size
        self.entry_count = 0

        self._finalized = False
        self._failed = False
        self._zip = None
        self._gzip = None
        self._tar = None

        if compression_format == 'zip':
            self._zip = zipfile.ZipFile(
                output, 'w',
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=compression_level
            )
        else:
            self._gzip = gzip.GzipFile(fileobj=output, mode='wb', compresslevel=compression_level)
            self._tar = tarfile.open(fileobj=self._gzip, mode='w|', format=tarfile.PAX_FORMAT)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def append(self, name: str, kind: str, stream=None, size: Optional[int] = None):
        """
        Add an entry to the archive.

        Args:
            name: Archive-relative name ('/' is appended for directories)
            kind: ENTRY_DIRECTORY or ENTRY_FILE
            stream: Readable content stream (files only), consumed to EOF
            size: Content length, required for tar.gz files

        Raises:
            BuilderError: If the builder is finalized or failed, or the entry cannot be written
            ReadError: If reading the content stream fails
            PipeClosedError: If the output stream has been broken downstream
        """
        if self._finalized:
            raise BuilderError(f"Cannot append {name}: archive already finalized")
        if self._failed:
            raise BuilderError(f"Cannot append {name}: archive is in a failed state")
        if kind == ENTRY_FILE and stream is None:
            raise BuilderError(f"No content stream for file entry: {name}")

        try:
            if kind == ENTRY_DIRECTORY:
                self._append_directory(name.rstrip('/') + '/')
            else:
                self._append_file(name, _SourceReader(stream, name), size)
        except (ReadError, PipeClosedError, BuilderError):
            self._failed = True
            raise
        except Exception as e:
            self._failed = True
            raise BuilderError(f"Failed to append {name}: {e}") from e

        self.entry_count += 1

    def _append_directory(self, name: str):
        if self._zip is not None:
            zinfo = zipfile.ZipInfo(name, date_time=time.localtime(time.time())[:6])
            zinfo.external_attr = (0o40755 << 16) | 0x10
            self._zip.writestr(zinfo, b'')
        else:
            tarinfo = tarfile.TarInfo(name)
            tarinfo.type = tarfile.DIRTYPE
            tarinfo.mode = 0o755
            tarinfo.mtime = int(time.time())
            self._tar.addfile(tarinfo)

    def _append_file(self, name: str, reader: _SourceReader, size: Optional[int]):
        if self._zip is not None:
            # force_zip64: the final size is unknown until the stream ends
            with self._zip.open(name, mode='w', force_zip64=True) as dest:
                while True:
                    chunk = reader.read(self.chunk_size)
                    if not chunk:
                        break
                    dest.write(chunk)
        else:
            if size is None:
                raise BuilderError(f"Size required for tar entry: {name}")
            tarinfo = tarfile.TarInfo(name)
            tarinfo.size = size
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            try:
                self._tar.addfile(tarinfo, reader)
            except PipeClosedError:
                raise
            except OSError as e:
                # tarfile reports a short content stream as "unexpected end of data"
                if reader.bytes_read < size:
                    raise ReadError(
                        f"{name} changed size during backup: expected {size} bytes, "
                        f"got {reader.bytes_read}"
                    ) from e
                raise
            if reader.read(1):
                raise ReadError(f"{name} changed size during backup: larger than {size} bytes")

    def finalize(self):
        """
        Seal the archive and close the output stream.

        Raises:
            BuilderError: If called twice or after a failed append
        """
        if self._finalized:
            raise BuilderError("Archive already finalized")
        if self._failed:
            raise BuilderError("Cannot finalize archive after a failed append")

        self._finalized = True
        try:
            if self._zip is not None:
                self._zip.close()
            else:
                self._tar.close()
                self._gzip.close()
            self.output.close()
        except PipeClosedError:
            self._failed = True
            raise
        except Exception as e:
            self._failed = True
            raise BuilderError(f"Failed to finalize archive: {e}") from e

        logger.debug("Archive finalized with %d entries", self.entry_count)

    def abort(self):
        """
        Stop building without sealing the archive properly.

        The writers are closed so nothing is flushed into the output later
        on garbage collection. The output should already be broken; write
        errors while closing are discarded. The output itself is not closed.
        """
        self._failed = True

        if self._zip is not None:
            closers = [self._zip.close]
        else:
            closers = [self._tar.close, self._gzip.close]

        for close in closers:
            try:
                close()
            except (OSError, ValueError) as e:
                logger.debug("Discarded archive trailer after abort: %s", e)


def generate_archive_filename(prefix: str, compression_format: str = 'zip',
                              now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {prefix}{YYYY-MM-DDTHH-MM-SS-mmmZ}.{ext}, an ISO 8601 UTC
    timestamp with ':' and '.' replaced by '-'.

    Args:
        prefix: Archive name prefix, e.g. 'backup-'
        compression_format: Compression format
        now: Timestamp to use (defaults to current UTC time)

    Returns:
        Filename (without path)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    timestamp = now.strftime('%Y-%m-%dT%H:%M:%S') + f".{now.microsecond // 1000:03d}Z"
    timestamp = timestamp.replace(':', '-').replace('.', '-')

    extension = ARCHIVE_FORMATS.get(compression_format, ARCHIVE_FORMATS['zip'])[0]
    return f"{prefix}{timestamp}.{extension}"


def get_content_type(compression_format: str) -> str:
    return ARCHIVE_FORMATS.get(compression_format, ARCHIVE_FORMATS['zip'])[1]
