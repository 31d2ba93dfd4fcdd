"""
Bounded in-memory pipe between the archive builder and the storage upload.

The builder writes compressed bytes into one end while the storage handler
reads from the other on its upload thread. At most ``max_bytes`` are held in
the pipe: a writer blocks while it is full and a reader blocks while it is
empty. Either side can break the pipe, which wakes the other with
PipeClosedError.
"""

import threading

DEFAULT_PIPE_SIZE = 1024 * 1024  # 1MB


class PipeClosedError(OSError):
    """Raised when the other end of the pipe has failed or gone away."""
    pass


class StreamPipe:
    """Fixed-capacity byte channel with a blocking reader and writer."""

    def __init__(self, max_bytes: int = DEFAULT_PIPE_SIZE):
        if max_bytes <= 0:
            raise ValueError("Pipe size must be positive")

        self.max_bytes = max_bytes
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._write_closed = False
        self._read_closed = False
        self._error = None

        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    def _check_error(self):
        if self._error is not None:
            raise PipeClosedError(f"Pipe broken: {self._error}") from self._error

    def write(self, data) -> int:
        view = memoryview(data).cast('B')
        written = 0

        with self._cond:
            while written < len(view):
                while len(self._buffer) >= self.max_bytes and self._error is None and not self._read_closed:
                    self._cond.wait()
                self._check_error()
                if self._read_closed:
                    raise PipeClosedError("Reader closed the pipe")
                if self._write_closed:
                    raise PipeClosedError("Write to closed pipe")

                room = self.max_bytes - len(self._buffer)
                chunk = view[written:written + room]
                self._buffer += chunk
                written += len(chunk)
                self._cond.notify_all()

        return written

    def read(self, size: int = -1) -> bytes:
        """
        Read ``size`` bytes, blocking until they arrive or the writer closes.

        A short result only ever means end of stream, matching a regular
        file's read().
        """
        if size == 0:
            return b''

        chunks = []
        remaining = size

        with self._cond:
            while size < 0 or remaining > 0:
                while not self._buffer and not self._write_closed and self._error is None:
                    self._cond.wait()
                self._check_error()
                if not self._buffer:
                    break

                take = len(self._buffer) if size < 0 else min(remaining, len(self._buffer))
                chunks.append(bytes(self._buffer[:take]))
                del self._buffer[:take]
                remaining -= take
                self._cond.notify_all()

        return b''.join(chunks)

    def close_write(self):
        with self._cond:
            self._write_closed = True
            self._cond.notify_all()

    def close_read(self):
        with self._cond:
            self._read_closed = True
            self._buffer.clear()
            self._cond.notify_all()

    def fail(self, error: BaseException):
        """Break the pipe so both ends raise PipeClosedError."""
        with self._cond:
            if self._error is None:
                self._error = error
            self._buffer.clear()
            self._cond.notify_all()

    @property
    def buffered(self) -> int:
        with self._cond:
            return len(self._buffer)


class PipeReader:
    """Read end of a StreamPipe. Not seekable."""

    def __init__(self, pipe: StreamPipe):
        self._pipe = pipe
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if size is None:
            size = -1
        return self._pipe.read(size)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def close(self):
        if not self.closed:
            self.closed = True
            self._pipe.close_read()


class PipeWriter:
    """
    Write end of a StreamPipe.

    There is no tell(): zipfile treats the output as unseekable and writes
    data descriptors instead of seeking back.
    """

    def __init__(self, pipe: StreamPipe):
        self._pipe = pipe
        self.closed = False

    def write(self, data) -> int:
        if self.closed:
            raise PipeClosedError("Write to closed pipe")
        return self._pipe.write(data)

    def writable(self) -> bool:
        return True

    def flush(self):
        pass

    def close(self):
        if not self.closed:
            self.closed = True
            self._pipe.close_write()
