"""
pg_dump integration.

Provides:
- PgDump: client/server version checks and dump process startup
- DumpStream: the running pg_dump's stdout as a lazily read, single-pass stream

DumpStream couples the pg_dump subprocess and its consumer through a bounded
queue. A reader thread moves stdout chunks into the queue and blocks when it
is full, so a slow uploader stops the pipe from being drained and pg_dump
itself stalls. Memory held by the stream never exceeds
chunk_size * max_buffered_chunks.
"""

import logging
import os
import queue
import re
import signal
import subprocess
import threading
import time
from collections import deque
from typing import Dict, Iterator, List, Optional

import psycopg2

from pgbackup.models import ConnectionDetails


logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

# Log dump progress every 2 GiB of output
PROGRESS_LOG_BYTES = 2 * GIB

# pg_dump -v reports each object it dumps as "processing ..."
PROGRESS_MARKER = 'processing'

DEFAULT_CHUNK_SIZE = 1 * MIB
DEFAULT_MAX_BUFFERED_CHUNKS = 16
STDERR_TAIL_LINES = 20

_CLIENT_VERSION_PATTERN = re.compile(r'(\d+)\.(\d+)')
_SERVER_VERSION_PATTERN = re.compile(r'\s*(\d+)')


class DumpError(Exception):
    """Base class for pg_dump related failures."""
    pass


class ToolUnavailableError(DumpError):
    """Raised when the pg_dump binary cannot be executed."""
    pass


class VersionParseError(DumpError):
    """Raised when a PostgreSQL version string cannot be understood."""
    pass


class DatabaseConnectionError(DumpError):
    """Raised when the database server cannot be reached."""
    pass


class DumpProcessError(DumpError):
    """Raised when pg_dump exits unsuccessfully or its output cannot be read."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class _EndOfStream:
    """Queue sentinel carrying the pg_dump exit status or a reader failure."""

    def __init__(self, returncode: Optional[int] = None, error: Optional[BaseException] = None):
        self.returncode = returncode
        self.error = error


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            signame = signal.Signals(-returncode).name
        except ValueError:
            signame = str(-returncode)
        return f"was terminated by signal {signame}"
    return f"exited with code {returncode}"


class DumpStream:
    """
    Lazily produced pg_dump output.

    Supports read(size), iteration over chunks and use as a context manager.
    The stream can be read once. When pg_dump fails, the read that reaches the
    end of the output raises DumpProcessError, even if earlier reads already
    returned data.
    """

    def __init__(self, process: subprocess.Popen, description: str = 'pg_dump',
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 max_buffered_chunks: int = DEFAULT_MAX_BUFFERED_CHUNKS):
        """
        Start pumping a running process.

        Args:
            process: Process started with stdout and stderr pipes
            description: Name used in log and error messages
            chunk_size: Maximum bytes moved from the pipe per queue item
            max_buffered_chunks: Queue capacity between the pipe and the reader
        """
        self.process = process
        self.description = description
        self.chunk_size = chunk_size
        self.bytes_processed = 0
        self.returncode = None
        self.started_at = time.monotonic()

        self._queue = queue.Queue(maxsize=max_buffered_chunks)
        self._closed = threading.Event()
        self._pending = b''
        self._finished = False
        self._failure = None
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)

        self._stderr_thread = threading.Thread(
            target=self._pump_stderr, name=f"{description}-stderr", daemon=True
        )
        self._stdout_thread = threading.Thread(
            target=self._pump_stdout, name=f"{description}-stdout", daemon=True
        )
        self._stderr_thread.start()
        self._stdout_thread.start()

    @classmethod
    def start(cls, command: List[str], env: Optional[Dict[str, str]] = None, **kwargs) -> 'DumpStream':
        """
        Spawn a command and stream its stdout.

        Raises:
            ToolUnavailableError: If the executable cannot be started
        """
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env
            )
        except OSError as e:
            raise ToolUnavailableError(f"Failed to start {command[0]}: {e}") from e

        kwargs.setdefault('description', os.path.basename(command[0]))
        return cls(process, **kwargs)

    # ------------------------------------------------------------------
    # Producer side (background threads)
    # ------------------------------------------------------------------
    def _put(self, item) -> bool:
        """Block until the item is queued or the stream is closed."""
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _pump_stdout(self):
        stdout = self.process.stdout
        try:
            while True:
                chunk = stdout.read1(self.chunk_size)
                if not chunk:
                    break
                self._record_progress(len(chunk))
                if not self._put(chunk):
                    return

            returncode = self.process.wait()
            # Let the stderr logger finish so failures carry the final diagnostics
            self._stderr_thread.join()
            self._put(_EndOfStream(returncode=returncode))
        except Exception as e:
            # Handed to the consumer, which raises it from read()
            self._put(_EndOfStream(error=e))

    def _pump_stderr(self):
        try:
            for raw_line in self.process.stderr:
                message = raw_line.decode('utf-8', errors='replace').strip()
                if not message:
                    continue
                self._stderr_tail.append(message)
                if PROGRESS_MARKER in message:
                    logger.info(f"Progress: {message}")
                else:
                    logger.warning(f"{self.description} stderr: {message}")
        except (OSError, ValueError):
            # Pipe closed by close() while the process was still writing
            return

    def _record_progress(self, size: int):
        before = self.bytes_processed
        self.bytes_processed += size

        if before // PROGRESS_LOG_BYTES < self.bytes_processed // PROGRESS_LOG_BYTES:
            elapsed = max(time.monotonic() - self.started_at, 1e-6)
            mb_per_second = self.bytes_processed / MIB / elapsed
            logger.info(
                f"Dump progress: {self.bytes_processed / GIB:.2f}GB processed "
                f"({mb_per_second:.2f}MB/s)"
            )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    @property
    def finished(self) -> bool:
        return self._finished

    def _finish(self, end: _EndOfStream):
        self._finished = True
        duration = time.monotonic() - self.started_at

        if end.error is not None:
            logger.error(f"Failed reading {self.description} output after {duration:.2f}s: {end.error}")
            self._failure = DumpProcessError(f"Failed reading {self.description} output: {end.error}")
            raise self._failure from end.error

        self.returncode = end.returncode
        if end.returncode != 0:
            message = f"{self.description} {_describe_exit(end.returncode)} after {duration:.2f}s"
            logger.error(message)
            if self._stderr_tail:
                message += f": {self._stderr_tail[-1]}"
            self._failure = DumpProcessError(message, returncode=end.returncode)
            raise self._failure

        logger.info(
            f"{self.description} completed successfully in {duration:.2f}s, "
            f"processed {self.bytes_processed / GIB:.2f}GB"
        )

    def _next_chunk(self) -> bytes:
        """Return the next chunk of output, or b'' at the end of a successful dump."""
        if self._pending:
            chunk, self._pending = self._pending, b''
            return chunk
        if self._failure is not None:
            raise self._failure
        if self._finished:
            return b''
        if self._closed.is_set():
            raise ValueError("I/O operation on closed dump stream")

        item = self._queue.get()
        if isinstance(item, _EndOfStream):
            self._finish(item)
            return b''
        return item

    def read(self, size: int = -1) -> bytes:
        """
        Read up to `size` bytes, fewer only at the end of the stream.

        Raises:
            DumpProcessError: If pg_dump failed
        """
        if size is None or size < 0:
            return b''.join(iter(self._next_chunk, b''))

        parts = []
        remaining = size
        while remaining > 0:
            chunk = self._next_chunk()
            if not chunk:
                break
            if len(chunk) > remaining:
                chunk, self._pending = chunk[:remaining], chunk[remaining:]
            parts.append(chunk)
            remaining -= len(chunk)
        return b''.join(parts)

    def readable(self) -> bool:
        return True

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._next_chunk, b'')

    def close(self):
        """
        Stop the stream.

        A pg_dump still running is terminated (then killed) and the helper
        threads are joined. Safe to call more than once.
        """
        if self._closed.is_set():
            return
        self._closed.set()

        if self.process.poll() is None:
            logger.warning(f"Stopping {self.description} (pid {self.process.pid}) before it finished")
            self.process.terminate()
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()

        # Unblock a producer waiting on a full queue
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

        self._stdout_thread.join(timeout=10)
        self._stderr_thread.join(timeout=10)

        for pipe in (self.process.stdout, self.process.stderr):
            if pipe is not None:
                pipe.close()

        if self.returncode is None:
            self.returncode = self.process.returncode

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class PgDump:
    """
    Wrapper around the local pg_dump client.

    Dumps use the custom archive format (-F c) with verbose diagnostics (-v).
    The password reaches pg_dump through PGPASSWORD only, never argv.
    """

    def __init__(self, binary: str = 'pg_dump', connect_timeout: int = 10, sslmode: str = 'prefer',
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 max_buffered_chunks: int = DEFAULT_MAX_BUFFERED_CHUNKS):
        """
        Initialize pg_dump wrapper.

        Args:
            binary: pg_dump executable name or path
            connect_timeout: Seconds allowed for the server version check connection
            sslmode: libpq sslmode for the server version check
            chunk_size: Bytes per chunk read from pg_dump's stdout
            max_buffered_chunks: Chunks buffered ahead of the consumer
        """
        self.binary = binary
        self.connect_timeout = connect_timeout
        self.sslmode = sslmode
        self.chunk_size = chunk_size
        self.max_buffered_chunks = max_buffered_chunks

    def get_client_version(self) -> int:
        """
        Get the major version of the local pg_dump.

        Returns:
            Major version, e.g. 16

        Raises:
            ToolUnavailableError: If pg_dump cannot be run
            VersionParseError: If the output has no version number
        """
        try:
            result = subprocess.run(
                [self.binary, '--version'],
                capture_output=True,
                text=True,
                check=False
            )
        except OSError as e:
            raise ToolUnavailableError(f"Failed to run {self.binary}: {e}") from e

        if result.returncode != 0:
            message = result.stderr.strip() or f"exited with code {result.returncode}"
            raise ToolUnavailableError(f"{self.binary} --version failed: {message}")

        match = _CLIENT_VERSION_PATTERN.search(result.stdout)
        if not match:
            raise VersionParseError(
                f"Could not determine PostgreSQL client version from: {result.stdout.strip()!r}"
            )

        major = int(match.group(1))
        logger.info(f"PostgreSQL client version: {match.group(0)} (major: {major})")
        return major

    def check_server_version(self, details: ConnectionDetails) -> int:
        """
        Get the major version of the database server.

        The connection is closed whether or not the query succeeds.

        Args:
            details: Target database

        Returns:
            Major version, e.g. 16

        Raises:
            DatabaseConnectionError: If the server cannot be reached
            VersionParseError: If the server reports an unexpected version string
        """
        try:
            conn = psycopg2.connect(
                host=details.host,
                port=details.port,
                user=details.username,
                password=details.password,
                dbname=details.database,
                connect_timeout=self.connect_timeout,
                sslmode=self.sslmode
            )
        except psycopg2.Error as e:
            raise DatabaseConnectionError(
                f"Failed to connect to {details.host}:{details.port}/{details.database}: {e}"
            ) from e

        try:
            with conn.cursor() as cursor:
                cursor.execute('SHOW server_version;')
                version_string = cursor.fetchone()[0]
        finally:
            conn.close()

        match = _SERVER_VERSION_PATTERN.match(version_string or '')
        if not match:
            raise VersionParseError(f"Could not parse PostgreSQL server version: {version_string!r}")

        major = int(match.group(1))
        logger.info(f"PostgreSQL server version: {version_string} (major: {major})")
        return major

    @staticmethod
    def check_compatibility(client_version: int, server_version: int) -> bool:
        """
        Warn when pg_dump is older than the server.

        Returns:
            False if a mismatch warning was logged
        """
        if client_version < server_version:
            logger.warning(
                f"Client version ({client_version}) is older than server version "
                f"({server_version}). This might cause compatibility issues."
            )
            return False
        return True

    def build_command(self, details: ConnectionDetails) -> List[str]:
        return [
            self.binary,
            '-h', details.host,
            '-p', str(details.port),
            '-U', details.username,
            '-d', details.database,
            '-F', 'c',  # custom (compressed) archive format
            '-v',
        ]

    def build_env(self, details: ConnectionDetails) -> Dict[str, str]:
        env = os.environ.copy()
        env['PGPASSWORD'] = details.password
        return env

    def create_dump_stream(self, details: ConnectionDetails) -> DumpStream:
        """
        Start pg_dump for a database.

        Args:
            details: Target database

        Returns:
            DumpStream over pg_dump's stdout; the caller must close it

        Raises:
            ToolUnavailableError: If pg_dump cannot be started
        """
        logger.info(f"Starting PostgreSQL dump of database: {details.database} on {details.host}:{details.port}")

        return DumpStream.start(
            self.build_command(details),
            env=self.build_env(details),
            description=os.path.basename(self.binary),
            chunk_size=self.chunk_size,
            max_buffered_chunks=self.max_buffered_chunks
        )
