"""
Backup executor - orchestrates a zero-disk streaming backup run.

Workflow:
1. Claim the run state (IDLE -> CONNECTING), or report busy
2. Connect to the source
3. Start the storage upload on the read end of a bounded pipe (STREAMING)
4. Walk each configured folder into the archive builder
5. Finalize the archive and wait for the upload to be confirmed
6. Release the source connection and return to IDLE
"""

import logging
import threading
from typing import Callable, Iterable, List, Optional

from streamback.log_buffer import SUCCESS
from streamback.state import RunState, RunStatus
from .compression import ArchiveBuilder, generate_archive_filename, DEFAULT_COMPRESSION_LEVEL
from .pipe import StreamPipe, PipeClosedError, DEFAULT_PIPE_SIZE
from .sources import create_source
from .storage import create_storage
from .walker import DirectoryWalker


logger = logging.getLogger(__name__)


class BackupBusyError(Exception):
    """Raised when a backup is triggered while another run is active."""
    pass


class BackupExecutor:
    """
    Runs streaming backups, one at a time.

    ``source_factory`` is called once per run since source connections are
    single-use. ``storage`` is reused across runs.
    """

    def __init__(
        self,
        source_factory: Callable,
        storage,
        folders: List[str],
        run_state: Optional[RunState] = None,
        archive_prefix: str = 'backup-',
        compression_format: str = 'zip',
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        excluded_folders: Optional[Iterable[str]] = None,
        pipe_size: int = DEFAULT_PIPE_SIZE
    ):
        self.source_factory = source_factory
        self.storage = storage
        self.folders = list(folders)
        self.run_state = run_state or RunState()
        self.archive_prefix = archive_prefix
        self.compression_format = compression_format
        self.compression_level = compression_level
        self.pipe_size = pipe_size
        self.walker = DirectoryWalker(self.run_state, excluded_folders)

    @classmethod
    def from_config(cls, config, run_state: Optional[RunState] = None) -> 'BackupExecutor':
        """Build an executor from a Flask config mapping."""
        source_type = config['SOURCE_TYPE']
        source_config = {
            'host': config.get('SFTP_HOST'),
            'port': config.get('SFTP_PORT'),
            'username': config.get('SFTP_USER'),
            'password': config.get('SFTP_PASS'),
            'private_key': config.get('SFTP_KEY_FILE'),
            'timeout': config.get('SFTP_TIMEOUT'),
            'root': config.get('LOCAL_SOURCE_ROOT'),
        }

        storage = create_storage(config['STORAGE_TYPE'], {
            'access_key': config.get('AWS_ACCESS_KEY_ID'),
            'secret_key': config.get('AWS_SECRET_ACCESS_KEY'),
            'bucket_name': config.get('S3_BUCKET'),
            'region': config.get('AWS_REGION'),
            'key_prefix': config.get('S3_KEY_PREFIX', ''),
            'endpoint_url': config.get('S3_ENDPOINT_URL'),
            'base_path': config.get('LOCAL_BACKUP_DIR'),
        })

        return cls(
            source_factory=lambda: create_source(source_type, source_config),
            storage=storage,
            folders=config['TARGET_FOLDERS'],
            run_state=run_state,
            archive_prefix=config['BACKUP_PREFIX'],
            compression_format=config['ARCHIVE_FORMAT'],
            compression_level=config['COMPRESSION_LEVEL'],
            excluded_folders=config['EXCLUDED_FOLDERS'],
            pipe_size=config['PIPE_BUFFER_SIZE']
        )

    def trigger(self) -> dict:
        """
        Run a backup in the calling thread.

        Returns:
            Snapshot of the run state after the run

        Raises:
            BackupBusyError: If a run is already active (state is left untouched)
        """
        if not self.run_state.try_begin():
            raise BackupBusyError("Backup already in progress")
        self._execute()
        return self.run_state.snapshot()

    def trigger_in_background(self, reason: Optional[str] = None) -> threading.Thread:
        """
        Claim the run state, then run the backup on a new thread.

        Args:
            reason: Logged once the run is claimed, before the run starts

        Raises:
            BackupBusyError: If a run is already active
        """
        if not self.run_state.try_begin():
            raise BackupBusyError("Backup already in progress")

        if reason:
            logger.info(reason)
        thread = threading.Thread(target=self._execute, name='backup-run', daemon=True)
        thread.start()
        return thread

    def _execute(self):
        """Run one claimed backup. Failures are recorded, never raised."""
        archive_name = generate_archive_filename(self.archive_prefix, self.compression_format)
        self.run_state.start_run(archive_name)
        logger.info("Starting optimized stream backup: %s", archive_name)

        source = None
        try:
            source = self.source_factory()
            source.connect()
            self._stream(source, archive_name)

        except Exception as e:
            self.run_state.record_failure(str(e))
            logger.error("Backup failed: %s", e)

        finally:
            if source is not None:
                source.close()
            self.run_state.finish()

    def _stream(self, source, archive_name: str):
        self.run_state.set_status(RunStatus.STREAMING)
        logger.info("Initializing upload stream...")

        pipe = StreamPipe(self.pipe_size)
        upload = self.storage.begin_upload(archive_name, pipe.reader, self.compression_format)

        builder = None
        try:
            builder = ArchiveBuilder(pipe.writer, self.compression_format, self.compression_level)

            for folder in self.folders:
                logger.info("Scanning folder: %s", folder)
                self.walker.walk(source, builder, folder, folder.strip('/'))

            logger.info("Finalizing archive stream...")
            builder.finalize()

        except Exception as e:
            # Break the pipe first so the aborted archive's trailer is discarded
            pipe.fail(e)
            if builder is not None:
                builder.abort()
            upload.join()
            if isinstance(e, PipeClosedError):
                # The upload side broke the pipe; report its error instead
                upload.wait()
            raise

        object_id = upload.wait()
        self.run_state.record_success(object_id)
        logger.log(SUCCESS, "Backup complete! Object ID: %s", object_id)
