"""
Unit tests for backup executor (streamback/backup/executor.py).

Tests BackupExecutor for orchestrating complete streaming backup runs.
"""

import io
import os
import tarfile
import threading
import zipfile

import pytest

from streamback.backup.executor import BackupExecutor, BackupBusyError
from streamback.backup.sources import LocalSource
from streamback.backup.storage import LocalStorage, S3Storage, UploadError
from streamback.state import RunState, RunStatus


def _read_zip(storage, run_state):
    path = storage.get_full_path(run_state.last_object_id)
    with zipfile.ZipFile(path) as zf:
        return zf.namelist(), {name: zf.read(name) for name in zf.namelist()}


class ConfirmFailingStorage(LocalStorage):
    """Consumes the whole archive, then fails to confirm it."""

    def _upload(self, name, stream, compression_format):
        super()._upload(name, stream, compression_format)
        raise UploadError("upload confirmation timed out")


class EarlyFailingStorage(LocalStorage):
    """Reads a little of the stream, then the destination goes away."""

    def _upload(self, name, stream, compression_format):
        stream.read(16)
        raise UploadError("bucket disappeared")


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, fake_source, local_storage):
        executor = BackupExecutor(lambda: fake_source, local_storage, ['world'])

        assert executor.folders == ['world']
        assert executor.archive_prefix == 'backup-'
        assert executor.compression_format == 'zip'
        assert executor.compression_level == 5
        assert isinstance(executor.run_state, RunState)
        assert executor.run_state.status == RunStatus.IDLE

    def test_junk_folder_scenario(self, source_factory, make_executor, local_storage, run_state):
        """Test the archive holds a.txt, world/ and world/level.dat only."""
        source = source_factory({
            'a.txt': b'a',
            'logs': {'x.log': b'log'},
            'world': {'level.dat': b'level'},
        })
        executor = make_executor(source, folders=[''])

        snapshot = executor.trigger()

        names, contents = _read_zip(local_storage, run_state)
        assert names == ['a.txt', 'world/', 'world/level.dat']
        assert contents['world/level.dat'] == b'level'
        assert snapshot['file_count'] == 2
        assert snapshot['status'] == 'IDLE'

    def test_successful_backup_updates_state(self, fake_source, make_executor, run_state):
        """Test a successful run records its outcome and returns to IDLE."""
        executor = make_executor(fake_source, folders=['world'])

        executor.trigger()

        assert run_state.status == RunStatus.IDLE
        assert run_state.last_outcome == 'success'
        assert run_state.last_object_id == run_state.archive_name
        assert run_state.archive_name.startswith('backup-')
        assert run_state.archive_name.endswith('.zip')
        assert run_state.last_backup is not None
        assert run_state.completed_at is not None
        assert run_state.failure_reason is None
        assert run_state.current_file == ''
        assert run_state.file_count == 2

    def test_source_released_after_success(self, fake_source, make_executor):
        make_executor(fake_source, folders=['world']).trigger()

        assert fake_source.close_calls == 1
        assert fake_source.connected is False

    def test_folders_processed_in_order(self, fake_source, make_executor, local_storage, run_state):
        """Test each top-level folder is mirrored under its own path, sequentially."""
        executor = make_executor(fake_source, folders=['/world/region', 'logs'])

        executor.trigger()

        names, _ = _read_zip(local_storage, run_state)
        assert names[0] == 'world/region/r.0.0.mca'
        assert names[1] == 'logs/x.log'
        assert fake_source.peak_open_streams == 1

    def test_connect_failure(self, sample_tree, source_factory, make_executor, run_state, tmp_path):
        """Test a connection failure is recorded and the source is still released."""
        source = source_factory(sample_tree, fail_connect=True)
        executor = make_executor(source, folders=['world'])

        executor.trigger()

        assert run_state.status == RunStatus.IDLE
        assert 'connection refused' in run_state.failure_reason
        assert run_state.last_outcome == 'failed'
        assert run_state.file_count == 0
        assert source.close_calls == 1
        assert list((tmp_path / 'backups').iterdir()) == []

    def test_listing_failure_is_not_fatal(self, sample_tree, source_factory, make_executor,
                                          local_storage, run_state, caplog):
        """Test a failed world/region listing still completes the backup."""
        source = source_factory(sample_tree, fail_list={'world/region'})
        executor = make_executor(source, folders=[''])

        with caplog.at_level('INFO', logger='streamback'):
            executor.trigger()

        assert run_state.last_outcome == 'success'
        names, _ = _read_zip(local_storage, run_state)
        assert 'world/level.dat' in names
        assert 'world/empty/' in names
        assert 'world/region/r.0.0.mca' not in names
        assert 'Failed to process world/region' in caplog.text

    def test_upload_confirmation_failure(self, fake_source, make_executor, run_state, tmp_path):
        """Test a failed confirmation after finalize ends IDLE with a failure reason."""
        storage = ConfirmFailingStorage(str(tmp_path / 'confirm'))
        executor = make_executor(fake_source, folders=[''], storage=storage)

        executor.trigger()
        storage.close()

        assert run_state.status == RunStatus.IDLE
        assert run_state.last_outcome == 'failed'
        assert 'upload confirmation timed out' in run_state.failure_reason
        assert run_state.last_backup is None
        assert run_state.file_count == 3

    def test_upload_failure_mid_stream_reports_upload_error(self, source_factory, make_executor,
                                                            run_state, tmp_path):
        """Test a sink that dies mid-stream unblocks the walker and reports its own error."""
        source = source_factory({'world': {'region.mca': os.urandom(200000)}})
        storage = EarlyFailingStorage(str(tmp_path / 'early'))
        executor = make_executor(source, folders=[''], storage=storage, pipe_size=64)

        executor.trigger()
        storage.close()

        assert run_state.status == RunStatus.IDLE
        assert 'bucket disappeared' in run_state.failure_reason
        assert source.open_streams == 0
        assert source.close_calls == 1

    def test_read_failure_aborts_run(self, sample_tree, source_factory, make_executor,
                                     run_state, tmp_path, caplog):
        """Test a single file failure abandons the whole run."""
        source = source_factory(sample_tree, fail_read={'world/level.dat'})
        executor = make_executor(source, folders=[''])

        with caplog.at_level('ERROR', logger='streamback'):
            executor.trigger()

        assert run_state.status == RunStatus.IDLE
        assert run_state.last_outcome == 'failed'
        assert 'world/level.dat' in run_state.failure_reason
        assert run_state.file_count == 2
        assert 'Backup failed' in caplog.text
        # The partial archive is not kept under its final name
        assert list((tmp_path / 'backups').iterdir()) == []

    def test_success_logged_at_success_level(self, fake_source, make_executor, caplog):
        with caplog.at_level('INFO', logger='streamback'):
            make_executor(fake_source, folders=['world']).trigger()

        records = [r for r in caplog.records if 'Backup complete!' in r.getMessage()]
        assert len(records) == 1
        assert records[0].levelname == 'SUCCESS'

    def test_tar_gz_format(self, fake_source, make_executor, local_storage, run_state):
        executor = make_executor(fake_source, folders=['world'], compression_format='tar.gz')

        executor.trigger()

        assert run_state.archive_name.endswith('.tar.gz')
        path = local_storage.get_full_path(run_state.last_object_id)
        with tarfile.open(path, 'r:gz') as tar:
            assert 'world/level.dat' in tar.getnames()

    def test_backup_to_s3(self, mock_s3, fake_source, run_state):
        """Test an end-to-end streamed backup into S3."""
        storage = S3Storage('k', 's', 'test-bucket', key_prefix='mc/')
        executor = BackupExecutor(lambda: fake_source, storage, [''], run_state=run_state,
                                  archive_prefix='world-')

        executor.trigger()
        storage.close()

        assert run_state.last_outcome == 'success'
        assert run_state.last_object_id.startswith('mc/world-')
        body = mock_s3.Object('test-bucket', run_state.last_object_id).get()['Body'].read()
        with zipfile.ZipFile(io.BytesIO(body)) as zf:
            assert 'world/region/r.0.0.mca' in zf.namelist()


class TestTriggerMutualExclusion:
    """Test that only one run can be active."""

    def test_trigger_while_busy_raises(self, fake_source, make_executor, run_state):
        """Test trigger() signals busy without touching the run state."""
        executor = make_executor(fake_source, folders=['world'])
        assert run_state.try_begin()
        run_state.file_count = 7

        with pytest.raises(BackupBusyError):
            executor.trigger()

        assert run_state.file_count == 7
        assert run_state.status == RunStatus.CONNECTING
        assert fake_source.list_calls == []

    def test_background_trigger_blocks_second_run(self, sample_tree, source_factory,
                                                  make_executor, run_state):
        """Test a manual trigger racing an active run is rejected."""
        release = threading.Event()
        source = source_factory(sample_tree, block_list=release)
        executor = make_executor(source, folders=['world'])

        thread = executor.trigger_in_background()
        try:
            with pytest.raises(BackupBusyError):
                executor.trigger()
            with pytest.raises(BackupBusyError):
                executor.trigger_in_background()
        finally:
            release.set()
            thread.join(timeout=10)

        assert run_state.status == RunStatus.IDLE
        assert run_state.last_outcome == 'success'
        assert source.close_calls == 1

    def test_background_trigger_logs_reason_before_run(self, sample_tree, source_factory,
                                                       make_executor, caplog):
        """Test the trigger reason is logged before the run's first message."""
        release = threading.Event()
        source = source_factory(sample_tree, block_list=release)
        executor = make_executor(source, folders=['world'])

        with caplog.at_level('INFO', logger='streamback'):
            thread = executor.trigger_in_background(reason='Manual trigger received')
            try:
                logged = [r.getMessage() for r in caplog.records]
                assert 'Manual trigger received' in logged
            finally:
                release.set()
                thread.join(timeout=10)

        messages = [r.getMessage() for r in caplog.records]
        manual = messages.index('Manual trigger received')
        started = next(i for i, m in enumerate(messages) if m.startswith('Starting optimized'))
        assert manual < started

    def test_busy_background_trigger_logs_nothing(self, sample_tree, source_factory,
                                                  make_executor, caplog):
        release = threading.Event()
        source = source_factory(sample_tree, block_list=release)
        executor = make_executor(source, folders=['world'])

        thread = executor.trigger_in_background()
        try:
            with caplog.at_level('INFO', logger='streamback'):
                with pytest.raises(BackupBusyError):
                    executor.trigger_in_background(reason='Manual trigger received')
        finally:
            release.set()
            thread.join(timeout=10)

        assert 'Manual trigger received' not in caplog.text

    def test_concurrent_triggers_start_one_run(self, fake_source, make_executor, run_state):
        """Test racing triggers never overlap: each accepted one runs to completion."""
        executor = make_executor(fake_source, folders=['world'])
        results = []
        barrier = threading.Barrier(4)

        def attempt():
            barrier.wait()
            try:
                results.append(executor.trigger_in_background())
            except BackupBusyError:
                results.append(None)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        runs = [r for r in results if r is not None]
        for run in runs:
            run.join(timeout=10)

        assert len(results) == 4
        assert 1 <= len(runs) <= 4
        assert fake_source.close_calls == len(runs)

    def test_trigger_after_run_is_allowed(self, fake_source, make_executor, run_state):
        executor = make_executor(fake_source, folders=['world'])

        executor.trigger()
        executor.trigger()

        assert fake_source.close_calls == 2
        assert run_state.file_count == 2


class TestFromConfig:
    """Test building an executor from configuration."""

    def test_from_config_local(self, tmp_path):
        config = {
            'SOURCE_TYPE': 'local',
            'LOCAL_SOURCE_ROOT': str(tmp_path),
            'STORAGE_TYPE': 'local',
            'LOCAL_BACKUP_DIR': str(tmp_path / 'out'),
            'TARGET_FOLDERS': ['world', 'plugins'],
            'BACKUP_PREFIX': 'mc-',
            'ARCHIVE_FORMAT': 'zip',
            'COMPRESSION_LEVEL': 3,
            'EXCLUDED_FOLDERS': ['logs'],
            'PIPE_BUFFER_SIZE': 4096,
        }

        executor = BackupExecutor.from_config(config)
        executor.storage.close()

        assert executor.folders == ['world', 'plugins']
        assert executor.archive_prefix == 'mc-'
        assert executor.compression_level == 3
        assert executor.pipe_size == 4096
        assert executor.walker.excluded_folders == {'logs'}
        assert isinstance(executor.storage, LocalStorage)
        assert isinstance(executor.source_factory(), LocalSource)
        # A fresh source per run
        assert executor.source_factory() is not executor.source_factory()
