"""
Storage handlers for streamed backup archives.

Supports:
- S3Storage: Upload to AWS S3 (or any S3-compatible endpoint)
- LocalStorage: Store in a local directory

Both consume a readable, non-seekable stream on a background upload thread
as bytes become available. begin_upload() returns a PendingUpload whose
wait() yields the stored object's identifier.
"""

import logging
import os
import shutil
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from pathlib import Path
from typing import Optional, Dict, Any

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError

from .compression import get_content_type


logger = logging.getLogger(__name__)

# S3 rejects multipart parts below 5MB, so parts are buffered at 8MB each
MULTIPART_CHUNK_SIZE = 8 * 1024 * 1024
# Parts read ahead of the upload; bounds memory for unseekable streams
MAX_BUFFERED_PARTS = 2
COPY_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadError(StorageError):
    """Raised when a streamed upload fails or is not confirmed."""
    pass


class PendingUpload:
    """Handle for an upload running on a storage handler's worker thread."""

    def __init__(self, future, name: str):
        self._future = future
        self.name = name

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> str:
        """
        Block until the upload completes.

        Returns:
            Identifier of the stored object

        Raises:
            UploadError: If the upload failed
        """
        try:
            return self._future.result(timeout=timeout)
        except UploadError:
            raise
        except Exception as e:
            raise UploadError(f"Upload of {self.name} failed: {e}") from e

    def join(self, timeout: Optional[float] = None):
        """Wait for the upload thread to finish without inspecting the outcome."""
        wait_futures([self._future], timeout=timeout)


class _StreamingStorage:
    """Runs one upload at a time on a dedicated worker thread."""

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='upload')

    def begin_upload(self, name: str, stream, compression_format: str = 'zip') -> PendingUpload:
        """
        Start consuming ``stream`` into an object called ``name``.

        The stream's read end is closed once the upload stops, so a writer
        still feeding it is unblocked even when the upload fails.
        """
        future = self._executor.submit(self._run_upload, name, stream, compression_format)
        return PendingUpload(future, name)

    def _run_upload(self, name: str, stream, compression_format: str) -> str:
        try:
            return self._upload(name, stream, compression_format)
        finally:
            stream.close()

    def _upload(self, name: str, stream, compression_format: str) -> str:
        raise NotImplementedError

    def close(self):
        self._executor.shutdown(wait=True)


class S3Storage(_StreamingStorage):
    """
    Handler for streaming backups to AWS S3.

    Objects are stored under {key_prefix}{archive_name}. The archive size
    is never needed upfront: boto3's managed transfer switches to a
    multipart upload once the stream passes the multipart threshold.
    """

    def __init__(self, access_key: Optional[str], secret_key: Optional[str], bucket_name: str,
                 region: str = 'us-east-1', key_prefix: str = '', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (None to use the default credential chain)
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            key_prefix: Prefix prepended to every object key
            endpoint_url: Custom endpoint for S3-compatible services
        """
        super().__init__()
        self.bucket_name = bucket_name
        self.region = region
        self.key_prefix = key_prefix or ''
        self.transfer_config = TransferConfig(
            multipart_threshold=MULTIPART_CHUNK_SIZE,
            multipart_chunksize=MULTIPART_CHUNK_SIZE,
            max_concurrency=1,
        )
        self.transfer_config.max_in_memory_upload_chunks = MAX_BUFFERED_PARTS

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _upload(self, name: str, stream, compression_format: str) -> str:
        s3_key = f"{self.key_prefix}{name}"
        logger.info("Streaming upload to s3://%s/%s", self.bucket_name, s3_key)

        try:
            self.s3_client.upload_fileobj(
                stream,
                self.bucket_name,
                s3_key,
                ExtraArgs={'ContentType': get_content_type(compression_format)},
                Config=self.transfer_config
            )
            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")
        except Exception as e:
            raise UploadError(f"Failed to upload to S3: {e}")


class LocalStorage(_StreamingStorage):
    """
    Handler for storing streamed backups in a local directory.

    Data is written to {name}.part and renamed once the stream ends, so an
    interrupted run never leaves a truncated archive under the final name.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        super().__init__()
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _upload(self, name: str, stream, compression_format: str) -> str:
        dest_path = self.base_path / name
        part_path = dest_path.with_name(dest_path.name + '.part')
        logger.info("Streaming archive to %s", dest_path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(part_path, 'wb') as f:
                shutil.copyfileobj(stream, f, COPY_CHUNK_SIZE)
            os.replace(part_path, dest_path)
            return name

        except Exception as e:
            if part_path.exists():
                part_path.unlink()
            if isinstance(e, PermissionError):
                raise UploadError(f"Permission denied writing to {dest_path}: {e}")
            raise UploadError(f"Failed to store locally: {e}")

    def get_full_path(self, relative_path: str) -> str:
        """
        Get full filesystem path from relative path.

        Args:
            relative_path: Relative path from base_path

        Returns:
            Full filesystem path
        """
        return str(self.base_path / relative_path)


def create_storage(storage_type: str, config: Dict[str, Any]):
    """
    Factory function to create appropriate storage handler.

    Args:
        storage_type: 's3' or 'local'
        config: Configuration dict for the storage

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ValueError: If storage_type is invalid
    """
    if storage_type == 's3':
        return S3Storage(
            access_key=config.get('access_key'),
            secret_key=config.get('secret_key'),
            bucket_name=config['bucket_name'],
            region=config.get('region') or 'us-east-1',
            key_prefix=config.get('key_prefix', ''),
            endpoint_url=config.get('endpoint_url')
        )
    elif storage_type == 'local':
        return LocalStorage(config['base_path'])
    else:
        raise ValueError(f"Invalid storage type: {storage_type}")
