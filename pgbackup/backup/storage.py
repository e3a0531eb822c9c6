"""
S3 storage for backup dumps.

Supports AWS S3 and S3-compatible services (Cloudflare R2, MinIO) through a
custom endpoint. Dumps are streamed: at most one upload part is held in
memory, whatever the size of the dump.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, BinaryIO

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from pgbackup.models import StorageTarget
from .keys import backup_prefix, build_backup_key


logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# S3 rejects non-final parts smaller than 5 MiB and uploads with more than 10,000 parts
MIN_PART_SIZE = 5 * MIB
MAX_PARTS = 10000
DEFAULT_PART_SIZE = 16 * MIB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadError(StorageError):
    """Raised when streaming a backup to S3 fails."""
    pass


def _describe(error: Exception) -> str:
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        return f"({error_code}) {error}"
    return str(error)


def read_part(stream: BinaryIO, size: int) -> bytes:
    """
    Read exactly `size` bytes from a stream, fewer only at end of stream.

    Raw streams may return short reads, so keep reading until the part is
    full or the stream is exhausted.
    """
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b''.join(parts)


class S3Storage:
    """
    Handler for streaming backups to S3.

    Object keys follow '[prefix/][folder/]<name>_<YYYYMMDD>_<HHMMSS>.dump'.
    """

    def __init__(self, target: StorageTarget, part_size: int = DEFAULT_PART_SIZE):
        """
        Initialize S3 storage handler.

        Args:
            target: Bucket, prefix, endpoint and credentials
            part_size: Multipart upload part size in bytes (minimum 5 MiB)
        """
        if part_size < MIN_PART_SIZE:
            raise StorageError(f"Part size must be at least {MIN_PART_SIZE} bytes, got {part_size}")

        self.target = target
        self.bucket_name = target.bucket
        self.part_size = part_size

        client_kwargs = {
            'aws_access_key_id': target.access_key_id,
            'aws_secret_access_key': target.secret_access_key,
        }
        if target.endpoint_url:
            # R2, MinIO and friends need path-style addressing
            client_kwargs['endpoint_url'] = target.endpoint_url
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})
            client_kwargs['region_name'] = target.region or 'auto'
        else:
            client_kwargs['region_name'] = target.region or 'us-east-1'

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def create_s3_path(self, name: str, folder: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """
        Build the object key for a new backup.

        Args:
            name: Database name
            folder: Optional folder under the global prefix
            now: Backup start time (default: current UTC time)

        Returns:
            Object key
        """
        return build_backup_key(name, self.target.prefix, folder, now)

    def backup_prefix(self, folder: Optional[str] = None) -> str:
        """Return the listing prefix for a folder ('' when nothing is configured)."""
        return backup_prefix(self.target.prefix, folder)

    def upload_stream(self, stream: BinaryIO, key: str) -> str:
        """
        Stream data to S3.

        Reads the stream one part at a time. A stream that fits in a single
        part is stored with put_object, anything longer uses a multipart
        upload that is aborted if reading or uploading fails.

        Args:
            stream: Readable binary stream, read once
            key: Destination object key

        Returns:
            Key of the stored object

        Raises:
            UploadError: If the stream or S3 fails
        """
        logger.info(f"Uploading to s3://{self.bucket_name}/{key}")

        try:
            first_part = read_part(stream, self.part_size)
            if len(first_part) < self.part_size:
                self._simple_upload(first_part, key)
                result_key = key
            else:
                result_key = self._multipart_upload(stream, key, first_part)
        except Exception as e:
            logger.error(f"Error uploading to S3: {_describe(e)}")
            raise UploadError(f"Upload of {key} failed: {_describe(e)}") from e

        logger.info(f"Upload complete: {result_key}")
        return result_key

    def _simple_upload(self, data: bytes, key: str):
        """
        Upload a small payload using put_object.

        Args:
            data: Complete object body
            key: S3 object key
        """
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data
        )

    def _multipart_upload(self, stream: BinaryIO, key: str, first_part: bytes) -> str:
        """
        Upload a stream using multipart upload.

        Args:
            stream: Remaining stream after first_part
            key: S3 object key
            first_part: Data already read from the stream

        Returns:
            Key reported by S3 on completion
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []
        uploaded_bytes = 0

        try:
            data = first_part
            part_number = 1

            while data:
                if part_number > MAX_PARTS:
                    raise UploadError(
                        f"Upload exceeds {MAX_PARTS} parts of {self.part_size} bytes; "
                        "increase the part size"
                    )

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })
                uploaded_bytes += len(data)
                logger.debug(f"Uploaded part {part_number} of {key} ({uploaded_bytes} bytes so far)")

                part_number += 1
                data = read_part(stream, self.part_size)

            response = self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            self._abort_multipart_upload(key, upload_id)
            raise

        return response.get('Key') or key

    def _abort_multipart_upload(self, key: str, upload_id: str):
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id
            )
            logger.info(f"Aborted multipart upload of {key}")
        except (ClientError, BotoCoreError) as e:
            # Parts stay billed until a bucket lifecycle rule removes them
            logger.warning(f"Failed to abort multipart upload {upload_id} of {key}: {_describe(e)}")

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Args:
            s3_key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 delete of {s3_key} failed: {_describe(e)}") from e

    def list_objects(self, prefix: str, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List every object under a prefix.

        Follows continuation tokens until the listing is exhausted.

        Args:
            prefix: S3 key prefix to filter by
            page_size: Keys per list request (default: S3's 1000)

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        pagination_config = {'PageSize': page_size} if page_size else {}

        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix,
                                           PaginationConfig=pagination_config):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 list of {prefix!r} failed: {_describe(e)}") from e
