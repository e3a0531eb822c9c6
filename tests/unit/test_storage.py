"""
Unit tests for S3 storage (pgbackup/backup/storage.py).

Uploads, listings and deletions run against a moto-mocked bucket.
"""

import io
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from pgbackup.backup.dump import DumpProcessError
from pgbackup.backup.storage import (
    S3Storage,
    StorageError,
    UploadError,
    MIB,
    MIN_PART_SIZE,
    read_part
)
from pgbackup.models import StorageTarget

from conftest import ChunkedStream


class TestS3StorageInit:
    """Test S3Storage construction."""

    def test_part_size_below_minimum_rejected(self, storage_target):
        with pytest.raises(StorageError, match='Part size'):
            S3Storage(storage_target, part_size=MIN_PART_SIZE - 1)

    def test_custom_endpoint_uses_path_style(self):
        """Test S3-compatible endpoints get path addressing and the 'auto' region."""
        target = StorageTarget(
            bucket='backups',
            access_key_id='key',
            secret_access_key='secret',
            endpoint_url='https://account.r2.cloudflarestorage.com'
        )

        storage = S3Storage(target)

        assert storage.s3_client.meta.endpoint_url == 'https://account.r2.cloudflarestorage.com'
        assert storage.s3_client.meta.region_name == 'auto'
        assert storage.s3_client.meta.config.s3 == {'addressing_style': 'path'}

    def test_aws_defaults_to_us_east_1(self):
        storage = S3Storage(StorageTarget(bucket='b', access_key_id='k', secret_access_key='s'))

        assert storage.s3_client.meta.region_name == 'us-east-1'

    def test_create_s3_path_uses_prefix_and_folder(self, mock_s3):
        target = StorageTarget(bucket='test-bucket', access_key_id='k', secret_access_key='s',
                               prefix='backups/')
        storage = S3Storage(target)
        when = datetime(2024, 1, 15, 12, 30, 45, tzinfo=timezone.utc)

        assert storage.create_s3_path('app', 'prod', when) == 'backups/prod/app_20240115_123045.dump'
        assert storage.backup_prefix('prod') == 'backups/prod/'
        assert storage.backup_prefix() == 'backups/'


class TestReadPart:
    """Test read_part gathers short reads."""

    def test_fills_part_from_short_reads(self):
        stream = ChunkedStream(3 * MIB)

        assert len(read_part(stream, 2 * MIB + 10)) == 2 * MIB + 10
        assert len(read_part(stream, 2 * MIB)) == MIB - 10
        assert read_part(stream, MIB) == b''


class TestS3StorageUpload:
    """Test streaming uploads."""

    def test_small_stream_uses_single_put(self, s3_storage, mock_s3):
        """Test data smaller than one part is stored with put_object."""
        body = b'PGDMP' + b'\x00' * 1000

        with patch.object(s3_storage.s3_client, 'create_multipart_upload') as create_multipart:
            key = s3_storage.upload_stream(io.BytesIO(body), 'prod/app_20240115_123045.dump')

        create_multipart.assert_not_called()
        assert key == 'prod/app_20240115_123045.dump'

        obj = mock_s3.get_object(Bucket='test-bucket', Key=key)
        assert obj['Body'].read() == body
        assert '-' not in obj['ETag']

    def test_empty_stream_creates_empty_object(self, s3_storage, mock_s3):
        s3_storage.upload_stream(io.BytesIO(b''), 'empty.dump')

        obj = mock_s3.head_object(Bucket='test-bucket', Key='empty.dump')
        assert obj['ContentLength'] == 0

    def test_large_stream_uses_multipart(self, s3_storage, mock_s3):
        """Test 12 MiB with 5 MiB parts is uploaded as three parts."""
        stream = ChunkedStream(12 * MIB)

        key = s3_storage.upload_stream(stream, 'db_20240115_123045.dump')

        obj = mock_s3.get_object(Bucket='test-bucket', Key=key)
        data = obj['Body'].read()
        assert len(data) == 12 * MIB
        assert data == b'x' * (12 * MIB)
        assert obj['ETag'].strip('"').endswith('-3')

    def test_stream_of_exactly_one_part(self, s3_storage, mock_s3):
        s3_storage.upload_stream(ChunkedStream(MIN_PART_SIZE), 'exact.dump')

        obj = mock_s3.head_object(Bucket='test-bucket', Key='exact.dump')
        assert obj['ContentLength'] == MIN_PART_SIZE

    def test_reads_never_exceed_part_size(self, s3_storage):
        """Test at most one part is requested from the stream at a time."""
        stream = ChunkedStream(12 * MIB)

        s3_storage.upload_stream(stream, 'bounded.dump')

        assert stream.read_sizes
        assert max(stream.read_sizes) <= s3_storage.part_size

    def test_stream_failure_aborts_multipart_upload(self, s3_storage, mock_s3):
        """Test a dump failing mid-upload leaves no object and no pending upload."""
        failure = DumpProcessError('pg_dump exited with code 1', returncode=1)
        stream = ChunkedStream(12 * MIB, fail_after=6 * MIB, error=failure)

        with pytest.raises(UploadError) as exc_info:
            s3_storage.upload_stream(stream, 'broken.dump')

        assert exc_info.value.__cause__ is failure
        assert 'pg_dump exited with code 1' in str(exc_info.value)
        assert mock_s3.list_objects_v2(Bucket='test-bucket').get('KeyCount', 0) == 0
        assert mock_s3.list_multipart_uploads(Bucket='test-bucket').get('Uploads', []) == []

    def test_stream_failure_before_first_part(self, s3_storage, mock_s3):
        failure = DumpProcessError('pg_dump exited with code 1', returncode=1)
        stream = ChunkedStream(MIB, fail_after=MIB, error=failure)

        with pytest.raises(UploadError) as exc_info:
            s3_storage.upload_stream(stream, 'broken.dump')

        assert exc_info.value.__cause__ is failure
        assert mock_s3.list_objects_v2(Bucket='test-bucket').get('KeyCount', 0) == 0

    def test_too_many_parts(self, s3_storage, mock_s3):
        with patch('pgbackup.backup.storage.MAX_PARTS', 2):
            with pytest.raises(UploadError, match='exceeds 2 parts'):
                s3_storage.upload_stream(ChunkedStream(12 * MIB), 'huge.dump')

        assert mock_s3.list_multipart_uploads(Bucket='test-bucket').get('Uploads', []) == []

    def test_abort_failure_is_logged(self, s3_storage, caplog):
        """Test the original error is raised even when the abort itself fails."""
        failure = DumpProcessError('pg_dump exited with code 1', returncode=1)
        stream = ChunkedStream(12 * MIB, fail_after=6 * MIB, error=failure)
        abort_error = ClientError({'Error': {'Code': 'InternalError', 'Message': 'boom'}},
                                  'AbortMultipartUpload')

        with patch.object(s3_storage.s3_client, 'abort_multipart_upload', side_effect=abort_error):
            with pytest.raises(UploadError) as exc_info:
                s3_storage.upload_stream(stream, 'broken.dump')

        assert exc_info.value.__cause__ is failure
        assert 'Failed to abort multipart upload' in caplog.text

    def test_upload_to_missing_bucket(self, mock_s3):
        storage = S3Storage(StorageTarget(bucket='missing-bucket', access_key_id='k',
                                          secret_access_key='s', region='us-east-1'))

        with pytest.raises(UploadError, match='NoSuchBucket'):
            storage.upload_stream(io.BytesIO(b'data'), 'db.dump')

    def test_upload_error_is_storage_error(self):
        assert issubclass(UploadError, StorageError)


class TestS3StorageObjects:
    """Test listing and deletion."""

    def test_list_objects_follows_pages(self, s3_storage, mock_s3):
        """Test every page of a truncated listing is returned."""
        for name in ('a', 'b', 'c'):
            mock_s3.put_object(Bucket='test-bucket', Key=f'prod/{name}.dump', Body=b'1')
        mock_s3.put_object(Bucket='test-bucket', Key='other/d.dump', Body=b'1')

        with patch.object(s3_storage.s3_client, 'list_objects_v2',
                          wraps=s3_storage.s3_client.list_objects_v2) as list_call:
            objects = s3_storage.list_objects('prod/', page_size=1)

        assert [obj['Key'] for obj in objects] == ['prod/a.dump', 'prod/b.dump', 'prod/c.dump']
        assert list_call.call_count > 1
        assert set(objects[0]) == {'Key', 'LastModified', 'Size'}
        assert objects[0]['Size'] == 1

    def test_list_objects_empty(self, s3_storage):
        assert s3_storage.list_objects('nothing/') == []

    def test_list_objects_missing_bucket(self, mock_s3):
        storage = S3Storage(StorageTarget(bucket='missing-bucket', access_key_id='k',
                                          secret_access_key='s', region='us-east-1'))

        with pytest.raises(StorageError, match='list'):
            storage.list_objects('')

    def test_delete(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket='test-bucket', Key='db_20240101_000000.dump', Body=b'1')

        s3_storage.delete('db_20240101_000000.dump')

        assert mock_s3.list_objects_v2(Bucket='test-bucket').get('KeyCount', 0) == 0

    def test_delete_failure(self, s3_storage):
        error = ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'DeleteObject')

        with patch.object(s3_storage.s3_client, 'delete_object', side_effect=error):
            with pytest.raises(StorageError, match='AccessDenied'):
                s3_storage.delete('db.dump')
