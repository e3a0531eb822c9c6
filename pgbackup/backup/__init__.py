"""
Backup module for pgbackup.

This module handles the core backup functionality including:
- Connection string parsing
- pg_dump version checks and streaming dumps
- Streaming uploads to S3
- Retention policy enforcement
- Execution orchestration
"""

from .connection import parse_connection_string, ConnectionStringError
from .dump import (
    PgDump,
    DumpStream,
    DumpError,
    DumpProcessError,
    DatabaseConnectionError,
    ToolUnavailableError,
    VersionParseError
)
from .storage import S3Storage, StorageError, UploadError
from .retention import RetentionManager, RetentionError
from .executor import BackupExecutor, all_succeeded, log_summary

__all__ = [
    'parse_connection_string',
    'ConnectionStringError',
    'PgDump',
    'DumpStream',
    'DumpError',
    'DumpProcessError',
    'DatabaseConnectionError',
    'ToolUnavailableError',
    'VersionParseError',
    'S3Storage',
    'StorageError',
    'UploadError',
    'RetentionManager',
    'RetentionError',
    'BackupExecutor',
    'all_succeeded',
    'log_summary'
]
