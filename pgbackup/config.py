import json
import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from pgbackup.backup.storage import MIB, MIN_PART_SIZE
from pgbackup.models import DatabaseConfig, StorageTarget


REQUIRED_ENV_VARS = ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY', 'S3_BUCKET')

DEFAULT_CONNECTIONS_FILE = '/app/connections.json'

_connections_adapter = TypeAdapter(List[DatabaseConfig])


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be an integer, got {value!r}") from e
    if parsed <= 0:
        raise ConfigError(f"Environment variable {name} must be positive, got {parsed}")
    return parsed


class Config:
    """Runtime configuration sourced from the environment"""

    def __init__(self, storage: StorageTarget, connections_file: str = DEFAULT_CONNECTIONS_FILE,
                 pg_dump_binary: str = 'pg_dump', pg_connect_timeout: int = 10,
                 pg_sslmode: str = 'prefer', part_size: int = 16 * MIB,
                 log_level: str = 'INFO', log_dir: Optional[str] = None,
                 schedule: Optional[str] = None):
        self.storage = storage
        self.connections_file = connections_file
        self.pg_dump_binary = pg_dump_binary
        self.pg_connect_timeout = pg_connect_timeout
        self.pg_sslmode = pg_sslmode
        self.part_size = part_size
        self.log_level = log_level
        self.log_dir = log_dir
        self.schedule = schedule

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read (default: os.environ)

        Returns:
            Config instance

        Raises:
            ConfigError: If a required variable is missing or a number is malformed
        """
        environ = os.environ if environ is None else environ

        missing = [name for name in REQUIRED_ENV_VARS if not environ.get(name)]
        if missing:
            raise ConfigError(f"Missing required environment variable: {', '.join(missing)}")

        storage = StorageTarget(
            bucket=environ['S3_BUCKET'],
            access_key_id=environ['AWS_ACCESS_KEY_ID'],
            secret_access_key=environ['AWS_SECRET_ACCESS_KEY'],
            prefix=environ.get('S3_PREFIX') or None,
            endpoint_url=environ.get('S3_ENDPOINT_URL') or None,
            region=environ.get('AWS_REGION') or None
        )

        log_level = (environ.get('LOG_LEVEL') or 'INFO').upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigError(f"Unknown LOG_LEVEL: {log_level}")

        part_size = _get_int(environ, 'S3_PART_SIZE_MB', 16) * MIB
        if part_size < MIN_PART_SIZE:
            raise ConfigError(
                f"Environment variable S3_PART_SIZE_MB must be at least {MIN_PART_SIZE // MIB}, "
                f"got {part_size // MIB}"
            )

        return cls(
            storage=storage,
            connections_file=environ.get('CONNECTIONS_FILE') or DEFAULT_CONNECTIONS_FILE,
            pg_dump_binary=environ.get('PG_DUMP_BINARY') or 'pg_dump',
            pg_connect_timeout=_get_int(environ, 'PG_CONNECT_TIMEOUT', 10),
            pg_sslmode=environ.get('PG_SSLMODE') or 'prefer',
            part_size=part_size,
            log_level=log_level,
            log_dir=environ.get('LOG_DIR') or None,
            schedule=environ.get('BACKUP_SCHEDULE') or None
        )


def load_connections(path) -> List[DatabaseConfig]:
    """
    Load and validate the connections file.

    The file holds a JSON array of {name, connection, folder?, retention_days?}.

    Args:
        path: Path to the JSON file

    Returns:
        Database configurations in file order

    Raises:
        ConfigError: If the file is unreadable, not valid JSON, fails
            validation or repeats a database name
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding='utf-8'))
    except OSError as e:
        raise ConfigError(f"Cannot read connections file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Connections file {path} is not valid JSON: {e}") from e

    try:
        databases = _connections_adapter.validate_python(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid connections file {path}:\n{e}") from e

    seen = set()
    for db_config in databases:
        if db_config.name in seen:
            raise ConfigError(f"Duplicate database name in {path}: {db_config.name}")
        seen.add(db_config.name)

    return databases
