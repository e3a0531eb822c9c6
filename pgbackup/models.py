from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


CONNECTION_SCHEMES = ('postgres://', 'postgresql://')


@dataclass(frozen=True)
class ConnectionDetails:
    """Connection fields parsed from a PostgreSQL connection string"""

    username: str
    password: str = field(repr=False)
    host: str
    port: int
    database: str = 'postgres'

    def to_uri(self) -> str:
        return f'postgres://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}'


class DatabaseConfig(BaseModel):
    """One entry of the connections file"""

    model_config = ConfigDict(frozen=True, extra='ignore')

    name: str = Field(min_length=1)
    connection: str
    folder: Optional[str] = None
    retention_days: int = Field(default=30, gt=0)

    @field_validator('name')
    @classmethod
    def _check_name(cls, value: str) -> str:
        # Retention parses only the last key segment
        if '/' in value:
            raise ValueError("name must not contain '/'")
        return value

    @field_validator('connection')
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        if not value.startswith(CONNECTION_SCHEMES):
            raise ValueError("connection must start with 'postgres://'")
        return value


@dataclass(frozen=True)
class StorageTarget:
    """S3 (or S3-compatible) bucket settings shared by every transfer"""

    bucket: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    prefix: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class BackupResult:
    """Outcome of backing up one database"""

    database: str
    success: bool
    path: Optional[str] = None
    error: Optional[BaseException] = None
    deleted_backups: Optional[int] = None
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        return 'SUCCESS' if self.success else 'FAILED'

    def __str__(self):
        if self.success:
            return f"{self.database}: {self.status} ({self.path}, {self.duration_seconds:.2f}s)"
        return f"{self.database}: {self.status} ({self.error})"
