# drayage/core/models/store.py
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from drayage.core.errors import ConfigurationError, ErrorCode

SUPPORTED_SCHEME = 'postgresql+psycopg'


class PostgresConfig(BaseModel):
    """Connection and pool settings of the shared task store."""

    model_config = ConfigDict(frozen=True)

    database_url: str = Field(..., description='postgresql+psycopg:// URL of the task store')
    pool_size: Annotated[int, Field(ge=1, le=200)] = 10
    max_overflow: Annotated[int, Field(ge=0, le=200)] = 10
    pool_timeout: Annotated[int, Field(ge=1)] = 30
    # Connections older than this are replaced on checkout
    pool_recycle: Annotated[int, Field(ge=-1)] = 1800
    pool_pre_ping: bool = True
    echo: bool = False
    # Shown in pg_stat_activity, so operators can tell workers from web processes
    application_name: str = 'drayage'
    # Server-side cap per statement; None leaves the server default
    statement_timeout_ms: Optional[Annotated[int, Field(ge=100)]] = None

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        scheme = v.split('://', 1)[0] if '://' in v else ''
        if scheme != SUPPORTED_SCHEME:
            raise ConfigurationError(
                message='invalid database URL scheme',
                code=ErrorCode.STORE_INVALID_URL,
                notes=[
                    f'got: {scheme or v[:20]}://...',
                    'drayage only supports psycopg3 (async PostgreSQL driver)',
                ],
                help_text=f"use '{SUPPORTED_SCHEME}://user:pass@host/db'",
            )
        return v

    def engine_options(self) -> dict[str, Any]:
        """Keyword arguments for create_async_engine()."""
        server_options = {'application_name': self.application_name}
        if self.statement_timeout_ms is not None:
            server_options['options'] = f'-c statement_timeout={self.statement_timeout_ms}'
        return {
            'pool_size': self.pool_size,
            'max_overflow': self.max_overflow,
            'pool_timeout': self.pool_timeout,
            'pool_recycle': self.pool_recycle,
            'pool_pre_ping': self.pool_pre_ping,
            'echo': self.echo,
            'connect_args': server_options,
        }
