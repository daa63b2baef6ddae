"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from porter.exceptions import ConfigurationError


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a nested structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class StorageConfig(BaseModel):
    """S3-compatible bucket configuration (export target, or either side of a clone)."""

    bucket: str = Field(description="Bucket name")
    region: str = Field(default="us-east-1", description="Bucket region")
    endpoint: Optional[str] = Field(
        default=None,
        description="Custom endpoint URL for S3-compatible storage (null for AWS S3)",
    )
    url: Optional[str] = Field(
        default=None,
        description="Public base URL for objects (CDN or bucket website); used for durable links",
    )
    use_path_style: bool = Field(
        default=False,
        description="Use path-style addressing (required by most MinIO deployments)",
    )
    prefix: str = Field(default="", description="Key prefix for exported dumps")
    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="access_key_id",
        description="Access key (development only - prefer environment variables)",
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="secret_access_key",
        description="Secret key (development only - prefer environment variables)",
    )
    credentials_env_prefix: str = Field(
        default="AWS",
        description="Prefix of the <PREFIX>_ACCESS_KEY_ID / <PREFIX>_SECRET_ACCESS_KEY env vars",
    )

    model_config = {"populate_by_name": True}

    def get_credentials(self) -> Optional[dict[str, str]]:
        """Get credentials from the config file or environment variables.

        Returns:
            Dictionary with 'aws_access_key_id' and 'aws_secret_access_key', or None
            to let boto3 use its default credential chain (IAM role, profile, etc.)

        Raises:
            ValueError: If credentials are partially specified
        """
        config_has_key = self.aws_access_key_id is not None
        config_has_secret = self.aws_secret_access_key is not None

        if config_has_key and config_has_secret:
            return {
                "aws_access_key_id": self.aws_access_key_id,
                "aws_secret_access_key": self.aws_secret_access_key,
            }

        if config_has_key or config_has_secret:
            raise ValueError(
                "Both access_key_id and secret_access_key must be provided together, "
                f"or use environment variables ({self.credentials_env_prefix}_ACCESS_KEY_ID, "
                f"{self.credentials_env_prefix}_SECRET_ACCESS_KEY)"
            )

        env_key = os.getenv(f"{self.credentials_env_prefix}_ACCESS_KEY_ID")
        env_secret = os.getenv(f"{self.credentials_env_prefix}_SECRET_ACCESS_KEY")
        if env_key and env_secret:
            return {
                "aws_access_key_id": env_key,
                "aws_secret_access_key": env_secret,
            }

        return None


class DatabaseConfig(BaseModel):
    """MySQL database configuration."""

    name: str = Field(description="Database (schema) name")
    host: str = Field(default="127.0.0.1", description="Database host")
    port: int = Field(default=3306, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    charset: str = Field(default="utf8mb4", description="Connection character set")
    connection_pool_size: int = Field(default=2, description="Connection pool size", gt=0, le=50)
    connect_timeout: int = Field(default=10, description="Connect timeout in seconds", gt=0)

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Allow at most one password source; passwordless accounts are valid for MySQL."""
        if self.password_env and self.password is not None:
            raise ValueError(
                "Cannot specify both 'password_env' and 'password'. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        return self

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Raises:
            ValueError: If the configured environment variable is not set
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if password is None:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        return self.password or ""


class EntityPolicyConfig(BaseModel):
    """Per-table export policy as declared in YAML."""

    ignore: bool = Field(default=False, description="Skip the table's data entirely")
    omitted_columns: list[str] = Field(
        default_factory=list,
        description="Columns whose values are replaced with synthetic data",
    )
    retained_row_keys: list[Union[int, str]] = Field(
        default_factory=list,
        description="Primary key values of rows exported verbatim",
    )


class ExportConfig(BaseModel):
    """Export pipeline settings."""

    drop_if_exists: bool = Field(default=False, description="Emit DROP TABLE IF EXISTS")
    use_remote_storage: bool = Field(
        default=False,
        description="Upload the dump to object storage instead of writing a local file",
    )
    buffer_size_mb: Optional[int] = Field(
        default=None,
        description="Flush threshold in MiB (default: min(10, available memory / 10))",
        ge=1,
        le=1024,
    )
    page_size: int = Field(default=1000, description="Rows fetched per page", gt=0)
    empty_strings_as_null: bool = Field(
        default=False,
        description="Render empty strings as NULL in INSERT statements",
    )
    expiration_seconds: Optional[int] = Field(
        default=3600,
        description="Signed URL lifetime; null produces a durable public URL",
        gt=0,
    )
    output_dir: str = Field(default="exports", description="Directory for local dumps")
    public_base_url: Optional[str] = Field(
        default=None,
        description="Base URL under which local dumps are served (returns a URL instead of a path)",
    )
    obfuscate_filenames: bool = Field(
        default=True,
        description="Expose dumps under opaque signed tokens instead of real filenames",
    )
    token_secret_env: str = Field(
        default="PORTER_TOKEN_SECRET",
        description="Environment variable holding the secret for filename tokens",
    )
    keep_partial: bool = Field(
        default=True,
        description="Keep a failed local dump as <name>.partial instead of deleting it",
    )
    faker_locale: Optional[str] = Field(default=None, description="Faker locale, e.g. en_US")
    faker_seed: Optional[int] = Field(default=None, description="Seed for reproducible redaction")


class ReplicationConfig(BaseModel):
    """Bucket replication settings."""

    batch_size: int = Field(default=100, description="Keys per existence/copy batch", gt=0)
    retry_attempts: int = Field(default=3, description="Copy attempts per object", ge=1, le=10)
    retry_delay_seconds: float = Field(
        default=0.5,
        description="Fixed delay between copy attempts",
        ge=0,
    )
    max_workers: int = Field(
        default=1,
        description="Concurrent copies within a batch (1 = sequential)",
        ge=1,
        le=64,
    )
    preserve_visibility: bool = Field(
        default=True,
        description="Copy object ACL visibility (disable for stores without ACL support)",
    )
    prefix: str = Field(default="", description="Only replicate keys under this prefix")


class ImportConfig(BaseModel):
    """Import runner settings."""

    chunk_size_kb: int = Field(default=1024, description="Read chunk size in KiB", gt=0)
    temp_dir: Optional[str] = Field(
        default=None,
        description="Directory for downloaded dumps and pre-import backups",
    )
    backup_before_import: bool = Field(
        default=False,
        description="Export the database to temp_dir first and replay it if the import fails",
    )


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(default=False, description="Enable Prometheus metrics")
    metrics_port: int = Field(
        default=8000,
        description="Port for Prometheus metrics endpoint",
        gt=0,
        lt=65536,
    )


class PorterConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    database: Optional[DatabaseConfig] = Field(default=None, description="Source/target database")
    storage: Optional[StorageConfig] = Field(
        default=None,
        description="Export bucket, and the target bucket of clone-s3",
    )
    source_storage: Optional[StorageConfig] = Field(
        default=None,
        description="Source bucket of clone-s3",
    )
    export: ExportConfig = Field(default_factory=ExportConfig)
    replication: ReplicationConfig = Field(default_factory=ReplicationConfig)
    import_: ImportConfig = Field(default_factory=ImportConfig, alias="import")
    policies: dict[str, EntityPolicyConfig] = Field(
        default_factory=dict,
        description="Table name -> export policy",
    )
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {"populate_by_name": True}

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v not in ["1.0"]:
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    @model_validator(mode="after")
    def apply_source_defaults(self) -> "PorterConfig":
        """Source bucket credentials default to the AWS_SOURCE_* variables."""
        if self.source_storage and "credentials_env_prefix" not in self.source_storage.model_fields_set:
            self.source_storage.credentials_env_prefix = "AWS_SOURCE"
        return self

    def require_database(self) -> DatabaseConfig:
        if self.database is None:
            raise ConfigurationError("No 'database' section in configuration")
        return self.database

    def require_storage(self) -> StorageConfig:
        if self.storage is None:
            raise ConfigurationError("No 'storage' section in configuration")
        return self.storage

    def require_source_storage(self) -> StorageConfig:
        if self.source_storage is None:
            raise ConfigurationError("No 'source_storage' section in configuration")
        return self.source_storage


def load_config(config_path: Path) -> PorterConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is missing or invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")

    try:
        config_data = _substitute_env_in_dict(raw_config)
        return PorterConfig.model_validate(config_data)
    except Exception as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            context={"path": str(config_path)},
        ) from e
