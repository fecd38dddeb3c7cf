import os
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


DEFAULT_CONFIG_PATH = './config.toml'
DEFAULT_INTERVAL = 24 * 60 * 60
DEFAULT_KEEP = 7
DEFAULT_ROOT = '/backup'

# Characters a job name may not contain: the artifact name delimiter and
# the path separator
FORBIDDEN_NAME_CHARS = ('-', '/')


class ConfigurationError(Exception):
    """Raised when the configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class JobConfig:
    """One backup job"""
    name: str
    source_path: str
    exclude_patterns: Tuple[str, ...] = ()
    interval_seconds: int = DEFAULT_INTERVAL
    keep_count: int = DEFAULT_KEEP


@dataclass(frozen=True)
class S3Config:
    """S3 (or S3-compatible) object store"""
    bucket: str
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = field(default=None, repr=False)
    secret_access_key: Optional[str] = field(default=None, repr=False)
    root: str = DEFAULT_ROOT


@dataclass(frozen=True)
class LocalConfig:
    """Local directory used as the object store"""
    path: str
    root: str = DEFAULT_ROOT


@dataclass(frozen=True)
class Config:
    """Validated application configuration"""
    jobs: Tuple[JobConfig, ...]
    storage: Union[S3Config, LocalConfig]


def get_config_path(path: Optional[str] = None) -> str:
    """Resolve the config path: explicit value, SB_CONFIG_PATH, then default."""
    return path or os.environ.get('SB_CONFIG_PATH') or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None) -> Config:
    """
    Read and validate a TOML configuration file.

    Args:
        path: Config file path (default: see get_config_path())

    Returns:
        Validated Config

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    path = get_config_path(path)

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}")

    return parse_config(data)


def parse_config(data: Dict[str, Any]) -> Config:
    """
    Validate a configuration mapping.

    Raises:
        ConfigurationError: If any value is missing or invalid
    """
    raw_jobs = data.get('backup')
    if not raw_jobs:
        raise ConfigurationError("No [[backup]] jobs configured")
    if not isinstance(raw_jobs, list):
        raise ConfigurationError("[[backup]] must be an array of tables")

    jobs = tuple(_parse_job(raw, index) for index, raw in enumerate(raw_jobs))

    names = [job.name for job in jobs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicated backup name in config: {', '.join(duplicates)}")

    has_s3 = 's3' in data
    has_local = 'local' in data
    if has_s3 == has_local:
        raise ConfigurationError("Configure exactly one of [s3] or [local]")

    if has_s3:
        storage = _parse_s3(data['s3'])
    else:
        storage = _parse_local(data['local'])

    return Config(jobs=jobs, storage=storage)


def _require(table: Dict[str, Any], key: str, expected_type, where: str):
    if key not in table:
        raise ConfigurationError(f"Missing '{key}' in {where}")
    return _check_type(table[key], key, expected_type, where)


def _optional(table: Dict[str, Any], key: str, expected_type, where: str, default=None):
    if key not in table:
        return default
    return _check_type(table[key], key, expected_type, where)


def _check_type(value, key: str, expected_type, where: str):
    # bool is an int subclass, but never a valid count
    if isinstance(value, bool) and expected_type is int:
        raise ConfigurationError(f"'{key}' in {where} must be an integer")
    if not isinstance(value, expected_type):
        raise ConfigurationError(
            f"'{key}' in {where} must be of type {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def _parse_job(raw: Any, index: int) -> JobConfig:
    where = f"[[backup]] #{index + 1}"
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a table")

    name = _require(raw, 'name', str, where)
    if not name:
        raise ConfigurationError(f"Backup name can not be empty in {where}")
    for char in FORBIDDEN_NAME_CHARS:
        if char in name:
            raise ConfigurationError(f"Backup name can not contain `{char}`: {name!r}")

    where = f"backup '{name}'"
    path = _require(raw, 'path', str, where)
    if not path:
        raise ConfigurationError(f"Source path can not be empty in {where}")

    exclude = _optional(raw, 'exclude', list, where, default=[])
    for pattern in exclude:
        if not isinstance(pattern, str):
            raise ConfigurationError(f"Exclude patterns in {where} must be strings")

    interval = _optional(raw, 'interval', int, where, default=DEFAULT_INTERVAL)
    if interval < 0:
        raise ConfigurationError(f"'interval' in {where} can not be negative")

    keep = _optional(raw, 'keep', int, where, default=DEFAULT_KEEP)
    if keep < 1:
        raise ConfigurationError(f"'keep' in {where} must be at least 1, got {keep}")

    return JobConfig(
        name=name,
        source_path=os.path.abspath(path),
        exclude_patterns=tuple(exclude),
        interval_seconds=interval,
        keep_count=keep,
    )


def _parse_s3(raw: Any) -> S3Config:
    where = '[s3]'
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a table")

    return S3Config(
        bucket=_require(raw, 'bucket', str, where),
        region=_optional(raw, 'region', str, where, default='us-east-1'),
        endpoint=_optional(raw, 'endpoint', str, where) or None,
        access_key_id=(
            _optional(raw, 'access_key_id', str, where)
            or os.environ.get('AWS_ACCESS_KEY_ID')
        ),
        secret_access_key=(
            _optional(raw, 'secret_access_key', str, where)
            or os.environ.get('AWS_SECRET_ACCESS_KEY')
        ),
        root=_optional(raw, 'root', str, where, default=DEFAULT_ROOT),
    )


def _parse_local(raw: Any) -> LocalConfig:
    where = '[local]'
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a table")

    return LocalConfig(
        path=os.path.abspath(_require(raw, 'path', str, where)),
        root=_optional(raw, 'root', str, where, default=DEFAULT_ROOT),
    )
