"""Indexer configuration: defaults, optional JSON file, environment overrides."""

import json
import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, get_origin

import pydantic
from pydantic import TypeAdapter

from embeddings.remote import MAX_CHUNKS_PER_REQUEST
from transport.errors import ConfigurationError

from .retry import RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = 'CODE_INDEX_'
CONFIG_PATH_ENV = 'CODE_INDEX_CONFIG'
DEFAULT_STORAGE_DIR = Path.home() / '.code_index'

STORAGE_BACKENDS = ('remote', 'local', 'disabled')
EMBEDDERS = ('remote', 'local')


def _default_owner() -> str:
    return os.getenv('USER') or os.getenv('USERNAME') or 'user'


@dataclass
class IndexerConfig:
    """All tunables of an indexing run."""

    workspace: str = '.'
    storage_dir: str = str(DEFAULT_STORAGE_DIR)
    owner: str = field(default_factory=_default_owner)
    device: str = field(default_factory=socket.gethostname)
    collection_name: Optional[str] = None

    # Remote services
    embedding_url: Optional[str] = None
    store_url: Optional[str] = None
    token: Optional[str] = None
    timeout: float = 30.0
    database: str = 'code_index'
    processing_mode: str = 'sync'

    # Delivery
    batch_size: int = 10
    max_concurrent_batches: int = 3
    max_workers: int = 4
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 1.0
    lock_ttl: float = 30.0
    sweep_interval: float = 10.0
    poll_interval: float = 5.0
    max_polls: int = 10
    grace_period: float = 30.0

    # Workspace scan
    ignore_patterns: List[str] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)
    max_file_size: int = 2 * 1024 * 1024

    # Backends
    storage_backend: str = 'local'
    embedder: str = 'local'
    model_name: str = 'google/embeddinggemma-300m'
    dimension: int = 768
    reset_before_full_index: bool = True

    def __post_init__(self):
        for f in fields(self):
            setattr(self, f.name, _validate_field(f.name, getattr(self, f.name), 'IndexerConfig'))
        self.validate()

    def validate(self) -> None:
        """Check value ranges and cross-field requirements.

        Raises:
            ConfigurationError: If any value is invalid
        """
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"storage_backend must be one of {', '.join(STORAGE_BACKENDS)}, got '{self.storage_backend}'"
            )
        if self.embedder not in EMBEDDERS:
            raise ConfigurationError(f"embedder must be one of {', '.join(EMBEDDERS)}, got '{self.embedder}'")
        if not 1 <= self.batch_size <= MAX_CHUNKS_PER_REQUEST:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_CHUNKS_PER_REQUEST}")
        for name in ('max_concurrent_batches', 'max_workers', 'max_attempts', 'max_polls', 'dimension'):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        for name in ('lock_ttl', 'sweep_interval', 'timeout'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ('base_delay', 'max_delay', 'jitter', 'poll_interval', 'grace_period'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier must be at least 1")
        if self.storage_backend == 'remote' and not self.store_url:
            raise ConfigurationError("store_url is required for the remote storage backend")
        if self.embedder == 'remote' and not self.embedding_url:
            raise ConfigurationError("embedding_url is required for the remote embedder")
        if not self.owner or not self.device:
            raise ConfigurationError("owner and device must not be empty")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    @property
    def snapshot_dir(self) -> Path:
        return Path(self.storage_dir) / 'snapshots'

    @property
    def index_dir(self) -> Path:
        return Path(self.storage_dir) / 'index'

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data['token']:
            data['token'] = '***'
        return data

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        **overrides: Any,
    ) -> 'IndexerConfig':
        """Build a config from defaults, a JSON file and the environment.

        Later sources win: defaults, then the JSON file (``path`` or
        ``$CODE_INDEX_CONFIG``), then ``CODE_INDEX_<FIELD>`` variables, then
        keyword overrides whose value is not None.

        Raises:
            ConfigurationError: If the file is unreadable or a value is invalid
        """
        env = os.environ if env is None else env
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}

        path = path or env.get(CONFIG_PATH_ENV)
        if path:
            for name, value in _read_json(path, known).items():
                values[name] = _validate_field(name, value, path)

        for name, f in known.items():
            env_name = f"{ENV_PREFIX}{name.upper()}"
            raw = env.get(env_name)
            if raw is not None:
                values[name] = _validate_field(name, _split_list(raw, f.type), env_name)

        for name, value in overrides.items():
            if name not in known:
                raise ConfigurationError(f"Unknown configuration option '{name}'")
            if value is not None:
                values[name] = _validate_field(name, value, 'arguments')

        config = cls(**values)
        logger.debug(f"Loaded configuration: {config.to_dict()}")
        return config


def _read_json(path: str, known: Dict[str, Any]) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a JSON object")

    unknown = sorted(set(data) - set(known))
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys in {path}: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in known}


def _split_list(raw: str, annotation: Any) -> Any:
    """Environment lists are comma separated."""
    if get_origin(annotation) is list:
        return [part.strip() for part in raw.split(',') if part.strip()]
    return raw


# Per-field validators; lax mode turns "7" into 7 and "no" into False
_FIELD_ADAPTERS: Dict[str, TypeAdapter] = {f.name: TypeAdapter(f.type) for f in fields(IndexerConfig)}


def _validate_field(name: str, value: Any, source: str) -> Any:
    try:
        return _FIELD_ADAPTERS[name].validate_python(value)
    except pydantic.ValidationError as e:
        reason = '; '.join(error['msg'] for error in e.errors())
        raise ConfigurationError(f"Invalid value for {name} from {source}: {value!r} ({reason})") from e
