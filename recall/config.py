"""
Configuration management for recall stores.

The configuration is stored as a TOML file in the store directory.
It specifies which providers to use, how the scheduler runs, and where
the application's record database lives.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "recall.toml"
CONFIG_VERSION = 1

DEFAULT_CONNECTIVITY_URL = "https://dns.google/resolve?name=google.com&type=A"


def get_default_store_path() -> Path:
    """Store directory: RECALL_STORE_PATH, else ~/.recall."""
    env = os.environ.get("RECALL_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".recall"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SchedulerConfig:
    interval_seconds: float = 30.0
    batch_size: int = 50
    cleanup_interval_seconds: float = 4 * 60 * 60
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    concurrency: int = 4


@dataclass
class RateLimitConfig:
    max_calls: int = 3000
    window_seconds: float = 60.0


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    ai_enabled: bool = True

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("sentence-transformers"))
    summarization: ProviderConfig = field(default_factory=lambda: ProviderConfig("passthrough"))

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    connectivity_url: str = DEFAULT_CONNECTIVITY_URL
    connectivity_timeout: float = 5.0

    records_database: Path | None = None

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def jobs_path(self) -> Path:
        return self.path / "jobs.db"

    @property
    def vectors_path(self) -> Path:
        return self.path / "chroma"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Detect the best default providers for the current environment.

    With an OpenAI key both embedding and summarization use OpenAI.
    Without one, embeddings are computed locally with sentence-transformers
    and sessions are "summarized" by passthrough truncation.
    """
    has_openai_key = bool(
        os.environ.get("RECALL_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )
    if has_openai_key:
        return {
            "embedding": ProviderConfig("openai", {"model": "text-embedding-3-small"}),
            "summarization": ProviderConfig("openai", {"model": "gpt-4o-mini"}),
        }
    return {
        "embedding": ProviderConfig("sentence-transformers", {"model": "all-MiniLM-L6-v2"}),
        "summarization": ProviderConfig("passthrough"),
    }


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        embedding=providers["embedding"],
        summarization=providers["summarization"],
    )


def _dataclass_from_section(cls, section: dict):
    """Build a flat dataclass from a TOML section, ignoring unknown keys."""
    known = {f for f in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in section.items() if k in known})


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict, default: str) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", default),
            params={k: v for k, v in section.items() if k != "name"},
        )

    connectivity = data.get("connectivity", {})
    records = data.get("records", {})
    database = records.get("database")

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        ai_enabled=bool(data.get("features", {}).get("ai_enabled", True)),
        embedding=parse_provider(data.get("embedding", {}), "sentence-transformers"),
        summarization=parse_provider(data.get("summarization", {}), "passthrough"),
        scheduler=_dataclass_from_section(SchedulerConfig, data.get("scheduler", {})),
        rate_limit=_dataclass_from_section(RateLimitConfig, data.get("rate_limit", {})),
        connectivity_url=connectivity.get("url", DEFAULT_CONNECTIVITY_URL),
        connectivity_timeout=float(connectivity.get("timeout_seconds", 5.0)),
        records_database=Path(database).expanduser() if database else None,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "features": {"ai_enabled": config.ai_enabled},
        "embedding": provider_to_dict(config.embedding),
        "summarization": provider_to_dict(config.summarization),
        "scheduler": dict(config.scheduler.__dict__),
        "rate_limit": dict(config.rate_limit.__dict__),
        "connectivity": {
            "url": config.connectivity_url,
            "timeout_seconds": config.connectivity_timeout,
        },
    }
    if config.records_database is not None:
        data["records"] = {"database": str(config.records_database)}

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
