"""Configuration loading from YAML."""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """LLM provider selection, passed explicitly to the backend factory."""

    name: str = "openrouter"  # "openrouter" | "openai" | "ollama"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    model: str = "google/gemini-2.0-flash-001"
    review_model: str = "google/gemini-2.0-flash-001"
    extra_headers: dict[str, str] = field(
        default_factory=lambda: {
            "HTTP-Referer": "https://shift-test-support.vercel.app",
            "X-Title": "Shift AI Test Support",
        }
    )
    timeout: float = 120.0


@dataclass
class VectorConfig:
    db_path: str = "./data/qa_gen_vectors"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    chunk_size: int = 800
    chunk_overlap: int = 100
    min_chunk_chars: int = 50
    model_cache_dir: str = "./data/models"
    embed_batch_size: int = 64


@dataclass
class RetrievalConfig:
    min_score: float = 0.5
    # Code embeddings cluster more loosely than prose
    min_score_source_code: float = 0.35
    batch_top_k: dict[str, int] = field(
        default_factory=lambda: {"doc": 20, "site": 10, "src": 20}
    )
    plan_top_k: dict[str, int] = field(
        default_factory=lambda: {"doc": 80, "site": 30, "src": 50}
    )
    base_query: str = "テスト項目 機能 要件 画面 操作 入力 エラー"


@dataclass
class ContextConfig:
    budgets: dict[str, int] = field(
        default_factory=lambda: {
            "spec_doc": 12000,
            "knowledge": 6000,
            "site_analysis": 4000,
            "source_code": 8000,
        }
    )
    excerpt_chars: int = 200


@dataclass
class GenerationConfig:
    batch_size: int = 50
    max_batch_size: int = 100
    abort_after_seconds: float = 52.0
    invocation_limit_seconds: float = 60.0
    progress_every_chars: int = 2000
    temperature: float = 0.4
    max_tokens: int = 12000
    plan_temperature: float = 0.3
    plan_max_tokens: int = 8000
    review_temperature: float = 0.2
    review_max_tokens: int = 4000


@dataclass
class StoreConfig:
    db_path: str = "./data/qa_gen.db"
    job_ttl_seconds: int = 86400
    plan_ttl_seconds: int = 604800


@dataclass
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    status_poll_interval: float = 1.0


@dataclass
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    api: APIConfig = field(default_factory=APIConfig)


class ConfigError(ValueError):
    """Raised when a loaded configuration violates a hard constraint."""


_SECTIONS = ("provider", "vector", "retrieval", "context", "generation", "store", "api")


def _apply_dict(target: Any, data: dict[str, Any]) -> None:
    """Apply dictionary values onto a dataclass instance."""
    for key, value in data.items():
        if hasattr(target, key):
            current = getattr(target, key)
            if current is not None and value is not None:
                expected_type = type(current)
                actual_type = type(value)
                # Allow int → float coercion
                if expected_type is float and actual_type is int:
                    value = float(value)
                # Guard against bool being subclass of int
                elif expected_type is int and actual_type is bool:
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s, skipping.",
                        key, expected_type.__name__, actual_type.__name__,
                    )
                    continue
                elif not isinstance(value, expected_type):
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s, skipping.",
                        key, expected_type.__name__, actual_type.__name__,
                    )
                    continue
                # Merge dict-valued options so partial overrides keep other keys
                if isinstance(current, dict):
                    value = {**current, **value}
            setattr(target, key, value)


def validate_config(cfg: AppConfig) -> None:
    """Reject configurations that would break the invocation time budget."""
    gen = cfg.generation
    if gen.abort_after_seconds >= gen.invocation_limit_seconds:
        raise ConfigError(
            f"generation.abort_after_seconds ({gen.abort_after_seconds}) must be "
            f"below generation.invocation_limit_seconds ({gen.invocation_limit_seconds})"
        )
    if gen.progress_every_chars <= 0:
        raise ConfigError("generation.progress_every_chars must be positive")
    if gen.batch_size <= 0 or gen.batch_size > gen.max_batch_size:
        raise ConfigError(
            f"generation.batch_size must be within 1..{gen.max_batch_size}"
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from YAML file, falling back to defaults."""
    cfg = AppConfig()

    if config_path is None:
        config_path = Path("config.yaml")

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        for section in _SECTIONS:
            if section in raw and isinstance(raw[section], dict):
                _apply_dict(getattr(cfg, section), raw[section])

    env_model = os.environ.get("QA_GEN_MODEL")
    if env_model:
        cfg.provider.model = env_model

    validate_config(cfg)
    return cfg


def config_to_dict(cfg: AppConfig) -> dict[str, Any]:
    """Convert an AppConfig to a plain dict.

    Only the *name* of the API-key environment variable is stored in the
    config, so nothing secret ends up in the output.
    """
    return {f.name: dataclasses.asdict(getattr(cfg, f.name)) for f in dataclasses.fields(cfg)}


def save_config(cfg: AppConfig, config_path: Path | None = None) -> None:
    """Write the current config to YAML on disk (write-to-temp then rename)."""
    if config_path is None:
        config_path = Path("config.yaml")

    data = config_to_dict(cfg)
    tmp = config_path.with_suffix(".yaml.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    tmp.replace(config_path)
