"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-mpnet-base-v2"

ENV_PREFIX = "STUDYRAG_"

# Environment variable suffix -> AppConfig field
_ENV_FIELDS = {
    "DB": "db_path",
    "UPLOAD_DIR": "upload_dir",
    "USAGE_LOG": "usage_log_path",
    "CHUNK_SIZE": "chunk_size",
    "CHUNK_OVERLAP": "overlap",
    "MAX_EMBEDDING_CHARS": "max_embedding_chars",
    "CONCURRENCY": "concurrency_limit",
    "SIMILARITY_THRESHOLD": "similarity_threshold",
    "JOB_TTL": "job_ttl_seconds",
    "JOB_TIMEOUT": "job_timeout_seconds",
    "REQUEST_TIMEOUT": "request_timeout_seconds",
    "MAX_UPLOAD_BYTES": "max_upload_bytes",
    "EMBEDDING_PROVIDER": "embedding_provider",
    "CHAT_PROVIDER": "chat_provider",
    "OPENAI_EMBEDDING_MODEL": "openai_embedding_model",
    "OPENAI_CHAT_MODEL": "openai_chat_model",
    "OLLAMA_URL": "ollama_base_url",
    "OLLAMA_EMBEDDING_MODEL": "ollama_embedding_model",
    "OLLAMA_CHAT_MODEL": "ollama_chat_model",
    "LOCAL_MODEL": "local_model_name",
}


@dataclass(slots=True)
class AppConfig:
    db_path: Path = Path("data/studyrag.db")
    upload_dir: Path = Path("data/uploads")
    usage_log_path: Path = Path("data/rag_usage_log.jsonl")

    # Chunking
    chunk_size: int = 1500
    overlap: int = 200

    # Embedding
    max_embedding_chars: int = 512
    openai_batch_size: int = 16
    ollama_batch_size: int = 4
    local_batch_size: int = 16
    concurrency_limit: int = 3
    progress_log_interval: int = 50

    # Retrieval
    similarity_threshold: float = 0.70
    default_max_chunks: int = 5
    fallback_chunks: int = 3

    # Jobs and timeouts
    job_ttl_seconds: float = 3600.0
    job_timeout_seconds: float = 600.0
    request_timeout_seconds: float = 60.0
    max_upload_bytes: int = 50 * 1024 * 1024

    # Providers
    embedding_provider: str = "openai"
    chat_provider: str = "openai"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_chat_model: str = "gpt-4o-mini"
    ollama_base_url: str = "http://localhost:11434"
    ollama_embedding_model: str = "zylonai/multilingual-e5-large"
    ollama_chat_model: str = "phi3:latest"
    local_model_name: str = DEFAULT_LOCAL_MODEL

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "AppConfig":
        """Build a config from defaults overlaid with ``STUDYRAG_*`` variables."""
        if dotenv:
            load_dotenv()

        types = {f.name: f.type for f in fields(cls)}
        defaults = cls()
        overrides = {}
        for suffix, name in _ENV_FIELDS.items():
            raw = os.environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            current = getattr(defaults, name)
            try:
                if isinstance(current, Path):
                    overrides[name] = Path(raw)
                elif isinstance(current, bool):
                    overrides[name] = raw.lower() in {"1", "true", "yes"}
                elif isinstance(current, int):
                    overrides[name] = int(raw)
                elif isinstance(current, float):
                    overrides[name] = float(raw)
                else:
                    overrides[name] = raw
            except ValueError as exc:
                raise ValueError(
                    f"Invalid value for {ENV_PREFIX}{suffix} ({types[name]}): {raw!r}"
                ) from exc
        return cls(**overrides)

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path
