"""
Unified configuration loader for the retrieval fusion pipeline.

This module is the single source of truth for all configuration:
- Settings dataclasses (Settings, RetrievalSettings)
- Loading settings from config/settings.yaml with env var overrides
- Per-stage section access for the pipeline components
- Pydantic schema validation for production-ready error reporting

All code should import configuration from this module, not from settings.yaml directly.
"""

from __future__ import annotations

import functools
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
_REPO_ROOT = Path(__file__).resolve().parents[2]

FILTERING_MODES = ("strict", "moderate", "lenient")


# ─────────────────────────────────────────────────────────────────────────────
# Core Settings Dataclasses
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetrievalSettings:
    """Collaborator lookup sizes and the vector relevance floors."""
    vector_top_k: int = 5
    keyword_top_k: int = 5
    web_max_results: int = 5
    min_vector_score: float = 0.7       # Primary floor
    relaxed_vector_score: float = 0.6   # Second (and last) pass when nothing passes
    include_web: bool = True
    include_keyword: bool = True
    unknown_document_name: str = "Unknown Document"


@dataclass(frozen=True)
class Settings:
    """Application settings - all values loaded from config/settings.yaml.

    This is a frozen dataclass to ensure immutability after loading.
    All values are set at load time from the YAML config with env var overrides.
    """
    # OpenAI settings
    chat_model: str = ""
    embedding_model: str = ""

    retrieval: RetrievalSettings = RetrievalSettings()

    # Stage defaults most often tuned per deployment
    filtering_mode: str = "moderate"
    mmr_lambda: float = 0.7
    ordering_strategy: str = "relevance"

    # Vector store
    vector_store_path: Path = Path("data/vector_store")
    vector_collection: str = "documents"


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic Schema for settings.yaml
# ─────────────────────────────────────────────────────────────────────────────


class RetrievalSchema(BaseModel):
    """Schema for the retrieval section."""

    vector_top_k: int = Field(default=5, ge=1)
    keyword_top_k: int = Field(default=5, ge=1)
    web_max_results: int = Field(default=5, ge=1)
    min_vector_score: float = Field(default=0.7, ge=0.0, le=1.0)
    relaxed_vector_score: float = Field(default=0.6, ge=0.0, le=1.0)
    include_web: bool = True
    include_keyword: bool = True
    unknown_document_name: str = "Unknown Document"


class FilteringSchema(BaseModel):
    """Schema for the filtering section."""

    mode: str = "moderate"
    ab_test: dict[str, Any] = {}

    @field_validator("mode", mode="before")
    @classmethod
    def known_mode(cls, v: Any) -> str:
        value = str(v or "moderate").strip().lower()
        if value not in FILTERING_MODES:
            logger.warning("Unknown filtering mode %r in settings.yaml, using 'moderate'", v)
            return "moderate"
        return value


class SettingsSchema(BaseModel):
    """Schema for the whole settings file. Unknown sections are allowed."""

    openai: dict[str, Any] = {}
    retrieval: RetrievalSchema = RetrievalSchema()
    filtering: FilteringSchema = FilteringSchema()
    query_expansion: dict[str, Any] = {}
    deduplication: dict[str, Any] = {}
    fusion: dict[str, Any] = {}
    diversity: dict[str, Any] = {}
    ordering: dict[str, Any] = {}
    quality: dict[str, Any] = {}
    authority: dict[str, Any] = {}
    performance: dict[str, Any] = {}
    resilience: dict[str, Any] = {}

    @field_validator(
        "openai", "retrieval", "filtering", "query_expansion", "deduplication", "fusion", "diversity",
        "ordering", "quality", "authority", "performance", "resilience",
        mode="before",
    )
    @classmethod
    def ensure_dict(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        return dict(v)


def validate_settings_yaml(config: dict[str, Any]) -> SettingsSchema | None:
    """Validate raw settings against the schema.

    Returns the validated schema or None if validation fails.
    Logs detailed error messages for malformed configs.
    """
    try:
        return SettingsSchema.model_validate(config)
    except ValidationError as e:
        logger.warning("Invalid settings.yaml: %s", e.errors())
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Settings Loading Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _settings_path() -> Path:
    """Settings file path. Can be overridden via RAG_SETTINGS_PATH for testing."""
    override = os.getenv("RAG_SETTINGS_PATH")
    if override:
        return Path(override)
    return _CONFIG_DIR / "settings.yaml"


def _load_settings_yaml() -> dict[str, Any]:
    """Load raw settings from config/settings.yaml."""
    settings_path = _settings_path()
    if not settings_path.exists():
        return {}
    with open(settings_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    return int(val) if val and val.strip() else default


def _env_float(key: str, default: float) -> float:
    val = os.getenv(key)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _parse_bool_env(env_key: str, default: bool) -> bool:
    """Parse a boolean from environment variable, falling back to default."""
    val = os.getenv(env_key)
    if val is None:
        return default
    return val.strip().lower() in ("true", "1", "yes", "on")


def _normalize_settings(settings: Settings) -> Settings:
    """Clamp or correct out-of-range values, logging a warning for each fix."""
    r = settings.retrieval
    if r.relaxed_vector_score > r.min_vector_score:
        logger.warning(
            "retrieval.relaxed_vector_score (%s) is above retrieval.min_vector_score (%s); swapping them",
            r.relaxed_vector_score,
            r.min_vector_score,
        )
        r = replace(r, min_vector_score=r.relaxed_vector_score, relaxed_vector_score=r.min_vector_score)

    mode = settings.filtering_mode
    if mode not in FILTERING_MODES:
        logger.warning("Unknown filtering mode %r, using 'moderate'", mode)
        mode = "moderate"

    mmr_lambda = settings.mmr_lambda
    if not (0.0 <= mmr_lambda <= 1.0):
        clamped = min(1.0, max(0.0, mmr_lambda))
        logger.warning("diversity.lambda %s is outside [0, 1], clamping to %s", mmr_lambda, clamped)
        mmr_lambda = clamped

    return replace(settings, retrieval=r, filtering_mode=mode, mmr_lambda=mmr_lambda)


@functools.lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and validate application settings from config/settings.yaml.

    Environment variables override YAML values:
    - OPENAI_CHAT_MODEL, OPENAI_EMBEDDING_MODEL
    - RAG_VECTOR_TOP_K, RAG_KEYWORD_TOP_K, RAG_WEB_MAX_RESULTS
    - RAG_MIN_VECTOR_SCORE, RAG_RELAXED_VECTOR_SCORE
    - RAG_INCLUDE_WEB, RAG_INCLUDE_KEYWORD
    - RAG_FILTERING_MODE, RAG_MMR_LAMBDA, RAG_ORDERING_STRATEGY
    - RAG_VECTOR_STORE_PATH

    A settings file that fails schema validation is logged and replaced by
    defaults. Out-of-range values are corrected with a warning: an unknown
    filtering mode becomes "moderate", lambda is clamped to [0, 1] and
    inverted vector floors are swapped.

    Returns:
        Settings: Validated, frozen settings object
    """
    load_dotenv()

    raw = _load_settings_yaml()
    schema = validate_settings_yaml(raw)
    if schema is None:
        logger.error("settings.yaml failed validation. Using built-in defaults.")
        schema = SettingsSchema()

    openai_cfg = schema.openai
    rcfg = schema.retrieval
    store_cfg = raw.get("vector_store", {}) if isinstance(raw.get("vector_store"), dict) else {}

    chat_model = os.getenv("OPENAI_CHAT_MODEL") or openai_cfg.get("chat_model", "")
    embedding_model = os.getenv("OPENAI_EMBEDDING_MODEL") or openai_cfg.get("embedding_model", "")

    retrieval = RetrievalSettings(
        vector_top_k=_env_int("RAG_VECTOR_TOP_K", rcfg.vector_top_k),
        keyword_top_k=_env_int("RAG_KEYWORD_TOP_K", rcfg.keyword_top_k),
        web_max_results=_env_int("RAG_WEB_MAX_RESULTS", rcfg.web_max_results),
        min_vector_score=_env_float("RAG_MIN_VECTOR_SCORE", rcfg.min_vector_score),
        relaxed_vector_score=_env_float("RAG_RELAXED_VECTOR_SCORE", rcfg.relaxed_vector_score),
        include_web=_parse_bool_env("RAG_INCLUDE_WEB", rcfg.include_web),
        include_keyword=_parse_bool_env("RAG_INCLUDE_KEYWORD", rcfg.include_keyword),
        unknown_document_name=rcfg.unknown_document_name,
    )

    filtering_mode = (os.getenv("RAG_FILTERING_MODE") or schema.filtering.mode).strip().lower()
    mmr_lambda = _env_float("RAG_MMR_LAMBDA", float(schema.diversity.get("lambda", 0.7)))
    ordering_strategy = os.getenv("RAG_ORDERING_STRATEGY") or str(schema.ordering.get("strategy", "relevance"))

    vector_store_path = Path(os.getenv("RAG_VECTOR_STORE_PATH") or store_cfg.get("path", "data/vector_store"))
    if not vector_store_path.is_absolute():
        vector_store_path = _REPO_ROOT / vector_store_path

    settings = Settings(
        chat_model=str(chat_model),
        embedding_model=str(embedding_model),
        retrieval=retrieval,
        filtering_mode=filtering_mode,
        mmr_lambda=mmr_lambda,
        ordering_strategy=str(ordering_strategy),
        vector_store_path=vector_store_path,
        vector_collection=str(store_cfg.get("collection", "documents")),
    )

    return _normalize_settings(settings)


def get_settings_yaml() -> dict[str, Any]:
    """Get raw settings dict from YAML."""
    return _load_settings_yaml()


def get_section(name: str) -> dict[str, Any]:
    """Get one top-level section of settings.yaml as a dict (empty if absent)."""
    section = get_settings_yaml().get(name)
    return dict(section) if isinstance(section, dict) else {}


def get_performance_settings() -> dict[str, Any]:
    """Get performance tuning settings from settings.yaml with env overrides.

    Returns dict with keys: max_retrieval_workers, retrieval_timeout_secs.
    """
    perf = get_section("performance")

    return {
        "max_retrieval_workers": int(
            os.getenv("RAG_MAX_RETRIEVAL_WORKERS")
            or perf.get("max_retrieval_workers", 8)
        ),
        "retrieval_timeout_secs": float(
            os.getenv("RAG_RETRIEVAL_TIMEOUT_SECS")
            or perf.get("retrieval_timeout_secs", 3.0)
        ),
    }


def resolve_repo_path(value: str | Path) -> Path:
    """Resolve a settings path relative to the repository root."""
    path = Path(value)
    return path if path.is_absolute() else _REPO_ROOT / path


def clear_config_cache() -> None:
    """Clear all cached configurations (useful for testing)."""
    load_settings.cache_clear()
