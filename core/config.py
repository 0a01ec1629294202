"""
Shared configuration for AssistGate core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("assistgate")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list(env_name: str, default: list[str]) -> list[str]:
    value = os.environ.get(env_name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = (
        vector_backend if vector_backend in {"pgvector", "sql_fallback"} else "sql_fallback"
    )
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "sql_fallback"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/assistgate.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Tenancy
TENANT_ISOLATION_SHARED = "shared"
TENANT_ISOLATION_DEDICATED = "dedicated"
TENANT_ISOLATION_MODE = os.environ.get("TENANT_ISOLATION_MODE", TENANT_ISOLATION_DEDICATED).strip().lower()
TENANT_SOURCE = os.environ.get("TENANT_SOURCE", "database").strip().lower()
TENANTS_FILE = os.environ.get("TENANTS_FILE")
DEFAULT_TENANT_EMBEDDING_MODEL = os.environ.get("DEFAULT_TENANT_EMBEDDING_MODEL", "text-embedding-ada-002")
DEFAULT_TENANT_VECTOR_STORE = os.environ.get("DEFAULT_TENANT_VECTOR_STORE", "pgvector").strip().lower()
DEFAULT_ENABLED_AGENTS = _get_list("DEFAULT_ENABLED_AGENTS", ["db_agent", "http_agent", "orchestrator"])
SUPPORTED_VECTOR_STORES = ("pgvector", "sql_fallback")

# LLM / embedding provider settings
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_CHAT_MODEL = os.environ.get("LLM_CHAT_MODEL", "gpt-4o-mini")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
SUPPORTED_LLM_PROVIDERS = ("openai", "bedrock", "mock")
AWS_REGION = os.environ.get("AWS_REGION", "us-west-2")
BEDROCK_CHAT_MODEL = os.environ.get("BEDROCK_CHAT_MODEL", "openai.gpt-oss-120b-1:0")
BEDROCK_EMBEDDING_MODEL = os.environ.get("BEDROCK_EMBEDDING_MODEL", "amazon.titan-embed-text-v2:0")

LLM_TIMEOUT_SECONDS = _get_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_RETRY_MAX = _get_int("LLM_RETRY_MAX", 2)
LLM_RETRY_BACKOFF_SECONDS = _get_float("LLM_RETRY_BACKOFF_SECONDS", 0.5)
LLM_RETRY_JITTER_SECONDS = _get_float("LLM_RETRY_JITTER_SECONDS", 0.25)
LLM_FAILURE_THRESHOLD = _get_int("LLM_FAILURE_THRESHOLD", 5)
LLM_COOLDOWN_SECONDS = _get_int("LLM_COOLDOWN_SECONDS", 60)
HTTP_TOOL_TIMEOUT_SECONDS = _get_float("HTTP_TOOL_TIMEOUT_SECONDS", 30.0)

# Memory pipeline defaults
RAG_MAX_CONTEXT_TOKENS = _get_int("RAG_MAX_CONTEXT_TOKENS", 2000)
RAG_TOP_K = _get_int("RAG_TOP_K", 5)
RAG_MIN_SCORE = _get_float("RAG_MIN_SCORE", 0.7)
RAG_CHUNK_SIZE = _get_int("RAG_CHUNK_SIZE", 500)
RAG_CHUNK_OVERLAP = _get_int("RAG_CHUNK_OVERLAP", 50)
RAG_SUMMARIZE_THRESHOLD = _get_int("RAG_SUMMARIZE_THRESHOLD", 4000)

# Orchestrator defaults
ORCHESTRATOR_MAX_TOKENS = _get_int("ORCHESTRATOR_MAX_TOKENS", 500)
ORCHESTRATOR_TEMPERATURE = _get_float("ORCHESTRATOR_TEMPERATURE", 0.7)
ORCHESTRATOR_MAX_TOOL_CALLS = _get_int("ORCHESTRATOR_MAX_TOOL_CALLS", 3)
ORCHESTRATOR_ENABLE_RAG = _get_bool("ORCHESTRATOR_ENABLE_RAG", True)

# Request/input limits
MAX_QUERY_LENGTH = _get_int("ASSISTGATE_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("ASSISTGATE_MAX_TEXT_LENGTH", 16000)
MAX_SHORT_TEXT_LENGTH = _get_int("ASSISTGATE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_METADATA_BYTES = _get_int("ASSISTGATE_MAX_METADATA_BYTES", 20000)
MAX_TAG_ITEMS = _get_int("ASSISTGATE_MAX_TAG_ITEMS", 50)
MAX_TAG_LENGTH = _get_int("ASSISTGATE_MAX_TAG_LENGTH", 100)
MAX_SEARCH_TOP_K = _get_int("ASSISTGATE_MAX_SEARCH_TOP_K", 20)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in SUPPORTED_VECTOR_STORES:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'sql_fallback'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if TENANT_ISOLATION_MODE not in {TENANT_ISOLATION_SHARED, TENANT_ISOLATION_DEDICATED}:
        errors.append("TENANT_ISOLATION_MODE must be 'shared' or 'dedicated'")

    if TENANT_SOURCE not in {"database", "static"}:
        errors.append("TENANT_SOURCE must be 'database' or 'static'")
    elif TENANT_SOURCE == "static" and not TENANTS_FILE:
        errors.append("TENANTS_FILE is required when TENANT_SOURCE=static")

    if LLM_PROVIDER not in SUPPORTED_LLM_PROVIDERS:
        errors.append("LLM_PROVIDER must be 'openai', 'bedrock' or 'mock'")

    if RAG_CHUNK_OVERLAP >= RAG_CHUNK_SIZE:
        errors.append("RAG_CHUNK_OVERLAP must be smaller than RAG_CHUNK_SIZE")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if LLM_PROVIDER == "openai" and not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; tenants without an api_key will fail completions")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
