from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to this file's directory (the project root),
# not the working directory, so the MCP server finds it regardless of cwd.
_ENV_FILE = Path(__file__).resolve().parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), case_sensitive=False)

    # Deployment environment name.  Vector collections are keyed by it so
    # staging and production never share an index.
    deployment_environment: str = Field(
        default="development", validation_alias="DEPLOYMENT_ENV"
    )

    # ── Embeddings ────────────────────────────────────────────────
    embedding_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="EMBEDDING_BASE_URL"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small", validation_alias="EMBEDDING_MODEL"
    )
    embedding_api_key: str | None = Field(default=None, validation_alias="EMBEDDING_API_KEY")
    embedding_dimensions: int = Field(default=1536, validation_alias="EMBEDDING_DIMENSIONS")
    # "tiktoken" for exact counts, "approximate" for the 4-chars-per-token estimate.
    embedding_tokenizer_kind: str = Field(
        default="tiktoken", validation_alias="EMBEDDING_TOKENIZER_KIND"
    )
    embedding_tokenizer_name: str = Field(
        default="cl100k_base", validation_alias="EMBEDDING_TOKENIZER_NAME"
    )
    # Texts are split into batches of this size; each batch is one API request.
    embedding_batch_size: int = Field(default=100, validation_alias="EMBEDDING_BATCH_SIZE")
    # Max embedding requests in flight.  4 is safe on every paid OpenAI tier;
    # local OpenAI-compatible servers can go higher.
    embedding_max_concurrency: int = Field(
        default=4, validation_alias="EMBEDDING_MAX_CONCURRENCY"
    )
    # Provider input limit.  Truncation budget is this value * 4 characters.
    embedding_max_tokens_per_request: int = Field(
        default=8000, validation_alias="EMBEDDING_MAX_TOKENS_PER_REQUEST"
    )
    embedding_timeout_seconds: float = Field(
        default=30.0, validation_alias="EMBEDDING_TIMEOUT_SECONDS"
    )

    # ── Chunking ──────────────────────────────────────────────────
    chunk_target_tokens: int = Field(default=800, validation_alias="CHUNK_TARGET_TOKENS")
    chunk_overlap_tokens: int = Field(default=100, validation_alias="CHUNK_OVERLAP_TOKENS")
    chunk_min_tokens: int = Field(default=50, validation_alias="CHUNK_MIN_TOKENS")
    chunk_max_tokens: int = Field(default=1200, validation_alias="CHUNK_MAX_TOKENS")

    # ── Vector store ──────────────────────────────────────────────
    # "pgvector" (Postgres) or "memory" (single process, dev/test only).
    vector_store_kind: str = Field(default="pgvector", validation_alias="VECTOR_STORE_KIND")
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    # Collection name is "<prefix>_<deployment environment>".
    vector_collection_prefix: str = Field(
        default="material_chunks", validation_alias="VECTOR_COLLECTION_PREFIX"
    )
    vector_upsert_batch_size: int = Field(
        default=100, validation_alias="VECTOR_UPSERT_BATCH_SIZE"
    )
    # 1 means upsert batches are submitted sequentially.
    vector_upsert_max_concurrency: int = Field(
        default=1, validation_alias="VECTOR_UPSERT_MAX_CONCURRENCY"
    )
    vector_store_timeout_seconds: float = Field(
        default=30.0, validation_alias="VECTOR_STORE_TIMEOUT_SECONDS"
    )
    vector_pool_min_size: int = Field(default=1, validation_alias="VECTOR_POOL_MIN_SIZE")
    vector_pool_max_size: int = Field(default=10, validation_alias="VECTOR_POOL_MAX_SIZE")
    # pgvector HNSW recall knob (higher = better recall, slightly slower).
    vector_hnsw_ef_search: int = Field(default=100, validation_alias="VECTOR_HNSW_EF_SEARCH")

    # ── Retrieval ─────────────────────────────────────────────────
    retrieval_top_k: int = Field(default=5, validation_alias="RETRIEVAL_TOP_K")
    # Chunks below this cosine similarity are dropped.  Unset disables the floor.
    retrieval_similarity_floor: float | None = Field(
        default=None, validation_alias="RETRIEVAL_SIMILARITY_FLOOR"
    )
    # Score multipliers per chunk_type, e.g. {"heading": 1.1}.  Empty = no re-ranking.
    retrieval_chunk_type_boosts: dict[str, float] = Field(
        default_factory=dict, validation_alias="RETRIEVAL_CHUNK_TYPE_BOOSTS"
    )

    # ── Chat generation ───────────────────────────────────────────
    chat_llm_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="CHAT_LLM_BASE_URL"
    )
    chat_llm_api_key: str | None = Field(default=None, validation_alias="CHAT_LLM_API_KEY")
    chat_llm_model: str = Field(default="gpt-4o-mini", validation_alias="CHAT_LLM_MODEL")
    chat_max_output_tokens: int = Field(default=1000, validation_alias="CHAT_MAX_OUTPUT_TOKENS")
    chat_temperature: float = Field(default=0.7, validation_alias="CHAT_TEMPERATURE")
    chat_timeout_seconds: float = Field(default=60.0, validation_alias="CHAT_TIMEOUT_SECONDS")
    # Token ceiling for retrieved context handed to the generator.
    chat_context_token_budget: int = Field(
        default=3000, validation_alias="CHAT_CONTEXT_TOKEN_BUDGET"
    )
    # Number of previous messages sent to the generator as history.
    chat_history_limit: int = Field(default=10, validation_alias="CHAT_HISTORY_LIMIT")
    chat_default_system_prompt: str = Field(
        default="You are a helpful AI assistant.",
        validation_alias="CHAT_DEFAULT_SYSTEM_PROMPT",
    )

    # ── Usage limits ──────────────────────────────────────────────
    usage_max_tokens_per_day: int = Field(
        default=50000, validation_alias="USAGE_MAX_TOKENS_PER_DAY"
    )
    usage_max_tokens_per_week: int = Field(
        default=50000, validation_alias="USAGE_MAX_TOKENS_PER_WEEK"
    )
    usage_max_messages_per_week: int = Field(
        default=100, validation_alias="USAGE_MAX_MESSAGES_PER_WEEK"
    )

    # ── MCP Server ────────────────────────────────────────────────
    # "stdio" for desktop clients that launch the server as a subprocess,
    # "streamable-http" for hosted deployments.
    mcp_transport: str = Field(default="stdio", validation_alias="MCP_TRANSPORT")
    mcp_host: str = Field(default="0.0.0.0", validation_alias="MCP_HOST")
    mcp_port: int = Field(default=8765, validation_alias="MCP_PORT")
    # Hard timeout (seconds) for a single tool call.
    mcp_tool_timeout: int = Field(default=120, validation_alias="MCP_TOOL_TIMEOUT")
    mcp_log_level: str = Field(default="INFO", validation_alias="MCP_LOG_LEVEL")


settings = Settings()
