"""
Builds the context pipeline's collaborators from the environment.

- DATABASE_URL set → PostgreSQL checkpoint and memory stores (psycopg)
- otherwise → in-memory stores
- API credentials set → LangChain chat model for summaries and an
  OpenAI-compatible embedding model for long-term memory
- otherwise → null capabilities (compaction falls back to prune, promotion
  is deferred)

Every collaborator that fails to initialize degrades with a warning.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .checkpoint.maintenance import CheckpointMaintenance
from .checkpoint.postgres import PostgresCheckpointStorage
from .checkpoint.storage import CheckpointStorage, InMemoryCheckpointStorage
from .config import ContextConfig, MaintenanceConfig, MemoryConfig, resolve_context_window
from .errors import StorageError
from .memory.embeddings import Embedder, LangChainEmbedder, NullEmbedder
from .memory.retriever import PgVectorLongTermStore, PostgresMidTermStore
from .memory.stores import (
    InMemoryLongTermStore,
    InMemoryMidTermStore,
    LongTermStore,
    MidTermStore,
)
from .memory.summarizer import LLMSummarizer, NullSummarizer, Summarizer
from .memory.tiers import MemoryTierManager
from .session import ContextSession

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
SUMMARY_MAX_RETRIES = 2


def load_environment() -> None:
    """Load .env (override=True so the file wins over the shell)."""
    load_dotenv(override=True)


def get_credentials() -> tuple[str | None, str | None]:
    """
    API credentials, generic variables first:
    - API key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def connect_postgres(db_url: Optional[str] = None):
    """Open an autocommit psycopg connection, or None if unavailable."""
    db_url = db_url or os.getenv("DATABASE_URL")
    if not db_url:
        return None
    try:
        from psycopg import Connection
        from psycopg.rows import dict_row

        return Connection.connect(
            db_url,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
    except Exception as e:
        logger.warning("Failed to connect to PostgreSQL: %s. Using in-memory stores.", e)
        return None


def create_summarizer(
    model_name: Optional[str] = None,
    memory_config: Optional[MemoryConfig] = None,
) -> Summarizer:
    memory_config = memory_config or MemoryConfig()
    api_key, base_url = get_credentials()
    if not api_key:
        logger.info("No API credentials configured, compaction will fall back to prune")
        return NullSummarizer()

    model = memory_config.summary_model or model_name or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
    try:
        init_kwargs = {
            "temperature": 0.3,
            "max_tokens": memory_config.max_summary_tokens * 2,
            "api_key": api_key,
            "timeout": memory_config.summary_timeout_seconds,
            "max_retries": SUMMARY_MAX_RETRIES,
        }
        if base_url:
            init_kwargs["base_url"] = base_url

        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        llm = init_chat_model(model, **provider_kwargs, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create summarizer LLM: %s", e)
        return NullSummarizer()

    return LLMSummarizer(
        llm,
        max_summary_tokens=memory_config.max_summary_tokens,
        timeout_seconds=memory_config.summary_timeout_seconds,
    )


def create_embedder(memory_config: Optional[MemoryConfig] = None) -> Embedder:
    memory_config = memory_config or MemoryConfig()
    api_key, base_url = get_credentials()
    model_provider = os.getenv("MODEL_PROVIDER")

    # Embedding credentials: dedicated env vars > general credentials
    embed_base_url = memory_config.embedding_base_url or base_url
    embed_api_key = memory_config.embedding_api_key or api_key

    if not (model_provider == "openai" or (embed_base_url and not model_provider)):
        logger.info(
            "No embedding model configured for provider '%s', "
            "long-term memory will use keyword search",
            model_provider,
        )
        return NullEmbedder()

    try:
        from langchain_openai import OpenAIEmbeddings

        embed_kwargs = {}
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        if memory_config.embedding_dimensions:
            embed_kwargs["dimensions"] = memory_config.embedding_dimensions
        embedding_model = OpenAIEmbeddings(model=memory_config.embedding_model, **embed_kwargs)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return NullEmbedder()

    return LangChainEmbedder(embedding_model, dimensions=memory_config.embedding_dimensions)


def create_checkpoint_storage(pg_conn=None) -> CheckpointStorage:
    if pg_conn is not None:
        try:
            return PostgresCheckpointStorage(pg_conn)
        except StorageError as e:
            logger.warning("%s. Falling back to in-memory checkpoints.", e)
    return InMemoryCheckpointStorage()


def create_memory_stores(
    pg_conn=None,
    embedder: Optional[Embedder] = None,
    memory_config: Optional[MemoryConfig] = None,
) -> tuple[MidTermStore, LongTermStore]:
    memory_config = memory_config or MemoryConfig()
    if pg_conn is not None:
        try:
            return (
                PostgresMidTermStore(pg_conn),
                PgVectorLongTermStore(
                    pg_conn,
                    embedder=embedder,
                    dimensions=memory_config.embedding_dimensions,
                ),
            )
        except StorageError as e:
            logger.warning("%s. Falling back to in-memory memory stores.", e)
    return InMemoryMidTermStore(), InMemoryLongTermStore()


@dataclass
class ContextStack:
    """Shared collaborators for all sessions of one process."""

    config: ContextConfig
    memory_config: MemoryConfig
    maintenance_config: MaintenanceConfig
    checkpoint_storage: CheckpointStorage
    summarizer: Summarizer
    embedder: Embedder
    tier_manager: MemoryTierManager
    maintenance: CheckpointMaintenance
    pg_conn: object = None

    def new_session(self, session_id: Optional[str] = None) -> ContextSession:
        return ContextSession(
            session_id=session_id,
            config=self.config,
            summarizer=self.summarizer,
            checkpoint_storage=self.checkpoint_storage,
            tier_manager=self.tier_manager,
        )

    def close(self) -> None:
        self.maintenance.stop_auto_cleanup()
        if isinstance(self.summarizer, LLMSummarizer):
            self.summarizer.close()
        if self.pg_conn is not None:
            self.pg_conn.close()


def build_context_stack(
    model_name: Optional[str] = None,
    start_maintenance: bool = True,
) -> ContextStack:
    """Wire everything from environment variables (and .env)."""
    load_environment()
    model_name = model_name or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)

    config = ContextConfig.from_env()
    if not os.getenv("CONTEXT_MAX_TOKENS"):
        config.max_tokens = resolve_context_window(model_name)
    config.validate()

    memory_config = MemoryConfig.from_env()
    maintenance_config = MaintenanceConfig.from_env()

    pg_conn = connect_postgres()
    storage = create_checkpoint_storage(pg_conn)
    embedder = create_embedder(memory_config)
    mid_term, long_term = create_memory_stores(pg_conn, embedder, memory_config)

    maintenance = CheckpointMaintenance(storage, maintenance_config)
    if start_maintenance:
        maintenance.start_auto_cleanup()

    return ContextStack(
        config=config,
        memory_config=memory_config,
        maintenance_config=maintenance_config,
        checkpoint_storage=storage,
        summarizer=create_summarizer(model_name, memory_config),
        embedder=embedder,
        tier_manager=MemoryTierManager(mid_term, long_term, embedder, memory_config),
        maintenance=maintenance,
        pg_conn=pg_conn,
    )
