"""
Utility functions for the API server.

This module provides helper functions for initializing the application components.
"""

from typing import Optional

from nycdb_insights.agents.narrative_agent import NarrativeGenerator
from nycdb_insights.agents.query_interpreter import QueryInterpreter
from nycdb_insights.analysis.pattern_detector import PatternDetector
from nycdb_insights.analysis.statistical_analyzer import StatisticalAnalyzer
from nycdb_insights.core.config import Config
from nycdb_insights.core.orchestrator import InsightPipeline
from nycdb_insights.data.conversation_store import InMemoryConversationStore
from nycdb_insights.data.data_store import DataStore
from nycdb_insights.data.query_compiler import QueryCompiler
from nycdb_insights.data.result_cache import ResultCache
from nycdb_insights.error_handler import ErrorHandler
from nycdb_insights.llm.llm_provider import LLMProvider, LLMProviderFactory
from nycdb_insights.response.assembler import ResponseAssembler


def create_llm_provider() -> LLMProvider:
    """
    Create the LLM provider selected by configuration.

    The configured provider is used when its key is set; otherwise whichever
    provider has a key.

    Raises:
        ValueError: If no API key is configured
    """
    keys = {"openai": Config.OPENAI_API_KEY, "gemini": Config.GOOGLE_API_KEY}
    models = {"openai": Config.OPENAI_MODEL, "gemini": Config.GEMINI_MODEL}

    provider_type = Config.LLM_PROVIDER.lower()
    if not keys.get(provider_type):
        provider_type = next((name for name, key in keys.items() if key), None)

    if provider_type is None:
        raise ValueError(
            "No API key configured. Please set OPENAI_API_KEY or GOOGLE_API_KEY in .env file"
        )

    return LLMProviderFactory.create_provider(
        provider_type,
        model=models[provider_type],
        api_key=keys[provider_type],
        max_retries=Config.MAX_RETRIES,
        cache_size=Config.CACHE_SIZE,
    )


def create_data_store(data_dir: Optional[str] = None) -> DataStore:
    """Create the data store and load every known table found in the data directory."""
    result_cache = None
    if Config.ENABLE_RESULT_CACHE:
        result_cache = ResultCache(ttl_seconds=Config.RESULT_CACHE_TTL, max_size=Config.CACHE_SIZE)

    data_store = DataStore(
        database_path=Config.DATABASE_PATH,
        result_cache=result_cache,
        query_timeout=Config.QUERY_TIMEOUT,
    )
    data_store.load_directory(data_dir or Config.DATA_DIR)
    data_store.ensure_known_tables()
    return data_store


def create_pipeline(llm_provider: Optional[LLMProvider] = None,
                    data_store: Optional[DataStore] = None) -> InsightPipeline:
    """
    Create and initialize an InsightPipeline with all required components.

    Args:
        llm_provider: LLM provider (created from configuration if None)
        data_store: Data store (created from configuration if None)

    Returns:
        Initialized InsightPipeline instance
    """
    llm_provider = llm_provider or create_llm_provider()
    data_store = data_store or create_data_store()

    store = InMemoryConversationStore(
        ttl_minutes=Config.SESSION_TTL_MINUTES,
        max_sessions_per_owner=Config.MAX_SESSIONS_PER_OWNER,
        max_history=Config.MAX_HISTORY,
    )
    error_handler = ErrorHandler()

    return InsightPipeline(
        interpreter=QueryInterpreter(llm_provider),
        compiler=QueryCompiler(),
        data_store=data_store,
        analyzer=StatisticalAnalyzer(),
        detector=PatternDetector(),
        narrator=NarrativeGenerator(
            llm_provider,
            char_budget=Config.PROMPT_CHAR_BUDGET,
            max_prompt_tokens=Config.PROMPT_TOKEN_BUDGET,
        ),
        assembler=ResponseAssembler(store, error_handler=error_handler),
        store=store,
        error_handler=error_handler,
    )
