"""
Pastoral Common Module

Shared infrastructure for ingestion, enrichment, generation and the jobs.
"""

from .config import PastoralConfig, load_config
from .inchurch_client import InChurchClient
from .llm_client import LLMClient
from .rate_limiter import RateLimiter
from .store import DataStore, InMemoryStore, JsonFileStore

__all__ = [
    "PastoralConfig",
    "load_config",
    "InChurchClient",
    "LLMClient",
    "RateLimiter",
    "DataStore",
    "InMemoryStore",
    "JsonFileStore",
]
