"""
Configuration Management for the Pastoral Pipeline

Loads configuration from ~/.pastoral/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("pastoral.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".pastoral"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
DATA_PATH = CONFIG_DIR / "data.json"


@dataclass
class LLMConfig:
    """LLM provider configuration for change enrichment"""
    provider: str = "openai"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout: float = 30.0

    @property
    def model(self) -> str:
        return {
            "anthropic": self.anthropic_model,
            "openai": self.openai_model,
            "google": self.google_model,
        }.get(self.provider, "")


@dataclass
class WebhookConfig:
    """Inbound InChurch webhook configuration"""
    signing_secret: str = ""
    signature_header: str = "x-inchurch-signature"


@dataclass
class CronConfig:
    """Scheduler authorization for the cron endpoints"""
    secret: str = ""
    scheduler_header: str = "x-vercel-cron"
    test_api_key: str = ""
    environment: str = "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")


@dataclass
class InChurchConfig:
    """InChurch directory API client configuration"""
    api_url: str = "https://api.inchurch.com.br"
    rate_limit_requests: int = 200  # per minute
    request_timeout: float = 30.0
    max_retries: int = 3
    cache_ttl: float = 300.0  # seconds
    page_size: int = 100
    page_delay: float = 0.3


@dataclass
class PipelineConfig:
    """Batch sizes, caps and throttles for the orchestration jobs"""
    scoring_batch_size: int = 15
    include_historical_context: bool = True
    max_initiatives_per_person: int = 3
    generation_batch_size: int = 30
    skip_duplicates: bool = True
    duplicate_window_days: int = 7
    generation_window_days: int = 7
    conflict_review_hours: float = 24.0
    birthday_lookahead_days: int = 30
    sync_org_delay: float = 1.0
    scoring_org_delay: float = 1.0
    generation_org_delay: float = 0.5
    job_time_budget: float = 280.0  # seconds


@dataclass
class StoreConfig:
    """Persistence backend"""
    backend: str = "json"  # "json" or "memory"
    path: str = str(DATA_PATH)


@dataclass
class PastoralConfig:
    """Main pipeline configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    cron: CronConfig = field(default_factory=CronConfig)
    inchurch: InChurchConfig = field(default_factory=InChurchConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    server_port: int = 8080
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        temperature=llm_data.get("temperature", defaults.temperature),
        max_tokens=llm_data.get("max_tokens", defaults.max_tokens),
        timeout=llm_data.get("timeout", defaults.timeout),
    )


def _parse_webhook_config(data: dict) -> WebhookConfig:
    """Parse webhook section from config dict"""
    webhook_data = data.get("webhook", {})
    return WebhookConfig(
        signing_secret=webhook_data.get("signing_secret", ""),
        signature_header=webhook_data.get("signature_header", "x-inchurch-signature"),
    )


def _parse_cron_config(data: dict) -> CronConfig:
    """Parse cron section from config dict"""
    cron_data = data.get("cron", {})
    return CronConfig(
        secret=cron_data.get("secret", ""),
        scheduler_header=cron_data.get("scheduler_header", "x-vercel-cron"),
        test_api_key=cron_data.get("test_api_key", ""),
        environment=cron_data.get("environment", "production"),
    )


def _parse_inchurch_config(data: dict) -> InChurchConfig:
    """Parse inchurch section from config dict"""
    inchurch_data = data.get("inchurch", {})
    defaults = InChurchConfig()
    return InChurchConfig(
        api_url=inchurch_data.get("api_url", defaults.api_url),
        rate_limit_requests=inchurch_data.get("rate_limit_requests", defaults.rate_limit_requests),
        request_timeout=inchurch_data.get("request_timeout", defaults.request_timeout),
        max_retries=inchurch_data.get("max_retries", defaults.max_retries),
        cache_ttl=inchurch_data.get("cache_ttl", defaults.cache_ttl),
        page_size=inchurch_data.get("page_size", defaults.page_size),
        page_delay=inchurch_data.get("page_delay", defaults.page_delay),
    )


def _parse_pipeline_config(data: dict) -> PipelineConfig:
    """Parse pipeline section from config dict"""
    pipeline_data = data.get("pipeline", {})
    defaults = PipelineConfig()
    return PipelineConfig(**{
        name: pipeline_data.get(name, getattr(defaults, name))
        for name in defaults.__dataclass_fields__
    })


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store section from config dict"""
    store_data = data.get("store", {})
    return StoreConfig(
        backend=store_data.get("backend", "json"),
        path=store_data.get("path", str(DATA_PATH)),
    )


def load_config() -> PastoralConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.pastoral/config.json)
    3. Default values
    """
    config = PastoralConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.webhook = _parse_webhook_config(data)
            config.cron = _parse_cron_config(data)
            config.inchurch = _parse_inchurch_config(data)
            config.pipeline = _parse_pipeline_config(data)
            config.store = _parse_store_config(data)
            config.server_port = data.get("server_port", 8080)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    # Secret-bearing env vars (tracked so save_config never writes them)
    _env_secret_map = {
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
        "GOOGLE_API_KEY": (config.llm, "google_api_key"),
        "GEMINI_API_KEY": (config.llm, "google_api_key"),
        "INCHURCH_WEBHOOK_SECRET": (config.webhook, "signing_secret"),
        "CRON_SECRET": (config.cron, "secret"),
        "TEST_API_KEY": (config.cron, "test_api_key"),
    }
    for env_var, (section, attr) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("PASTORAL_LLM_PROVIDER"):
        config.llm.provider = os.getenv("PASTORAL_LLM_PROVIDER")
    if os.getenv("OPENAI_MODEL"):
        config.llm.openai_model = os.getenv("OPENAI_MODEL")
    if os.getenv("ANTHROPIC_MODEL"):
        config.llm.anthropic_model = os.getenv("ANTHROPIC_MODEL")

    environment = os.getenv("PASTORAL_ENV") or os.getenv("NODE_ENV")
    if environment:
        config.cron.environment = environment

    if os.getenv("INCHURCH_API_URL"):
        config.inchurch.api_url = os.getenv("INCHURCH_API_URL")
    if os.getenv("INCHURCH_RATE_LIMIT_REQUESTS"):
        config.inchurch.rate_limit_requests = int(os.getenv("INCHURCH_RATE_LIMIT_REQUESTS"))
    if os.getenv("INCHURCH_REQUEST_TIMEOUT"):
        # milliseconds, matching the directory API's own convention
        config.inchurch.request_timeout = int(os.getenv("INCHURCH_REQUEST_TIMEOUT")) / 1000
    if os.getenv("INCHURCH_MAX_RETRIES"):
        config.inchurch.max_retries = int(os.getenv("INCHURCH_MAX_RETRIES"))
    if os.getenv("INCHURCH_CACHE_TTL"):
        config.inchurch.cache_ttl = int(os.getenv("INCHURCH_CACHE_TTL")) / 1000

    if os.getenv("PASTORAL_STORE_BACKEND"):
        config.store.backend = os.getenv("PASTORAL_STORE_BACKEND")
    if os.getenv("PASTORAL_STORE_PATH"):
        config.store.path = os.getenv("PASTORAL_STORE_PATH")
    if os.getenv("PASTORAL_PORT"):
        config.server_port = int(os.getenv("PASTORAL_PORT"))

    return config


def save_config(config: PastoralConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    def _secret(attr: str, value: str) -> str:
        return "" if attr in env_sourced else value

    data = {
        "llm": {
            "provider": config.llm.provider,
            "anthropic_api_key": _secret("anthropic_api_key", config.llm.anthropic_api_key),
            "anthropic_model": config.llm.anthropic_model,
            "openai_api_key": _secret("openai_api_key", config.llm.openai_api_key),
            "openai_model": config.llm.openai_model,
            "google_api_key": _secret("google_api_key", config.llm.google_api_key),
            "google_model": config.llm.google_model,
            "temperature": config.llm.temperature,
            "max_tokens": config.llm.max_tokens,
            "timeout": config.llm.timeout,
        },
        "webhook": {
            "signing_secret": _secret("signing_secret", config.webhook.signing_secret),
            "signature_header": config.webhook.signature_header,
        },
        "cron": {
            "secret": _secret("secret", config.cron.secret),
            "scheduler_header": config.cron.scheduler_header,
            "test_api_key": _secret("test_api_key", config.cron.test_api_key),
            "environment": config.cron.environment,
        },
        "inchurch": {
            "api_url": config.inchurch.api_url,
            "rate_limit_requests": config.inchurch.rate_limit_requests,
            "request_timeout": config.inchurch.request_timeout,
            "max_retries": config.inchurch.max_retries,
            "cache_ttl": config.inchurch.cache_ttl,
            "page_size": config.inchurch.page_size,
            "page_delay": config.inchurch.page_delay,
        },
        "pipeline": {
            name: getattr(config.pipeline, name)
            for name in config.pipeline.__dataclass_fields__
        },
        "store": {
            "backend": config.store.backend,
            "path": config.store.path,
        },
        "server_port": config.server_port,
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
