"""Tests for configuration loading, env overrides and secret-safe saving."""

import json
import os
import pytest
from unittest.mock import patch


class TestDefaults:
    def test_llm_config_defaults(self):
        from pastoral.common.config import LLMConfig
        cfg = LLMConfig()
        assert cfg.provider == "openai"
        assert cfg.model == "gpt-4o-mini"
        assert cfg.temperature == 0.3
        assert cfg.max_tokens == 1000

    def test_model_follows_provider(self):
        from pastoral.common.config import LLMConfig
        assert LLMConfig(provider="anthropic").model == "claude-haiku-4-5-20251001"
        assert LLMConfig(provider="google").model == "gemini-2.0-flash-exp"
        assert LLMConfig(provider="unknown").model == ""

    def test_pipeline_defaults(self):
        from pastoral.common.config import PipelineConfig
        cfg = PipelineConfig()
        assert cfg.scoring_batch_size == 15
        assert cfg.generation_batch_size == 30
        assert cfg.max_initiatives_per_person == 3
        assert cfg.generation_window_days == 7
        assert cfg.conflict_review_hours == 24.0
        assert cfg.birthday_lookahead_days == 30

    @pytest.mark.parametrize("environment,expected", [
        ("development", True),
        ("Development", True),
        ("production", False),
        ("test", False),
    ])
    def test_is_development(self, environment, expected):
        from pastoral.common.config import CronConfig
        assert CronConfig(environment=environment).is_development is expected


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        from pastoral.common.config import load_config
        with patch("pastoral.common.config.CONFIG_PATH", tmp_path / "absent.json"), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()
        assert cfg.llm.provider == "openai"
        assert cfg.store.backend == "json"
        assert cfg.server_port == 8080

    def test_load_sections_from_file(self, tmp_path):
        from pastoral.common.config import load_config
        config_data = {
            "llm": {"provider": "anthropic", "anthropic_api_key": "sk-ant"},
            "webhook": {"signing_secret": "whsec"},
            "cron": {"secret": "cron-secret", "environment": "development"},
            "inchurch": {"page_size": 50},
            "pipeline": {"scoring_batch_size": 7, "skip_duplicates": False},
            "store": {"backend": "memory"},
            "server_port": 9000,
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("pastoral.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.llm.provider == "anthropic"
        assert cfg.llm.anthropic_api_key == "sk-ant"
        assert cfg.webhook.signing_secret == "whsec"
        assert cfg.cron.is_development
        assert cfg.inchurch.page_size == 50
        assert cfg.pipeline.scoring_batch_size == 7
        assert cfg.pipeline.skip_duplicates is False
        assert cfg.pipeline.generation_batch_size == 30
        assert cfg.store.backend == "memory"
        assert cfg.server_port == 9000

    def test_invalid_file_logs_warning(self, tmp_path, caplog):
        import logging
        from pastoral.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("pastoral.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True), \
             caplog.at_level(logging.WARNING, logger="pastoral.common.config"):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert "Failed to load config file" in caplog.text

    def test_env_var_overrides(self, tmp_path):
        from pastoral.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"provider": "google"}}))

        env = {
            "OPENAI_API_KEY": "sk-env",
            "PASTORAL_LLM_PROVIDER": "openai",
            "INCHURCH_WEBHOOK_SECRET": "whsec-env",
            "CRON_SECRET": "cron-env",
            "NODE_ENV": "development",
            "INCHURCH_REQUEST_TIMEOUT": "15000",
            "INCHURCH_CACHE_TTL": "60000",
            "PASTORAL_STORE_BACKEND": "memory",
        }
        with patch("pastoral.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert cfg.llm.openai_api_key == "sk-env"
        assert cfg.webhook.signing_secret == "whsec-env"
        assert cfg.cron.secret == "cron-env"
        assert cfg.cron.is_development
        assert cfg.inchurch.request_timeout == 15.0
        assert cfg.inchurch.cache_ttl == 60.0
        assert cfg.store.backend == "memory"

    def test_pastoral_env_wins_over_node_env(self, tmp_path):
        from pastoral.common.config import load_config
        env = {"PASTORAL_ENV": "production", "NODE_ENV": "development"}
        with patch("pastoral.common.config.CONFIG_PATH", tmp_path / "absent.json"), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()
        assert not cfg.cron.is_development


class TestSaveConfig:
    def test_save_config_omits_env_secrets(self, tmp_path):
        from pastoral.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"anthropic_api_key": "sk-file"}}))

        env = {"OPENAI_API_KEY": "sk-from-env", "CRON_SECRET": "cron-from-env"}
        with patch("pastoral.common.config.CONFIG_PATH", config_file), \
             patch("pastoral.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["openai_api_key"] == ""
        assert saved["cron"]["secret"] == ""
        assert saved["llm"]["anthropic_api_key"] == "sk-file"

    def test_save_config_round_trips_pipeline_section(self, tmp_path):
        from pastoral.common.config import PastoralConfig, load_config, save_config
        config_file = tmp_path / "config.json"
        cfg = PastoralConfig()
        cfg.pipeline.max_initiatives_per_person = 5

        with patch("pastoral.common.config.CONFIG_PATH", config_file), \
             patch("pastoral.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, {}, clear=True):
            save_config(cfg)
            loaded = load_config()

        assert loaded.pipeline.max_initiatives_per_person == 5
        assert oct(config_file.stat().st_mode & 0o777) == "0o600"
