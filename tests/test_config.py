"""Tests for environment configuration loading."""

import pytest

from vector_indexer.server.config.logfire_config import resolve_log_level
from vector_indexer.server.config.settings import ProviderName, load_config
from vector_indexer.server.services.vector.exceptions import ConfigurationError

OPENAI_ENV = {"OPENAI_API_KEY": "sk-test"}


class TestDefaults:
    def test_openai_defaults(self):
        config = load_config(OPENAI_ENV)

        assert config.embedding.provider == ProviderName.OPENAI
        assert config.embedding.model == "text-embedding-3-small"
        assert config.embedding.dimensions == 1536
        assert config.retry.max_retries == 3
        assert config.retry.base_delay == 1000
        assert config.retry.max_delay == 30000
        assert config.retry.jitter is True
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.reset_timeout == 60000
        assert config.timeout == 30000
        assert config.database.batch_size == 100
        assert config.database.max_concurrent_operations == 10
        assert config.monitoring.enable_metrics is True
        assert config.monitoring.retention_period == 3600000
        assert config.monitoring.log_level == "info"
        assert config.event_queue_size == 1000

    def test_error_handling_projection(self):
        config = load_config({**OPENAI_ENV, "EMBEDDING_TIMEOUT_MS": "10000", "EMBEDDING_MAX_RETRIES": "2"})

        error_handling = config.error_handling()

        assert error_handling.timeout == 10000
        assert error_handling.retry.max_retries == 2
        assert error_handling.circuit_breaker.failure_threshold == 5

    def test_summary_has_no_secrets(self):
        summary = load_config(OPENAI_ENV).summary()

        assert summary["embedding"]["provider"] == "openai"
        assert "sk-test" not in str(summary)


class TestProviders:
    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError, match="API key required for openai"):
            load_config({})

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown EMBEDDING_PROVIDER"):
            load_config({"EMBEDDING_PROVIDER": "voyage"})

    def test_ollama_needs_no_key(self):
        config = load_config({"EMBEDDING_PROVIDER": "ollama"})

        assert config.embedding.provider == ProviderName.OLLAMA
        assert config.embedding.base_url == "http://localhost:11434"
        assert config.embedding.dimensions == 768

    def test_cohere_settings(self):
        config = load_config({"EMBEDDING_PROVIDER": "cohere", "COHERE_API_KEY": "co"})

        assert config.embedding.dimensions == 1024
        assert config.embedding.input_type == "search_document"

    def test_azure_requires_endpoint_and_deployment(self):
        with pytest.raises(ConfigurationError, match="AZURE_OPENAI_ENDPOINT"):
            load_config({"EMBEDDING_PROVIDER": "azure", "AZURE_OPENAI_API_KEY": "az"})

    def test_azure_model_is_deployment(self):
        config = load_config({
            "EMBEDDING_PROVIDER": "azure",
            "AZURE_OPENAI_API_KEY": "az",
            "AZURE_OPENAI_ENDPOINT": "https://acme.openai.azure.com",
            "AZURE_OPENAI_DEPLOYMENT_NAME": "embed-prod",
        })

        assert config.embedding.model == "embed-prod"
        assert config.embedding.api_version == "2024-02-01"


class TestValidation:
    @pytest.mark.parametrize(
        "name,value",
        [
            ("EMBEDDING_MAX_RETRIES", "11"),
            ("EMBEDDING_BASE_DELAY", "50"),
            ("EMBEDDING_TIMEOUT_MS", "500"),
            ("EMBEDDING_FAILURE_THRESHOLD", "0"),
            ("VECTOR_DB_BATCH_SIZE", "5000"),
            ("VECTOR_METRICS_RETENTION", "1000"),
            ("VECTOR_LOG_LEVEL", "verbose"),
        ],
    )
    def test_out_of_range_values(self, name, value):
        with pytest.raises(ConfigurationError):
            load_config({**OPENAI_ENV, name: value})

    def test_non_integer_value(self):
        with pytest.raises(ConfigurationError, match="EMBEDDING_MAX_RETRIES must be an integer"):
            load_config({**OPENAI_ENV, "EMBEDDING_MAX_RETRIES": "three"})

    def test_max_delay_below_base_delay(self):
        with pytest.raises(ConfigurationError):
            load_config({**OPENAI_ENV, "EMBEDDING_BASE_DELAY": "5000", "EMBEDDING_MAX_DELAY": "2000"})

    def test_flags_only_disabled_by_false(self):
        config = load_config({**OPENAI_ENV, "EMBEDDING_JITTER": "false", "VECTOR_ENABLE_METRICS": "no"})

        assert config.retry.jitter is False
        assert config.monitoring.enable_metrics is True


class TestLogLevels:
    @pytest.mark.parametrize(
        "name,level",
        [("debug", 10), ("info", 20), ("warn", 30), ("error", 40), ("fatal", 50), (None, 20), ("bogus", 20)],
    )
    def test_resolve_log_level(self, name, level):
        assert resolve_log_level(name) == level
