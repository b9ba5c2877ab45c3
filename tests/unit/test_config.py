"""Unit tests for service configuration validation."""

from unittest.mock import patch

import pytest

from rankup.config import config, validate_config_for_service


@pytest.mark.unit
class TestConfigValidation:
    """Test per-service required settings."""

    def test_api_config_valid(self):
        validate_config_for_service("api")

    def test_publisher_requires_storage_token(self):
        with patch.object(config, "storage_api_token", ""):
            with pytest.raises(ValueError, match="STORAGE_API_TOKEN"):
                validate_config_for_service("publisher")

    def test_api_requires_publishing_credentials(self):
        with patch.object(config, "storage_api_token", ""), patch.object(config, "keystore_path", ""):
            with pytest.raises(ValueError) as excinfo:
                validate_config_for_service("api")
        assert "STORAGE_API_TOKEN" in str(excinfo.value)
        assert "KEYSTORE_PATH" in str(excinfo.value)

    def test_uri_template_needs_cid(self):
        with patch.object(config, "metadata_uri_template", "https://example.test/{mint}.json"):
            with pytest.raises(ValueError, match="METADATA_URI_TEMPLATE"):
                validate_config_for_service("api")

    def test_all_errors_reported_together(self):
        with patch.object(config, "collection_authority", ""), patch.object(config, "storage_api_token", ""):
            with pytest.raises(ValueError) as excinfo:
                validate_config_for_service("publisher")
        message = str(excinfo.value)
        assert "COLLECTION_AUTHORITY" in message
        assert "STORAGE_API_TOKEN" in message

    def test_default_rank_economy(self):
        assert config.cooldown_hours == 12
        assert config.jwt_ttl_minutes == 30
        assert config.page_size == 10
