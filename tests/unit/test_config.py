"""
Tests for salesync.config module.
"""
import dataclasses
import pytest

from salesync.config import (
    AppConfig,
    BrandConfig,
    BrandProfile,
    ConfigurationError,
    FirestoreConfig,
    SheetsConfig,
    SyncConfig,
    validate_config,
)


class TestDefaults:
    """Tests for default configuration values."""

    def test_freshness_field_order(self):
        """Freshness fields are tried in priority order."""
        assert SyncConfig().freshness_fields == ("updatedAt", "lastUpdated", "importedAt", "createdAt")

    def test_membership_batch_size(self):
        """array-contains-any batches are capped at 10."""
        assert FirestoreConfig().membership_batch_size == 10

    def test_brand_lookup_case_insensitive(self):
        """Brands are looked up case-insensitively."""
        brands = BrandConfig()
        assert brands.get("Kivos").name == "kivos"
        assert brands.get("unknown") is None
        assert brands.names == ["playmobil", "kivos", "john"]

    def test_brand_collections(self):
        """Each brand syncs its product and customer collections."""
        assert BrandConfig().get("kivos").collections == ("products_kivos", "customers_kivos")

    def test_sheet_url_override(self, monkeypatch):
        """SHEET_URL_<KEY> overrides a registered URL."""
        monkeypatch.setenv("SHEET_URL_KIVOSSALES2025", "https://example.test/kivos.csv")
        assert SheetsConfig().get("kivosSales2025").url == "https://example.test/kivos.csv"

    def test_empty_delta_flag_from_env(self, monkeypatch):
        """SYNC_FULL_ON_EMPTY_DELTA toggles the empty-delta policy."""
        monkeypatch.setenv("SYNC_FULL_ON_EMPTY_DELTA", "false")
        assert SyncConfig().full_fetch_on_empty_delta is False
        monkeypatch.delenv("SYNC_FULL_ON_EMPTY_DELTA")
        assert SyncConfig().full_fetch_on_empty_delta is True


class TestValidateConfig:
    """Tests for validate_config."""

    def test_default_config_valid_without_remote(self):
        """Defaults are consistent when the remote project is not required."""
        validate_config(require_remote=False, cfg=AppConfig())

    def test_missing_project_id(self):
        """Requiring the remote without a project id fails."""
        cfg = AppConfig(firestore=FirestoreConfig(project_id=""))
        with pytest.raises(ConfigurationError, match="FIRESTORE_PROJECT_ID"):
            validate_config(require_remote=True, cfg=cfg)

    def test_unknown_sheet_reference(self):
        """Brands may only reference registered sheets."""
        brands = BrandConfig(profiles={
            "acme": BrandProfile(
                name="acme",
                product_collection="products_acme",
                customer_collection="customers_acme",
                kpi_sheets={2025: "acmeSales2025"},
            ),
        })
        cfg = AppConfig(brands=brands, firestore=FirestoreConfig(project_id="demo"))
        with pytest.raises(ConfigurationError, match="unknown sheet acmeSales2025"):
            validate_config(cfg=cfg)

    def test_invalid_batch_size(self):
        """Batch sizes above the remote limit are rejected."""
        cfg = AppConfig(firestore=FirestoreConfig(project_id="demo", membership_batch_size=25))
        with pytest.raises(ConfigurationError, match="batch size"):
            validate_config(cfg=cfg)

    def test_config_is_frozen(self):
        """Config objects are immutable."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            AppConfig().version = "9.9.9"
