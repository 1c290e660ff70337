"""
Centralized configuration for salesync.

Configuration is loaded from environment variables (and a local .env file)
with defaults matching the production sheets and collections.

Usage:
    from salesync.config import config

    page_size = config.firestore.page_size
    brand = config.brands.get("kivos")
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StorageConfig:
    """Local DuckDB persistence."""

    db_path: str = field(
        default_factory=lambda: os.getenv("SALESYNC_DB_PATH", "data/salesync.duckdb")
    )


@dataclass(frozen=True)
class FirestoreConfig:
    """Remote document store (Firestore REST API)."""

    project_id: str = field(default_factory=lambda: os.getenv("FIRESTORE_PROJECT_ID", ""))
    api_key: str = field(default_factory=lambda: os.getenv("FIRESTORE_API_KEY", ""))
    token: str = field(default_factory=lambda: os.getenv("FIRESTORE_TOKEN", ""))
    database: str = field(default_factory=lambda: os.getenv("FIRESTORE_DATABASE", "(default)"))
    base_url: str = "https://firestore.googleapis.com/v1"
    request_timeout: float = 30.0
    page_size: int = 500
    membership_batch_size: int = 10  # array-contains-any accepts at most 10 values


@dataclass(frozen=True)
class SyncConfig:
    """Incremental replication settings."""

    # Priority order: later fields overwrite earlier ones in the delta union
    freshness_fields: Tuple[str, ...] = ("updatedAt", "lastUpdated", "importedAt", "createdAt")
    full_fetch_on_empty_delta: bool = field(
        default_factory=lambda: _env_flag("SYNC_FULL_ON_EMPTY_DELTA", "true")
    )


@dataclass(frozen=True)
class SheetSource:
    """One registered spreadsheet export."""

    key: str
    url: str
    format: str = "csv"  # csv | gviz
    keep_columns: Tuple[int, ...] = ()


def _sheet(key: str, url: str, format: str = "csv", keep_columns: Tuple[int, ...] = ()) -> SheetSource:
    # SHEET_URL_<KEY> overrides the published URL
    return SheetSource(
        key=key,
        url=os.getenv(f"SHEET_URL_{key.upper()}", url),
        format=format,
        keep_columns=keep_columns,
    )


_PLAYMOBIL_2025 = (
    "https://docs.google.com/spreadsheets/d/e/2PACX-1vTG9rEF1fDFT7Z4M4Q7ejMGFmLtbS3gsORfFOP19ESNV00"
    "TticfgHxfnmvPOd28Nm23783aXLafj-TL/pub"
)
_PLAYMOBIL_2024 = (
    "https://docs.google.com/spreadsheets/d/e/2PACX-1vT6ovPvxxcXY5Ufs1-xUGnubbpASr0NqQNZwAcmX3Qp-zs9"
    "tkgCe3vKQlSdP-4P5nX_U_YoTlKSYUbf/pub"
)


@dataclass(frozen=True)
class SheetsConfig:
    """Spreadsheet registry and tabular cache settings."""

    ttl_seconds: int = 24 * 60 * 60
    fetch_timeout: float = 20.0

    registry: Dict[str, SheetSource] = field(default_factory=lambda: {
        source.key: source for source in [
            _sheet(
                "playmobilSales",
                "https://docs.google.com/spreadsheets/d/1_HxZwIyB3Rhv3ZO4DgH-uIgr3uvr97vw-W3VM0GswFA"
                "/export?format=csv&gid=499925136",
                keep_columns=(4, 5, 13, 19, 20, 21, 22),
            ),
            _sheet(
                "playmobilStock",
                "https://docs.google.com/spreadsheets/d/1VG7QzMgj0Ib0jNXZM5dLFgDyyer8gvSmkkaVZzMZcEM"
                "/gviz/tq?tqx=out:json&sheet=Sheet1",
                format="gviz",
            ),
            _sheet("sales2025", f"{_PLAYMOBIL_2025}?gid=616087206&single=true&output=csv"),
            _sheet("sales2024", f"{_PLAYMOBIL_2024}?gid=466675476&single=true&output=csv"),
            _sheet(
                "kivosCustomers",
                "https://docs.google.com/spreadsheets/d/1pCVVgFiutK92nZFYSCkQCQbedqaKgvQahnix6bHSRIU/gviz/tq?gid=0",
                format="gviz",
            ),
            _sheet(
                "kivosCredit",
                "https://docs.google.com/spreadsheets/d/1JJtzoDJjwwfIm-bBcPAX_aaeNHkGSGzPBo0blFTHfSc/gviz/tq?gid=0",
                format="gviz",
            ),
            _sheet("kivosSales2025", ""),
            _sheet("kivosSales2024", ""),
            _sheet("kivosSales2023", ""),
            _sheet("kivosSales2022", ""),
        ]
    })

    def get(self, key: str) -> Optional[SheetSource]:
        return self.registry.get(key)


@dataclass(frozen=True)
class BrandProfile:
    """Collections, sheets and KPI layout of one brand."""

    name: str
    product_collection: str
    customer_collection: str
    # Force-reloaded after each collection sync
    sync_sheets: Tuple[str, ...] = ()
    # year -> sheet key, newest first
    kpi_sheets: Dict[int, str] = field(default_factory=dict)
    layout: str = "header"  # header | ledger
    filter_strategy: str = "handled_by"  # handled_by | membership

    @property
    def collections(self) -> Tuple[str, str]:
        return (self.product_collection, self.customer_collection)


@dataclass(frozen=True)
class BrandConfig:
    """Known brands."""

    profiles: Dict[str, BrandProfile] = field(default_factory=lambda: {
        "playmobil": BrandProfile(
            name="playmobil",
            product_collection="products",
            customer_collection="customers",
            sync_sheets=("playmobilSales", "playmobilStock"),
            kpi_sheets={2025: "sales2025", 2024: "sales2024"},
            layout="header",
            filter_strategy="handled_by",
        ),
        "kivos": BrandProfile(
            name="kivos",
            product_collection="products_kivos",
            customer_collection="customers_kivos",
            sync_sheets=("kivosCustomers", "kivosCredit"),
            kpi_sheets={
                2025: "kivosSales2025",
                2024: "kivosSales2024",
                2023: "kivosSales2023",
                2022: "kivosSales2022",
            },
            layout="ledger",
            filter_strategy="membership",
        ),
        "john": BrandProfile(
            name="john",
            product_collection="products_john",
            customer_collection="customers_john",
        ),
    })

    @property
    def names(self) -> List[str]:
        return list(self.profiles)

    def get(self, brand: str) -> Optional[BrandProfile]:
        return self.profiles.get((brand or "").strip().lower())


@dataclass(frozen=True)
class PlaymobilColumns:
    """Header names of the Playmobil sales export."""

    customer_code: str = "Payer"
    customer_name: str = "Name Payer"
    amount: str = "Sales revenue"
    date: str = "Billing Date"
    handled_by: str = "Sales Rep"


@dataclass(frozen=True)
class KpiConfig:
    """KPI aggregation and result cache."""

    result_ttl_seconds: int = 24 * 60 * 60
    max_cached_filters: int = 20
    dataset_ttl_seconds: int = 24 * 60 * 60
    vat_divisor: float = 1.24
    playmobil_columns: PlaymobilColumns = field(default_factory=PlaymobilColumns)


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = field(default_factory=lambda: _env_flag("LOG_JSON", "false"))
    storage: StorageConfig = field(default_factory=StorageConfig)
    firestore: FirestoreConfig = field(default_factory=FirestoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    sheets: SheetsConfig = field(default_factory=SheetsConfig)
    brands: BrandConfig = field(default_factory=BrandConfig)
    kpi: KpiConfig = field(default_factory=KpiConfig)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(require_remote: bool = True, cfg: AppConfig = None) -> None:
    """
    Validate that required configuration is present.

    Args:
        require_remote: If True, the Firestore project must be configured
        cfg: Config to check (defaults to the global one)

    Raises:
        ConfigurationError: If configuration is missing or inconsistent
    """
    cfg = cfg or config
    errors = []

    if require_remote and not cfg.firestore.project_id:
        errors.append("FIRESTORE_PROJECT_ID is required but not set")

    if cfg.firestore.page_size <= 0:
        errors.append("Firestore page size must be positive")

    if not 1 <= cfg.firestore.membership_batch_size <= 10:
        errors.append("Membership batch size must be between 1 and 10")

    if not cfg.sync.freshness_fields:
        errors.append("At least one freshness field is required")

    for profile in cfg.brands.profiles.values():
        for key in (*profile.sync_sheets, *profile.kpi_sheets.values()):
            if cfg.sheets.get(key) is None:
                errors.append(f"Brand {profile.name} references unknown sheet {key}")
        if profile.layout not in ("header", "ledger"):
            errors.append(f"Brand {profile.name} has unknown layout {profile.layout}")
        if profile.filter_strategy not in ("handled_by", "membership"):
            errors.append(f"Brand {profile.name} has unknown filter strategy {profile.filter_strategy}")

    for source in cfg.sheets.registry.values():
        if source.format not in ("csv", "gviz"):
            errors.append(f"Sheet {source.key} has unknown format {source.format}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
