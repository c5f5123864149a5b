"""
Pipeline configuration.

Values come from config/config.ini and may be overridden by environment
variables. The result is an immutable PipelineConfig that is handed to the
adapters, the reconciler and the orchestrators when they are constructed.
"""

import configparser
import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from loguru import logger

from src.errors import ConfigurationError
from src.models import PRIZE_CATEGORIES, PrizeCategory

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
DEFAULT_CONFIG_PATH = os.path.join(REPO_ROOT, "config", "config.ini")

# Fallback chain consulted after the primary adapter, highest trust first.
FALLBACK_ORDER: Tuple[str, ...] = ("document_ocr", "mirror_document", "html_page")


@dataclass(frozen=True)
class PipelineConfig:
    api_base: str = "https://www.glo.or.th/api/lottery"
    mirror_pdf_base: str = "https://cdn.lottery.co.th/lotto/pdf"
    mirror_page_base: str = "https://www.lottery.co.th/lotto"
    http_timeout: float = 30.0
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    database_file: str = os.path.join(REPO_ROOT, "data", "lottery_draws.db")
    blob_root: str = os.path.join(REPO_ROOT, "data", "blobs")
    document_prefix: str = "lottery_pdfs/"
    ocr_output_prefix: str = "lottery_ocr_output"
    ocr_min_text_length: int = 50
    ocr_batch_size: int = 5
    azure_endpoint: Optional[str] = None
    azure_api_key: Optional[str] = None
    timezone: str = "Asia/Bangkok"
    categories: Tuple[PrizeCategory, ...] = PRIZE_CATEGORIES
    fallback_order: Tuple[str, ...] = FALLBACK_ORDER


@dataclass(frozen=True)
class LimitBounds:
    """Allowed range and defaults for one job's limits."""
    days_default: int = 366
    days_max: int = 370
    limit_default: int = 400
    limit_min: int = 10
    limit_max: int = 800
    upserts_default: int = 200
    upserts_max: int = 800


API_BACKFILL_BOUNDS = LimitBounds(limit_default=6, limit_min=1, limit_max=60, upserts_default=60, upserts_max=500)
DOCUMENT_BACKFILL_BOUNDS = LimitBounds(limit_default=200, limit_max=500, upserts_default=20, upserts_max=200)
COMPLETE_BOUNDS = LimitBounds()
STORED_DOCUMENT_BOUNDS = LimitBounds(limit_default=800, limit_max=2000)


@dataclass(frozen=True)
class JobLimits:
    """
    Bounded run configuration shared by every orchestrator.

    `limit` is the page count for the API backfill, the query size for the
    record-store jobs and the file count for the stored-document job.
    """
    days: Optional[int] = None
    limit: Optional[int] = None
    max_upserts: Optional[int] = None
    force: bool = False
    timeout_s: Optional[float] = None

    def resolve(self, bounds: LimitBounds) -> "JobLimits":
        """Fill defaults, reject non-positive values and clamp to the bounds."""
        days = bounds.days_default if self.days is None else int(self.days)
        limit = bounds.limit_default if self.limit is None else int(self.limit)
        max_upserts = bounds.upserts_default if self.max_upserts is None else int(self.max_upserts)

        if days < 1:
            raise ConfigurationError(f"Window must be at least one day, got {days}")
        if limit < 1:
            raise ConfigurationError(f"Limit must be positive, got {limit}")
        if max_upserts < 1:
            raise ConfigurationError(f"max_upserts must be positive, got {max_upserts}")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be positive, got {self.timeout_s}")

        return replace(
            self,
            days=min(days, bounds.days_max),
            limit=max(bounds.limit_min, min(limit, bounds.limit_max)),
            max_upserts=min(max_upserts, bounds.upserts_max),
        )


def _resolve_path(value: str) -> str:
    return value if os.path.isabs(value) else os.path.join(REPO_ROOT, value)


def load_config(config_path: Optional[str] = None) -> PipelineConfig:
    """Read config.ini (if present) and environment overrides."""
    parser = configparser.ConfigParser()
    path = config_path or DEFAULT_CONFIG_PATH
    defaults = PipelineConfig()
    values = {}

    try:
        parser.read(path, encoding="utf-8")
    except (configparser.Error, OSError) as e:
        logger.error(f"Error reading config file {path}: {e}. Using defaults.")

    if parser.has_section("paths"):
        if parser.has_option("paths", "database_file"):
            values["database_file"] = _resolve_path(parser["paths"]["database_file"])
        if parser.has_option("paths", "blob_root"):
            values["blob_root"] = _resolve_path(parser["paths"]["blob_root"])
    else:
        logger.warning(f"Config section 'paths' not found in {path}, using default locations")

    if parser.has_section("sources"):
        section = parser["sources"]
        values["api_base"] = section.get("api_base", defaults.api_base).rstrip("/")
        values["mirror_pdf_base"] = section.get("mirror_pdf_base", defaults.mirror_pdf_base).rstrip("/")
        values["mirror_page_base"] = section.get("mirror_page_base", defaults.mirror_page_base).rstrip("/")
        values["http_timeout"] = section.getfloat("http_timeout", defaults.http_timeout)

    if parser.has_section("ocr"):
        section = parser["ocr"]
        values["ocr_output_prefix"] = section.get("output_prefix", defaults.ocr_output_prefix).strip("/")
        values["ocr_min_text_length"] = section.getint("min_text_length", defaults.ocr_min_text_length)
        values["ocr_batch_size"] = section.getint("batch_size", defaults.ocr_batch_size)

    if parser.has_section("schedule"):
        values["timezone"] = parser["schedule"].get("timezone", defaults.timezone)

    env_overrides = {
        "database_file": os.getenv("LOTTERY_DATABASE_FILE"),
        "blob_root": os.getenv("LOTTERY_BLOB_ROOT"),
        "api_base": os.getenv("GLO_API_BASE"),
        "azure_endpoint": os.getenv("AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT"),
        "azure_api_key": os.getenv("AZURE_DOCUMENT_INTELLIGENCE_API_KEY"),
    }
    for key, value in env_overrides.items():
        if value:
            values[key] = value

    config = replace(defaults, **values)
    logger.debug(f"Pipeline config loaded: db={config.database_file} blobs={config.blob_root}")
    return config
