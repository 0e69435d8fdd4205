# bulkstore/config.py
#
# Store configuration loaded from environment variables.
#
# Design decisions:
#   - Frozen dataclass populated once by load_config(); every component receives
#     the instance explicitly instead of reading os.environ on its own.
#   - Paths default to bulkstore/data relative to this file's directory so the
#     store works out of the box after a fresh checkout.
#   - The remote catalog is a Zenodo record. The record id and API base can be
#     overridden for mirrors or tests.
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_PACKAGE_DIR = Path(__file__).parent

DEFAULT_RECORD_ID = "10813168"
DEFAULT_API_BASE = "https://zenodo.org/api"
DEFAULT_ID_PREFIX = "AlphaMissense_"


@dataclass(frozen=True)
class StoreConfig:
    """Immutable store configuration.

    Invariants:
      - data_dir, cache_dir and db_path are Path objects.
      - download_timeout and download_retries are positive integers.
      - listing_ttl is None (process lifetime) or a positive number of seconds.
    """

    data_dir: Path
    cache_dir: Path
    db_path: Path
    record_id: str | None = DEFAULT_RECORD_ID
    api_base: str = DEFAULT_API_BASE
    id_prefix: str = DEFAULT_ID_PREFIX
    catalog_file: Path | None = None
    download_timeout: int = 300
    download_retries: int = 3
    listing_ttl: float | None = None

    @property
    def record_url(self) -> str | None:
        """API URL of the remote record listing, or None when disabled."""
        if not self.record_id:
            return None
        return f"{self.api_base.rstrip('/')}/records/{self.record_id}"


def _positive_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_config() -> StoreConfig:
    """Build StoreConfig from environment variables.

    An empty BULKSTORE_RECORD_ID disables the remote listing so only the static
    catalog is used.

    Raises:
        ValueError: if a numeric variable is not a positive number.
    """
    data_dir = Path(os.environ.get("BULKSTORE_DATA_DIR", str(_PACKAGE_DIR / "data")))
    cache_dir = Path(os.environ.get("BULKSTORE_CACHE_DIR", str(data_dir / "cache")))
    db_path = Path(os.environ.get("BULKSTORE_DB_PATH", str(data_dir / "bulkstore.duckdb")))

    catalog_file_raw = os.environ.get("BULKSTORE_CATALOG_FILE")
    listing_ttl_raw = os.environ.get("BULKSTORE_LISTING_TTL")
    listing_ttl: float | None = None
    if listing_ttl_raw:
        try:
            listing_ttl = float(listing_ttl_raw)
        except ValueError as exc:
            raise ValueError(f"BULKSTORE_LISTING_TTL must be a number, got {listing_ttl_raw!r}") from exc
        if listing_ttl <= 0:
            raise ValueError(f"BULKSTORE_LISTING_TTL must be positive, got {listing_ttl}")

    return StoreConfig(
        data_dir=data_dir,
        cache_dir=cache_dir,
        db_path=db_path,
        record_id=os.environ.get("BULKSTORE_RECORD_ID", DEFAULT_RECORD_ID) or None,
        api_base=os.environ.get("BULKSTORE_API_BASE", DEFAULT_API_BASE),
        id_prefix=os.environ.get("BULKSTORE_ID_PREFIX", DEFAULT_ID_PREFIX),
        catalog_file=Path(catalog_file_raw) if catalog_file_raw else None,
        download_timeout=_positive_int("BULKSTORE_DOWNLOAD_TIMEOUT", "300"),
        download_retries=_positive_int("BULKSTORE_DOWNLOAD_RETRIES", "3"),
        listing_ttl=listing_ttl,
    )
