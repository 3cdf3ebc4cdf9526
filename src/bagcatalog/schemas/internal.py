"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully validated,
normalized, and contains NO optional fields that processing code depends on.

All .get() calls, fallback defaults, and validation logic are FORBIDDEN in
runtime code - everything is explicit here.
"""

from typing import Literal, Optional
from pydantic import Field, ConfigDict
from bagcatalog.schemas.base import CatalogBaseModel


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalFormatConfig(CatalogBaseModel):
    """Runtime format acceptance."""
    supported_version: str = Field(pattern=r"^\d+\.\d+$")

    @property
    def supported_major(self) -> str:
        return self.supported_version.split(".", 1)[0]


class InternalReaderConfig(CatalogBaseModel):
    """Runtime reader configuration."""
    chunk_read_timeout_sec: Optional[float]
    checksum_block_size: int


class InternalParserConfig(CatalogBaseModel):
    """Runtime parser configuration."""
    compression_codecs: list[str]
    verify_chunks: bool


class InternalGeoFieldMapping(CatalogBaseModel):
    """Runtime position field mapping for one message type."""
    latitude: str
    longitude: str
    altitude: Optional[str]


class InternalGpsConfig(CatalogBaseModel):
    """Runtime GPS extraction configuration."""
    geo_message_types: dict[str, InternalGeoFieldMapping]
    max_positions: Optional[int]


class InternalIngestionConfig(CatalogBaseModel):
    """Runtime ingestion configuration."""
    max_concurrent_ingestions: int = Field(ge=1, le=64)
    queue_size: int = Field(ge=1)
    checksum_algorithm: str
    stale_reservation_sec: int
    failure_policy: Literal["fail_fast", "fail_file"]


class InternalScannerConfig(CatalogBaseModel):
    """Runtime discovery configuration."""
    roots: list[str]
    patterns: list[str]
    poll_interval_sec: int
    min_file_size: int


class InternalCatalogConfig(CatalogBaseModel):
    """Runtime catalog configuration."""
    db_filename: str
    export_compression: Literal["snappy", "gzip", "lz4", "none"]


class InternalLoggingConfig(CatalogBaseModel):
    """Runtime logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(CatalogBaseModel):
    """Authoritative runtime configuration.

    This is the ONLY configuration schema that engine code sees.
    It is fully validated, immutable, and contains explicit values for
    all parameters.

    Usage
    -----
    Runtime modules receive InternalConfig and access fields directly:

        def __init__(self, config: InternalConfig):
            self.codecs = set(config.parser.compression_codecs)  # NOT .get()
            self.timeout = config.reader.chunk_read_timeout_sec

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO validation

    All of that happens during config resolution, not in runtime code.
    """

    mode: Literal["once", "watch"]
    base_dir: str
    format: InternalFormatConfig
    reader: InternalReaderConfig
    parser: InternalParserConfig
    gps: InternalGpsConfig
    ingestion: InternalIngestionConfig
    scanner: InternalScannerConfig
    catalog: InternalCatalogConfig
    logging: InternalLoggingConfig

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,  # Immutable after construction
    )
