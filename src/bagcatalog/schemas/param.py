"""ParamConfig: Expert defaults for the bag indexing engine.

This module defines the complete default configuration. ALL engine
parameters must have defaults here. No runtime code should define
fallback values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives InternalConfig.
"""

import hashlib
from typing import Literal, Optional
from pydantic import Field, field_validator
from bagcatalog.schemas.base import CatalogBaseModel


KNOWN_CODECS = ("none", "bz2", "lz4")


def normalize_type_name(name: str) -> str:
    """Return the ROS1 spelling ``pkg/Type`` of a message type name.

    Accepts the ROS2-style ``pkg/msg/Type`` spelling used by rosbags.
    """
    name = name.strip()
    if "/msg/" in name:
        name = name.replace("/msg/", "/", 1)
    return name


# =============================================================================
# Nested Configuration Models
# =============================================================================

class FormatConfig(CatalogBaseModel):
    """Container format acceptance."""
    supported_version: str = Field("2.0", pattern=r"^\d+\.\d+$")


class ReaderConfig(CatalogBaseModel):
    """Byte-level reader configuration."""
    chunk_read_timeout_sec: Optional[float] = Field(
        30.0, gt=0, description="Bound on a single open/read against storage. None disables it."
    )
    checksum_block_size: int = Field(1 << 20, ge=4096, description="Bytes per digest update")


class ParserConfig(CatalogBaseModel):
    """Record parser configuration."""
    compression_codecs: list[str] = Field(default_factory=lambda: list(KNOWN_CODECS))
    verify_chunks: bool = Field(
        False, description="Also decompress chunks holding no geolocation messages, to detect damage")

    @field_validator("compression_codecs", mode="before")
    @classmethod
    def normalize_codecs(cls, v):
        """Lowercase codec names and reject codecs the reader cannot decode."""
        if isinstance(v, str):
            v = [v]
        codecs = [str(c).lower().strip() for c in v]
        unknown = sorted(set(codecs) - set(KNOWN_CODECS))
        if unknown:
            raise ValueError(f"Unknown compression codecs: {unknown}. Known: {list(KNOWN_CODECS)}")
        return codecs


class GeoFieldMapping(CatalogBaseModel):
    """Dotted attribute paths of the position fields inside one message type."""
    latitude: str = "latitude"
    longitude: str = "longitude"
    altitude: Optional[str] = "altitude"


def _default_geo_types() -> dict:
    return {
        "sensor_msgs/NavSatFix": GeoFieldMapping(),
        "gps_common/GPSFix": GeoFieldMapping(),
        "marti_gps_common/GPSFix": GeoFieldMapping(),
    }


class GpsConfig(CatalogBaseModel):
    """GPS track extraction configuration."""
    geo_message_types: dict[str, GeoFieldMapping] = Field(default_factory=_default_geo_types)
    max_positions: Optional[int] = Field(None, ge=2, description="Decimate tracks longer than this")

    @field_validator("geo_message_types", mode="before")
    @classmethod
    def normalize_type_names(cls, v):
        """Accept both ``pkg/Type`` and ``pkg/msg/Type`` keys."""
        if isinstance(v, dict):
            return {normalize_type_name(k): m for k, m in v.items()}
        return v


class IngestionConfig(CatalogBaseModel):
    """Ingestion worker configuration."""
    max_concurrent_ingestions: int = Field(2, ge=1, le=64)
    queue_size: int = Field(100, ge=1, description="Bound on discovered files waiting for a worker")
    checksum_algorithm: str = "md5"
    stale_reservation_sec: int = Field(3600, ge=1)
    failure_policy: Literal["fail_fast", "fail_file"] = Field(
        "fail_file", description="fail_fast stops all workers on a contract violation")

    @field_validator("checksum_algorithm", mode="before")
    @classmethod
    def check_algorithm(cls, v):
        """Only digests hashlib guarantees on every platform."""
        v = str(v).lower().strip()
        if v not in hashlib.algorithms_guaranteed:
            raise ValueError(f"Unsupported checksum algorithm: {v}")
        return v


class ScannerConfig(CatalogBaseModel):
    """Storage discovery configuration."""
    roots: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=lambda: ["*.bag"])
    poll_interval_sec: int = Field(300, ge=1, description="Seconds between scans in watch mode")
    min_file_size: int = Field(13, ge=0, description="Smaller files cannot hold a magic line")


class CatalogConfig(CatalogBaseModel):
    """Catalog database configuration."""
    db_filename: str = "bag_catalog.db"
    export_compression: Literal["snappy", "gzip", "lz4", "none"] = "snappy"


class LoggingConfig(CatalogBaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(CatalogBaseModel):
    """Complete expert configuration with all defaults.

    Usage
    -----
    This config is NOT used directly by runtime code. It serves as the
    base layer in config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg, cli_cfg)

    Runtime code only sees InternalConfig.
    """

    mode: Literal["once", "watch"] = "once"
    base_dir: str = "./bagcatalog_output"
    format: FormatConfig = Field(default_factory=FormatConfig)
    reader: ReaderConfig = Field(default_factory=ReaderConfig)
    parser: ParserConfig = Field(default_factory=ParserConfig)
    gps: GpsConfig = Field(default_factory=GpsConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
