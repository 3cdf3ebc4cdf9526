"""UserConfig: Forgiving, minimal user-facing configuration.

This schema accepts user inputs with aliases for common naming patterns
(e.g., ROOTS → scanner.roots, MAX_WORKERS → ingestion.max_concurrent_ingestions).

UserConfig is intentionally minimal - users only specify what they want
to override from the expert defaults. Validation is lenient: upper or
lowercase keys, a single string where a list is expected, and so on.
"""

from typing import Literal, Optional, Any
from pydantic import Field, field_validator
from bagcatalog.schemas.base import CatalogBaseModel


def _as_list(v):
    if isinstance(v, (str, bytes)):
        return [v]
    return v


class UserReaderConfig(CatalogBaseModel):
    """User-facing reader config."""
    chunk_read_timeout_sec: Optional[float] = None
    checksum_block_size: Optional[int] = None


class UserParserConfig(CatalogBaseModel):
    """User-facing parser config."""
    compression_codecs: Optional[list[str]] = None
    verify_chunks: Optional[bool] = None

    @field_validator("compression_codecs", mode="before")
    @classmethod
    def accept_single_codec(cls, v):
        return _as_list(v)


class UserGpsConfig(CatalogBaseModel):
    """User-facing GPS config."""
    geo_message_types: Optional[dict[str, dict[str, Any]]] = None
    max_positions: Optional[int] = None


class UserIngestionConfig(CatalogBaseModel):
    """User-facing ingestion config."""
    max_concurrent_ingestions: Optional[int] = None
    queue_size: Optional[int] = None
    checksum_algorithm: Optional[str] = None
    stale_reservation_sec: Optional[int] = None
    failure_policy: Optional[Literal["fail_fast", "fail_file"]] = None


class UserScannerConfig(CatalogBaseModel):
    """User-facing scanner config."""
    roots: Optional[list[str]] = None
    patterns: Optional[list[str]] = None
    poll_interval_sec: Optional[int] = None
    min_file_size: Optional[int] = None

    @field_validator("roots", "patterns", mode="before")
    @classmethod
    def accept_single_string(cls, v):
        return _as_list(v)


class UserCatalogConfig(CatalogBaseModel):
    """User-facing catalog config."""
    db_filename: Optional[str] = None
    export_compression: Optional[str] = None


class UserConfig(CatalogBaseModel):
    """User-facing configuration schema.

    Minimal, forgiving, and uses common aliases. Users only specify
    what they want to override from ParamConfig defaults.

    Usage
    -----
        user_cfg = UserConfig(
            ROOTS=["/data/bags"],
            BASE_DIR="/data/catalog",
            MAX_WORKERS=4,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    # Top-level operational settings
    mode: Optional[Literal["once", "watch"]] = Field(None, alias="MODE")
    base_dir: Optional[str] = Field(None, alias="BASE_DIR")

    # Discovery (flat aliases)
    roots: Optional[list[str]] = Field(None, alias="ROOTS")
    patterns: Optional[list[str]] = Field(None, alias="PATTERNS")
    poll_interval_sec: Optional[int] = Field(None, alias="POLL_INTERVAL_SEC")

    # Ingestion (flat aliases)
    max_concurrent_ingestions: Optional[int] = Field(None, alias="MAX_WORKERS")
    queue_size: Optional[int] = Field(None, alias="QUEUE_SIZE")
    checksum_algorithm: Optional[str] = Field(None, alias="CHECKSUM_ALGORITHM")
    chunk_read_timeout_sec: Optional[float] = Field(None, alias="CHUNK_READ_TIMEOUT_SEC")

    # Format and parsing (flat aliases)
    supported_version: Optional[str] = Field(None, alias="SUPPORTED_VERSION")
    compression_codecs: Optional[list[str]] = Field(None, alias="COMPRESSION_CODECS")
    verify_chunks: Optional[bool] = Field(None, alias="VERIFY_CHUNKS")

    # GPS (flat aliases)
    geo_message_types: Optional[dict[str, dict[str, Any]]] = Field(None, alias="GEO_MESSAGE_TYPES")
    max_positions: Optional[int] = Field(None, alias="MAX_POSITIONS")

    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = Field(None, alias="LOG_LEVEL")

    # Nested overrides (advanced users)
    reader: Optional[UserReaderConfig] = None
    parser: Optional[UserParserConfig] = None
    gps: Optional[UserGpsConfig] = None
    ingestion: Optional[UserIngestionConfig] = None
    scanner: Optional[UserScannerConfig] = None
    catalog: Optional[UserCatalogConfig] = None

    model_config = CatalogBaseModel.model_config.copy()
    # Allow forgiving input dictionaries (ignore unknown legacy keys)
    model_config.update({"populate_by_name": True, "extra": "ignore"})

    @field_validator("roots", "patterns", "compression_codecs", mode="before")
    @classmethod
    def accept_single_string(cls, v):
        """Accept a bare string where a list is expected."""
        return _as_list(v)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        """Normalize mode names to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper().strip()
        return v

    def to_internal_overrides(self) -> dict:
        """Convert flat UserConfig to nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.mode is not None:
            overrides["mode"] = self.mode
        if self.base_dir is not None:
            overrides["base_dir"] = str(self.base_dir)

        if self.supported_version is not None:
            overrides["format"] = {"supported_version": self.supported_version}

        # Reader section
        reader = {}
        if self.chunk_read_timeout_sec is not None:
            reader["chunk_read_timeout_sec"] = self.chunk_read_timeout_sec
        if self.reader is not None:
            reader.update(self.reader.model_dump(exclude_none=True))
        if reader:
            overrides["reader"] = reader

        # Parser section
        parser = {}
        if self.compression_codecs is not None:
            parser["compression_codecs"] = self.compression_codecs
        if self.verify_chunks is not None:
            parser["verify_chunks"] = self.verify_chunks
        if self.parser is not None:
            parser.update(self.parser.model_dump(exclude_none=True))
        if parser:
            overrides["parser"] = parser

        # GPS section
        gps = {}
        if self.geo_message_types is not None:
            gps["geo_message_types"] = self.geo_message_types
        if self.max_positions is not None:
            gps["max_positions"] = self.max_positions
        if self.gps is not None:
            gps.update(self.gps.model_dump(exclude_none=True))
        if gps:
            overrides["gps"] = gps

        # Ingestion section
        ingestion = {}
        if self.max_concurrent_ingestions is not None:
            ingestion["max_concurrent_ingestions"] = self.max_concurrent_ingestions
        if self.queue_size is not None:
            ingestion["queue_size"] = self.queue_size
        if self.checksum_algorithm is not None:
            ingestion["checksum_algorithm"] = self.checksum_algorithm
        if self.ingestion is not None:
            ingestion.update(self.ingestion.model_dump(exclude_none=True))
        if ingestion:
            overrides["ingestion"] = ingestion

        # Scanner section
        scanner = {}
        if self.roots is not None:
            scanner["roots"] = self.roots
        if self.patterns is not None:
            scanner["patterns"] = self.patterns
        if self.poll_interval_sec is not None:
            scanner["poll_interval_sec"] = self.poll_interval_sec
        if self.scanner is not None:
            scanner.update(self.scanner.model_dump(exclude_none=True))
        if scanner:
            overrides["scanner"] = scanner

        if self.catalog is not None:
            catalog = self.catalog.model_dump(exclude_none=True)
            if catalog:
                overrides["catalog"] = catalog

        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
