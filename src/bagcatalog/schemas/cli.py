"""CLIConfig: Command-line operational overrides.

Minimal configuration for operational parameters that commonly change
between runs: mode, scan roots, output directory, worker count, verbosity.

This schema handles command-line arguments parsed by argparse.
"""

from typing import Literal, Optional
from pydantic import Field, model_validator
from bagcatalog.schemas.base import CatalogBaseModel


class CLIConfig(CatalogBaseModel):
    """Command-line configuration overrides.

    Operational-only settings that override user and param configs.
    Highest priority in config resolution.

    Notes
    -----
    If a poll interval is given but mode is not, mode is set to "watch"
    (schema responsibility, not runtime).

    Usage
    -----
        cli_cfg = CLIConfig(
            roots=["/data/bags"],
            base_dir="/scratch/catalog",
            workers=4,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    mode: Optional[Literal["once", "watch"]] = None
    roots: Optional[list[str]] = None
    base_dir: Optional[str] = None
    workers: Optional[int] = Field(None, ge=1)
    poll_interval_sec: Optional[int] = Field(None, ge=1)
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None

    @model_validator(mode="after")
    def infer_watch_mode_from_interval(self):
        """A poll interval only makes sense when watching."""
        if self.mode is None and self.poll_interval_sec is not None:
            self.mode = "watch"
        return self

    def to_internal_overrides(self) -> dict:
        """Convert CLI config to internal config structure.

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

        scanner_overrides = {}
        if self.roots is not None:
            scanner_overrides["roots"] = list(self.roots)
        if self.poll_interval_sec is not None:
            scanner_overrides["poll_interval_sec"] = self.poll_interval_sec
        if scanner_overrides:
            overrides["scanner"] = scanner_overrides

        if self.workers is not None:
            overrides["ingestion"] = {"max_concurrent_ingestions": self.workers}

        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
