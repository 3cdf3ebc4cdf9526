"""Pydantic configuration schemas for bagcatalog.

All configuration validation, coercion, and normalization happens at
schema validation time via Pydantic.

Exports
-------
resolve_config : function
    Single entrypoint for configuration resolution
InternalConfig : class
    Fully validated, authoritative runtime configuration
ParamConfig : class
    Expert defaults (complete)
UserConfig : class
    User-facing configuration (forgiving, minimal)
CLIConfig : class
    Command-line operational overrides
"""

from bagcatalog.schemas.resolve import resolve_config
from bagcatalog.schemas.internal import InternalConfig
from bagcatalog.schemas.param import ParamConfig
from bagcatalog.schemas.user import UserConfig
from bagcatalog.schemas.cli import CLIConfig

__all__ = [
    'resolve_config',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'CLIConfig',
]
