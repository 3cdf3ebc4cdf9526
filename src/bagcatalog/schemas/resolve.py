"""Configuration resolution and merging logic.

This module provides the single entrypoint for configuration resolution:
resolve_config(). It merges ParamConfig, UserConfig, and CLIConfig in
the correct precedence order and returns a validated InternalConfig.

Precedence (highest to lowest):
1. CLIConfig (command-line overrides)
2. UserConfig (user file)
3. ParamConfig (expert defaults)
"""

from typing import Union, Optional
from bagcatalog.schemas.param import ParamConfig, GeoFieldMapping, normalize_type_name
from bagcatalog.schemas.user import UserConfig
from bagcatalog.schemas.cli import CLIConfig
from bagcatalog.schemas.internal import InternalConfig


def deep_merge(base: dict, *overrides: dict) -> dict:
    """Deep merge multiple dictionaries.

    Later dictionaries override earlier ones. Nested dictionaries are
    merged recursively; other values are replaced.

    Parameters
    ----------
    base : dict
        Base dictionary (lowest priority)
    *overrides : dict
        Override dictionaries (higher priority, left to right)

    Returns
    -------
    dict
        Merged dictionary

    Examples
    --------
    >>> base = {"a": 1, "b": {"c": 2, "d": 3}}
    >>> override = {"b": {"d": 4, "e": 5}, "f": 6}
    >>> deep_merge(base, override)
    {'a': 1, 'b': {'c': 2, 'd': 4, 'e': 5}, 'f': 6}
    """
    result = base.copy()

    for override in overrides:
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = value

    return result


def _complete_geo_mappings(mappings: dict) -> dict:
    """Fill partial user field mappings with the default field names."""
    complete = {}
    for type_name, mapping in mappings.items():
        if isinstance(mapping, GeoFieldMapping):
            mapping = mapping.model_dump()
        complete[normalize_type_name(type_name)] = GeoFieldMapping.model_validate(mapping).model_dump()
    return complete


def resolve_config(
    param_cfg: Union[dict, ParamConfig],
    user_cfg: Optional[Union[dict, UserConfig]] = None,
    cli_cfg: Optional[Union[dict, CLIConfig]] = None,
) -> InternalConfig:
    """Resolve final runtime configuration from param, user, and CLI configs.

    This is the SINGLE ENTRYPOINT for configuration resolution. It validates
    and merges configs in the correct precedence order, then returns an
    immutable InternalConfig for runtime use.

    Parameters
    ----------
    param_cfg : dict or ParamConfig
        Expert configuration with complete defaults. Required.
    user_cfg : dict or UserConfig, optional
        User configuration with overrides. If None or empty, uses only param defaults.
    cli_cfg : dict or CLIConfig, optional
        Command-line overrides. If None or empty, no CLI overrides applied.

    Returns
    -------
    InternalConfig
        Fully validated, immutable runtime configuration

    Raises
    ------
    ValidationError
        If any config fails Pydantic validation

    Examples
    --------
    >>> from bagcatalog.schemas import resolve_config, ParamConfig, UserConfig
    >>> config = resolve_config(ParamConfig(), UserConfig(MAX_WORKERS=4))
    >>> config.ingestion.max_concurrent_ingestions
    4
    """
    if not isinstance(param_cfg, ParamConfig):
        param = ParamConfig.model_validate(param_cfg)
    else:
        param = param_cfg

    if user_cfg is None or (isinstance(user_cfg, dict) and not user_cfg):
        user = UserConfig()
    elif not isinstance(user_cfg, UserConfig):
        user = UserConfig.model_validate(user_cfg)
    else:
        user = user_cfg

    if cli_cfg is None or (isinstance(cli_cfg, dict) and not cli_cfg):
        cli = CLIConfig()
    elif not isinstance(cli_cfg, CLIConfig):
        cli = CLIConfig.model_validate(cli_cfg)
    else:
        cli = cli_cfg

    param_dict = param.model_dump()
    user_overrides = user.to_internal_overrides()
    cli_overrides = cli.to_internal_overrides()

    # A user-supplied geo type table replaces the defaults instead of merging into them
    user_geo = user_overrides.get("gps", {}).pop("geo_message_types", None)

    merged = deep_merge(param_dict, user_overrides, cli_overrides)

    if user_geo is not None:
        merged["gps"]["geo_message_types"] = user_geo
    merged["gps"]["geo_message_types"] = _complete_geo_mappings(merged["gps"]["geo_message_types"])

    # Codecs through ParamConfig's validator so user input is normalized too
    merged["parser"] = ParamConfig.model_validate({"parser": merged["parser"]}).parser.model_dump()
    merged["ingestion"]["checksum_algorithm"] = ParamConfig.model_validate(
        {"ingestion": {"checksum_algorithm": merged["ingestion"]["checksum_algorithm"]}}
    ).ingestion.checksum_algorithm

    return InternalConfig.model_validate(merged)
