"""
bypass_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  The returned ``EngineConfig`` is immutable;
    a reload is a new value passed through the call graph, never a
    mutation of the old one.

Architecture position:
    Configuration -- YAML-driven, validated at startup.  Sits above
    ``bypass_kernel`` and below ``bypass_batch`` / ``bypass_services``.
    The kernel never imports from ``bypass_config``.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ConfigurationError`` -- the document cannot be parsed or fails
      validation.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``bypass_config_loaded`` log entry carrying the source path, version
    and checksum, tying every workflow decision to the configuration
    that governed it.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from bypass_config.loader import load_yaml_file, parse_engine_config
from bypass_config.schema import EngineConfig
from bypass_config.validator import ConfigValidationResult, validate_configuration
from bypass_kernel.exceptions import ConfigurationError
from bypass_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "engine.yaml"


def get_active_config(path: Path | str | None = None) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML document to load.  Defaults to the packaged
            ``defaults/engine.yaml``.

    Returns:
        A validated, frozen ``EngineConfig``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ConfigurationError: If parsing or validation fails.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        data = load_yaml_file(source)
    except yaml.YAMLError as exc:
        raise ConfigurationError([f"{source}: invalid YAML: {exc}"]) from exc
    return load_config_from_dict(data, source=str(source))


def load_config_from_dict(data: dict, source: str = "<dict>") -> EngineConfig:
    """Parse and validate an already-loaded document."""
    try:
        config = parse_engine_config(data)
    except KeyError as exc:
        raise ConfigurationError([f"missing required key {exc}"]) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError([str(exc)]) from exc

    validation = validate_configuration(config)
    for warning in validation.warnings:
        logger.warning("bypass_config_warning", extra={"source": source, "detail": warning})
    if not validation.is_valid:
        raise ConfigurationError(validation.errors)

    logger.info(
        "bypass_config_loaded",
        extra={
            "source": source,
            "config_version": config.version,
            "checksum": config.checksum,
            "tenant_timezones": len(config.clock.tenant_timezones),
        },
    )
    return config


__all__ = [
    "ConfigValidationResult",
    "DEFAULT_CONFIG_PATH",
    "EngineConfig",
    "get_active_config",
    "load_config_from_dict",
    "validate_configuration",
]
