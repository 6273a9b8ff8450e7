"""
settlement_config -- single public entrypoint for settlement configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains
    configuration.  It loads a YAML file (the bundled
    ``sets/default.yaml`` unless a path is given), validates it, and returns
    a frozen ``SettlementConfig``.

Architecture position:
    Configuration -- sits above ``settlement_kernel`` and below
    ``settlement_services`` / ``settlement_batch``.  The kernel never
    imports from this package.

Failure modes:
    - ``ConfigurationError`` for a missing file, malformed YAML, missing
      keys, unknown names, or failed validation.

Audit relevance:
    Every successful call emits a ``settlement_config_loaded`` log entry
    with the config id, version, and content checksum, tying each run to
    the exact configuration that governed it.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from settlement_config.loader import load_config_file
from settlement_config.schema import SettlementConfig
from settlement_config.validator import validate_configuration
from settlement_kernel.exceptions import ConfigurationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> SettlementConfig:
    """
    Load and validate the settlement configuration.

    Args:
        config_path: YAML file to load.  Defaults to the bundled
            ``sets/default.yaml``.

    Raises:
        ConfigurationError: The file cannot be read, parsed, or validated.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    try:
        config = load_config_file(path)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}") from None
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    except KeyError as exc:
        raise ConfigurationError(
            f"Configuration file {path} is missing required key {exc}"
        ) from exc
    except (AttributeError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration file {path} is invalid: {exc}") from exc

    validation = validate_configuration(config)
    for warning in validation.warnings:
        logger.warning("settlement_config_warning", extra={"warning": warning})
    if not validation.is_valid:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors),
            errors=validation.errors,
        )

    logger.info(
        "settlement_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "funding_priority": [s.value for s in config.funding_priority],
            "liquidity_provider_split": config.liquidity_provider_split.value,
        },
    )
    return config


__all__ = ["SettlementConfig", "get_active_config"]
