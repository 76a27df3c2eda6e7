"""Operator document loading with validation.

SECURITY: The file size is checked before reading. Input validation is
performed at the boundary by the pydantic models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import ControllerSpec

logger = logging.getLogger(__name__)


class ConfigLoadError(Exception):
    """Raised when the operator document cannot be loaded or validated."""

    pass


def parse_controller_spec(content: str, source: str = "<string>") -> ControllerSpec:
    """Parse and validate an operator document from YAML text.

    Supports both the flat format and a Kubernetes-style wrapper with
    apiVersion/kind/spec, in which case the spec section is used.

    Raises:
        ConfigLoadError: If the YAML is invalid or fails validation.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ConfigLoadError(f"Config document must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise ConfigLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return ControllerSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ConfigLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_controller_spec(path: Path) -> ControllerSpec:
    """Load and validate the operator document from disk.

    Raises:
        ConfigLoadError: If the file is missing, too large, unreadable or invalid.
    """
    if not path.exists():
        raise ConfigLoadError(f"Config file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigLoadError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigLoadError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read config file {path}: {e}") from e

    spec = parse_controller_spec(content, source=str(path))

    logger.info(
        "Loaded operator config from %s",
        path,
        extra={
            "root_domain": spec.domain,
            "account_count": len(spec.accounts),
            "filter_rule_count": len(spec.filters),
        },
    )
    if not spec.filters:
        logger.warning(
            "No filter rules configured; every record is denied",
            extra={"root_domain": spec.domain},
        )
    return spec
