"""Template and parameter file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_PARAMETERS_FILE_SIZE_BYTES, MAX_TEMPLATE_FILE_SIZE_BYTES
from .errors import ValidationError
from .models import DeploymentTemplate, ParametersFile

logger = logging.getLogger(__name__)


class TemplateLoadError(ValidationError):
    """Raised when a template or parameters file cannot be loaded."""

    pass


def _read_mapping(path: Path, max_size: int, kind: str) -> tuple[dict[str, Any], str]:
    """Read a JSON or YAML file that must contain a mapping.

    Returns:
        Tuple of (parsed mapping, raw content).
    """
    if not path.exists():
        raise TemplateLoadError(f"{kind} file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise TemplateLoadError(f"Failed to stat {kind} file {path}: {e}") from e

    if file_size > max_size:
        raise TemplateLoadError(f"{kind} file exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateLoadError(f"Failed to read {kind} file {path}: {e}") from e

    # YAML is a superset of JSON, so one parser covers both formats
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise TemplateLoadError(f"Invalid JSON/YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise TemplateLoadError(f"{kind} file must contain a mapping: {path}")

    return data, content


def _validate(model: type[BaseModel], data: dict[str, Any], source: str) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        # Format Pydantic validation errors for readability
        issues = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            issues.append(f"{loc}: {error['msg']}")
        raise TemplateLoadError(f"Validation failed for {source}", issues) from e


def parse_template(data: dict[str, Any], source: str = "<template>") -> DeploymentTemplate:
    """Validate an in-memory declaration set.

    Raises:
        TemplateLoadError: If the mapping does not match the template schema.
    """
    return _validate(DeploymentTemplate, data, source)


def load_template(path: Path) -> tuple[DeploymentTemplate, str]:
    """Load and validate a deployment template.

    Returns:
        Tuple of (template, sha256 of the file content).

    Raises:
        TemplateLoadError: If the template cannot be loaded or fails validation.
    """
    data, content = _read_mapping(path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template")
    template = parse_template(data, str(path))
    content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()

    logger.info(
        "Loaded template",
        extra={
            "path": str(path),
            "resource_count": len(template.resources),
            "template_hash": content_hash[:12],
        },
    )
    return template, content_hash


def load_parameters(path: Path | None) -> dict[str, Any]:
    """Load parameter values, or an empty mapping when no file is configured.

    Raises:
        TemplateLoadError: If the file cannot be loaded or fails validation.
    """
    if path is None:
        return {}

    data, _ = _read_mapping(path, MAX_PARAMETERS_FILE_SIZE_BYTES, "Parameters")
    parameters: ParametersFile = _validate(ParametersFile, data, str(path))

    logger.info(
        "Loaded parameters",
        extra={"path": str(path), "parameter_names": sorted(parameters.values)},
    )
    return parameters.values
