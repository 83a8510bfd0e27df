"""Drift detection with semantic normalization.

Compares the properties a template declares for a resource with what the
provider currently reports. Only declared keys are compared: the remote
representation carries read-only and defaulted properties that were never
declared, and a key the provider does not return (write-only secrets) is not
drift.

Values that differ only syntactically are equivalent:
1. Empty array, empty object, empty string, null
2. String "true" vs boolean true
3. Numeric strings vs numbers
4. Case differences in locations, SKUs and enum-like states
5. Trailing slashes in URLs
6. Array ordering for unordered collections (tags, rules)
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    EMPTY_EQUIVALENCE = "empty_equivalence"
    BOOLEAN_NORMALIZE = "boolean_normalize"
    NUMERIC_STRING = "numeric_string"
    CASE_INSENSITIVE = "case_insensitive"
    LOCATION_NORMALIZE = "location_normalize"
    URL_NORMALIZE = "url_normalize"
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A normalization applied to matching resource types and paths.

    Paths use dots for nesting; "*" matches one segment and "**" any number.
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        if self.resource_type != "*" and not _glob_match(
            resource_type.lower(), self.resource_type.lower()
        ):
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 3] == "**.":
            regex_pattern += "(?:.*\\.)?"
            i += 3
        elif pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule("*", "**", NormalizationType.EMPTY_EQUIVALENCE, "Empty values equal null"),
    NormalizationRule("*", "**", NormalizationType.BOOLEAN_NORMALIZE, "Booleans may be strings"),
    NormalizationRule("*", "**", NormalizationType.NUMERIC_STRING, "Numbers may be strings"),
    NormalizationRule("*", "location", NormalizationType.LOCATION_NORMALIZE, "Region display names"),
    NormalizationRule("*", "sku.name", NormalizationType.CASE_INSENSITIVE, "SKU name casing"),
    NormalizationRule("*", "sku.tier", NormalizationType.CASE_INSENSITIVE, "SKU tier casing"),
    NormalizationRule("*", "kind", NormalizationType.CASE_INSENSITIVE, "Kind casing"),
    NormalizationRule("*", "identity.type", NormalizationType.CASE_INSENSITIVE, "Identity type casing"),
    NormalizationRule("*", "**.state", NormalizationType.CASE_INSENSITIVE, "State casing"),
    NormalizationRule("*", "**.status", NormalizationType.CASE_INSENSITIVE, "Status casing"),
    NormalizationRule("*", "**.*url", NormalizationType.URL_NORMALIZE, "URL trailing slash"),
    NormalizationRule("*", "**.*uri", NormalizationType.URL_NORMALIZE, "URI trailing slash"),
    NormalizationRule(
        "Microsoft.Network/networkSecurityGroups",
        "properties.securityRules",
        NormalizationType.ARRAY_UNORDERED,
        "NSG rules are ordered by priority, not array index",
    ),
    NormalizationRule(
        "*", "**.ipRules", NormalizationType.ARRAY_UNORDERED, "Firewall IP rules are a set"
    ),
]


class DiffNormalizer:
    """Transforms values so that syntactic differences compare equal."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        normalized = value
        for rule in self._rules:
            if rule.matches(resource_type, path):
                normalized = self._apply_normalization(normalized, rule.normalization_type)
        return normalized

    def _apply_normalization(self, value: Any, normalization: NormalizationType) -> Any:
        match normalization:
            case NormalizationType.EMPTY_EQUIVALENCE:
                if value in ("", [], {}):
                    return None
                return value
            case NormalizationType.BOOLEAN_NORMALIZE:
                if isinstance(value, str) and value.lower() in ("true", "false"):
                    return value.lower() == "true"
                return value
            case NormalizationType.NUMERIC_STRING:
                if isinstance(value, str) and re.fullmatch(r"-?\d+(\.\d+)?", value):
                    return float(value) if "." in value else int(value)
                return value
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.LOCATION_NORMALIZE:
                # "West Europe" and "westeurope" name the same region
                return value.replace(" ", "").lower() if isinstance(value, str) else value
            case NormalizationType.URL_NORMALIZE:
                if isinstance(value, str) and value.lower().startswith(("http://", "https://")):
                    scheme_end = value.index("://")
                    return (value[:scheme_end].lower() + value[scheme_end:]).rstrip("/")
                return value
            case NormalizationType.ARRAY_UNORDERED:
                if isinstance(value, list):
                    return sorted(value, key=lambda x: repr(x))
                return value
        return value

    def are_equivalent(self, declared: Any, actual: Any, resource_type: str, path: str) -> bool:
        return self.normalize_value(declared, resource_type, path) == self.normalize_value(
            actual, resource_type, path
        )


@dataclass(frozen=True)
class PropertyDrift:
    """One declared property whose remote value differs."""

    path: str
    declared: Any
    actual: Any


@dataclass
class DriftReport:
    """Drift found for one resource."""

    resource_type: str
    differences: list[PropertyDrift] = field(default_factory=list)

    @property
    def drifted(self) -> bool:
        return bool(self.differences)


def _lookup_ci(mapping: Mapping[str, Any], key: str) -> tuple[bool, Any]:
    if key in mapping:
        return True, mapping[key]
    for candidate, value in mapping.items():
        if candidate.lower() == key.lower():
            return True, value
    return False, None


class DriftDetector:
    """Compares declared bodies with remote representations."""

    def __init__(self, normalizer: DiffNormalizer | None = None, log_normalizations: bool = True) -> None:
        self._normalizer = normalizer or DiffNormalizer()
        self._log_normalizations = log_normalizations

    @property
    def normalizer(self) -> DiffNormalizer:
        return self._normalizer

    def compare(
        self,
        resource_type: str,
        declared: Mapping[str, Any],
        actual: Mapping[str, Any],
    ) -> DriftReport:
        """Compare the declared keys of a body with the remote representation.

        Args:
            resource_type: Resource type (selects normalization rules).
            declared: Resolved body as applied.
            actual: Provider's current representation.

        Returns:
            DriftReport listing every declared property that differs.
        """
        report = DriftReport(resource_type=resource_type)
        self._compare_mapping(resource_type, declared, actual, "", report)
        return report

    def _compare_mapping(
        self,
        resource_type: str,
        declared: Mapping[str, Any],
        actual: Mapping[str, Any],
        prefix: str,
        report: DriftReport,
    ) -> None:
        for key, declared_value in declared.items():
            path = f"{prefix}.{key}" if prefix else key
            present, actual_value = _lookup_ci(actual, key)
            if not present:
                continue
            if isinstance(declared_value, Mapping) and isinstance(actual_value, Mapping):
                self._compare_mapping(resource_type, declared_value, actual_value, path, report)
                continue
            if self._normalizer.are_equivalent(declared_value, actual_value, resource_type, path):
                if declared_value != actual_value and self._log_normalizations:
                    logger.debug(
                        "Difference normalized away",
                        extra={"resource_type": resource_type, "path": path},
                    )
                continue
            report.differences.append(PropertyDrift(path, declared_value, actual_value))


@dataclass(frozen=True)
class NormalizationConfig:
    """Configuration for drift normalization."""

    enable_default_rules: bool = True
    log_normalizations: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
            LOG_NORMALIZATIONS: If "false", don't log normalizations
        """
        return cls(
            enable_default_rules=os.environ.get(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
            log_normalizations=os.environ.get("LOG_NORMALIZATIONS", "true").lower()
            in ("true", "1", "yes"),
        )


def create_drift_detector_from_env() -> DriftDetector:
    config = NormalizationConfig.from_env()
    return DriftDetector(
        DiffNormalizer(enable_default_rules=config.enable_default_rules),
        log_normalizations=config.log_normalizations,
    )
