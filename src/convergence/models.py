"""Pydantic models for deployment templates and parameter files.

These models provide:
1. Type-safe JSON/YAML parsing of the declaration format
2. Validation at the boundary (fail fast, fail loudly)
3. An opaque, verbatim resource body for provider plugins
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Keys interpreted by the engine; everything else in a resource declaration
# is forwarded to the provider untouched
ENGINE_RESOURCE_KEYS = frozenset({"type", "apiVersion", "name", "condition", "dependsOn", "comments"})

PARAMETER_TYPES = frozenset(
    {"string", "securestring", "int", "bool", "object", "secureobject", "array"}
)


# =============================================================================
# Template
# =============================================================================


class ParameterDeclaration(BaseModel):
    """A template parameter with its constraints."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    default_value: Any = Field(None, alias="defaultValue")
    allowed_values: list[Any] | None = Field(None, alias="allowedValues")
    min_length: int | None = Field(None, alias="minLength")
    max_length: int | None = Field(None, alias="maxLength")
    min_value: int | None = Field(None, alias="minValue")
    max_value: int | None = Field(None, alias="maxValue")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v.lower() not in PARAMETER_TYPES:
            raise ValueError(f"type must be one of {sorted(PARAMETER_TYPES)}")
        return v.lower()

    @property
    def has_default(self) -> bool:
        return "default_value" in self.model_fields_set


class ResourceDeclaration(BaseModel):
    """One declared resource.

    Unknown keys (location, properties, sku, kind, identity, tags, ...) are
    kept as-is and form the provider payload.
    """

    model_config = {"extra": "allow", "populate_by_name": True}

    type: str = Field(min_length=3)
    api_version: str = Field(alias="apiVersion", min_length=1)
    name: str = Field(min_length=1)
    condition: bool | str = True
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    comments: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v.startswith("["):
            raise ValueError("resource type must be a literal, not an expression")
        if "/" not in v:
            raise ValueError("resource type must look like 'Namespace/type'")
        return v

    def body(self) -> dict[str, Any]:
        """Return the provider payload (everything the engine does not interpret)."""
        return {
            key: value
            for key, value in (self.model_extra or {}).items()
            if key not in ENGINE_RESOURCE_KEYS
        }


class OutputDeclaration(BaseModel):
    """A named template output."""

    model_config = {"extra": "ignore"}

    type: str = "string"
    value: Any = None
    condition: bool | str = True


class DeploymentTemplate(BaseModel):
    """A complete declaration set."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    schema_url: str | None = Field(None, alias="$schema")
    content_version: str = Field("1.0.0.0", alias="contentVersion")
    parameters: dict[str, ParameterDeclaration] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    outputs: dict[str, OutputDeclaration] = Field(default_factory=dict)

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[ResourceDeclaration]) -> list[ResourceDeclaration]:
        if not v:
            raise ValueError("template must declare at least one resource")
        return v


# =============================================================================
# Parameter files
# =============================================================================


class ParametersFile(BaseModel):
    """Parameter values for a deployment.

    Accepts the ARM parameters file layout:

        {"parameters": {"appName": {"value": "fn"}}}

    or a flat mapping of name to value.
    """

    model_config = {"extra": "ignore"}

    values: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def unwrap(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("parameters must be a mapping")
        if "values" in data and len(data) == 1:
            return data

        wrapped = data.get("parameters")
        if isinstance(wrapped, dict) and ("$schema" in data or "contentVersion" in data or len(data) == 1):
            values: dict[str, Any] = {}
            for name, entry in wrapped.items():
                if isinstance(entry, dict) and "value" in entry:
                    values[name] = entry["value"]
                elif isinstance(entry, dict) and "reference" in entry:
                    raise ValueError(
                        f"parameter '{name}' uses a secret reference, which is not supported"
                    )
                else:
                    values[name] = entry
            return {"values": values}

        return {"values": dict(data)}
