"""
Declarative source and entity configuration models.

Configuration files use camelCase keys; the models accept both the
camelCase aliases and the snake_case field names.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class SourceConfig(BaseModel):
    """An external data source (one per ``sources/<source>/source.json``)."""

    model_config = {"populate_by_name": True, "frozen": True}

    source: str = Field(description="Source id, must match the directory name")
    version: int = Field(description="Configuration format version")
    label: str | None = Field(default=None, description="Display name")
    base_url: str = Field(alias="baseUrl", description="Base URL of the source API")
    default_language: str = Field(default="fr", alias="defaultLanguage", description="Default {lang} value")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("baseUrl must not be empty")
        return v.rstrip("/")


class FetchOneEndpoint(BaseModel):
    model_config = {"populate_by_name": True}

    path_template: str = Field(alias="pathTemplate", description="Path with an {id} placeholder")
    query_defaults: dict[str, Any] = Field(default_factory=dict, alias="queryDefaults")

    @field_validator("path_template")
    @classmethod
    def validate_placeholder(cls, v: str) -> str:
        if "{id}" not in v:
            raise ValueError("pathTemplate must contain an {id} placeholder")
        return v


class FetchManyEndpoint(BaseModel):
    model_config = {"populate_by_name": True}

    path: str = Field(description="Collection path")
    query_defaults: dict[str, Any] = Field(default_factory=dict, alias="queryDefaults")


class Endpoints(BaseModel):
    model_config = {"populate_by_name": True}

    fetch_one: FetchOneEndpoint | None = Field(default=None, alias="fetchOne")
    fetch_many: FetchManyEndpoint = Field(alias="fetchMany")


class SupportedFilter(BaseModel):
    key: str
    max: int | None = Field(default=None, ge=1, description="Cap on the size of list-valued filters")


class Filters(BaseModel):
    supported: list[SupportedFilter] = Field(default_factory=list)

    @field_validator("supported", mode="before")
    @classmethod
    def accept_plain_keys(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"key": item} if isinstance(item, str) else item for item in v]
        return v

    def get(self, key: str) -> SupportedFilter | None:
        for item in self.supported:
            if item.key == key:
                return item
        return None


class FormatterCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class MappingSource(BaseModel):
    path: str = Field(min_length=1, description="Dotted path into the raw record")


class MappingTarget(BaseModel):
    """One destination of a mapped value: a field in one or more model groups."""

    model_config = {"populate_by_name": True}

    models: list[str] = Field(description="Model groups receiving the value")
    field: str = Field(min_length=1)
    formatter: str | None = Field(default=None, description="Extra formatter applied for this target only")
    formatter_args: dict[str, Any] = Field(default_factory=dict, alias="formatterArgs")

    @model_validator(mode="before")
    @classmethod
    def single_model(cls, data: Any) -> Any:
        if isinstance(data, dict) and "model" in data and "models" not in data:
            data = dict(data)
            data["models"] = [data.pop("model")]
        return data

    @field_validator("models")
    @classmethod
    def validate_models(cls, v: list[str]) -> list[str]:
        if not v or not all(isinstance(m, str) and m for m in v):
            raise ValueError("a target needs at least one model")
        return v


class FieldMapping(BaseModel):
    """One mapping rule: read ``from.path``, run the formatter chain, write every ``to`` target."""

    model_config = {"populate_by_name": True}

    key: str = Field(min_length=1)
    source: MappingSource = Field(alias="from")
    formatters: list[FormatterCall] = Field(default_factory=list)
    to: list[MappingTarget] = Field(min_length=1)


class CollectStrategy(BaseModel):
    """Post-processing of collected rows."""

    model_config = {"populate_by_name": True}

    group_by: str | None = Field(default=None, alias="groupBy", description="Key grouping rows into a catalog")
    name_path: str = Field(default="name", alias="namePath")
    output_shape: str | None = Field(default=None, alias="outputShape")
    filter_out_cosmetic: bool = Field(default=False, alias="filterOutCosmetic")


class DiscoveryTarget(BaseModel):
    """Where a classification code lives in a raw record, and which registry tracks it."""

    model_config = {"populate_by_name": True}

    registry: str
    path: str
    label_path: str | None = Field(default=None, alias="labelPath")
    require_allowed: bool = Field(default=False, alias="requireAllowed")


class EntityMeta(BaseModel):
    model_config = {"populate_by_name": True}

    collect_strategy: CollectStrategy | None = Field(default=None, alias="collectStrategy")
    catalog_only: bool = Field(default=False, alias="catalogOnly")
    discovery: list[DiscoveryTarget] = Field(default_factory=list)
    with_recipe: bool = Field(default=False, alias="withRecipe")


class EntityTarget(BaseModel):
    entity: str | None = None


class EntityConfig(BaseModel):
    """Everything needed to collect and convert one entity from one source."""

    model_config = {"populate_by_name": True}

    source: str
    entity: str
    version: int
    label: str | None = None
    endpoints: Endpoints
    filters: Filters = Field(default_factory=Filters)
    mapping: list[FieldMapping]
    resistance_batch: bool = Field(default=False, alias="resistanceBatch")
    target: EntityTarget = Field(default_factory=EntityTarget)
    meta: EntityMeta = Field(default_factory=EntityMeta)

    @property
    def target_entity(self) -> str:
        return self.target.entity or self.entity

    def formatter_names(self) -> set[str]:
        names = set()
        for rule in self.mapping:
            names.update(call.name for call in rule.formatters)
            names.update(t.formatter for t in rule.to if t.formatter)
        return names
