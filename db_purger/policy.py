"""
Three-tier purge policy: global defaults, per-database overrides and
per-table overrides, resolved into one EffectivePolicy per table.

The tiers are frozen pydantic models; merging always builds a new value.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import (
    AgeThresholdTooLow,
    MissingAgeThreshold,
    MissingConditionFields,
    MissingPrimaryKey,
)
from .relations import TableDescriptor

MIN_OLDER_THAN_DAYS = 30
DB_NAME_PLACEHOLDER = "[DbName]"


def _mapping_of_sections(raw: Any) -> Any:
    # "name:" with nothing under it in YAML means an empty section
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): ({} if v is None else v) for k, v in raw.items()}
    return raw


class SharedPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_key_field: Optional[str] = None
    older_than_days: Optional[int] = Field(default=None, ge=MIN_OLDER_THAN_DAYS)
    condition_fields: Tuple[str, ...] = ()

    @field_validator("primary_key_field")
    @classmethod
    def non_blank_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.strip():
            raise ValueError("must be a non-empty column name")
        return v.strip()

    @field_validator("condition_fields", mode="before")
    @classmethod
    def column_list(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str) or not isinstance(v, (list, tuple)):
            raise ValueError("must be a list of column names")
        for f in v:
            if not isinstance(f, str) or not f.strip():
                raise ValueError(f"invalid column name {f!r}")
        return tuple(f.strip() for f in v)


class TablePolicy(SharedPolicy):
    model_config = ConfigDict(extra="forbid")

    enable: bool = True


class DatabasePolicy(SharedPolicy):
    model_config = ConfigDict(extra="forbid")

    tables: Dict[str, TablePolicy] = Field(default_factory=dict)

    @field_validator("tables", mode="before")
    @classmethod
    def table_sections(cls, v: Any) -> Any:
        return _mapping_of_sections(v)

    def table_policy_for(self, table: TableDescriptor) -> Optional[TablePolicy]:
        """
        Look up the table's entry. A "schema.table" key beats a bare "table"
        key; both match case-insensitively.
        """
        qualified = table.qualified.lower()
        bare = table.name.lower()
        fallback = None
        for key, policy in self.tables.items():
            k = key.lower()
            if k == qualified:
                return policy
            if k == bare:
                fallback = policy
        return fallback


class GlobalPolicy(SharedPolicy):
    # the global tier shares the top level of the file with run options
    model_config = ConfigDict(extra="ignore")

    connection_string: str = ""
    databases: Dict[str, DatabasePolicy] = Field(default_factory=dict)

    @field_validator("databases", mode="before")
    @classmethod
    def database_sections(cls, v: Any) -> Any:
        return _mapping_of_sections(v)

    @field_validator("connection_string")
    @classmethod
    def strip_connection_string(cls, v: str) -> str:
        return v.strip()

    def connection_string_for(self, database: str) -> str:
        return self.connection_string.replace(DB_NAME_PLACEHOLDER, database)


@dataclass(frozen=True)
class EffectivePolicy:
    primary_key_field: str
    older_than_days: int
    condition_fields: Tuple[str, ...]


def _first_set(*values):
    for v in values:
        if v is not None:
            return v
    return None


def merge_policy(global_policy: SharedPolicy,
                 database_policy: Optional[SharedPolicy],
                 table_policy: Optional[SharedPolicy] = None,
                 table_name: str = "<table>") -> EffectivePolicy:
    """
    Resolve table > database > global for each setting.

    condition_fields falls through on an empty list, not only on None.
    Raises a PolicyError subclass when a setting cannot be resolved.
    """
    layers = [p for p in (table_policy, database_policy, global_policy) if p is not None]

    pk = _first_set(*(p.primary_key_field or None for p in layers))
    if not pk:
        raise MissingPrimaryKey(table_name)

    days = _first_set(*(p.older_than_days for p in layers))
    if days is None:
        raise MissingAgeThreshold(table_name)
    if days < MIN_OLDER_THAN_DAYS:
        raise AgeThresholdTooLow(table_name, days)

    fields: Tuple[str, ...] = ()
    for p in layers:
        if p.condition_fields:
            fields = tuple(p.condition_fields)
            break
    if not fields:
        raise MissingConditionFields(table_name)

    return EffectivePolicy(primary_key_field=pk, older_than_days=int(days), condition_fields=fields)
