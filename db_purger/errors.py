from typing import Any


class PurgeError(Exception):
    """Base class for every error raised by the purger."""


class ConfigurationInvalid(PurgeError):
    """A required setting is missing or out of range. Fatal for the run."""


class PolicyError(ConfigurationInvalid):
    """A table's effective policy cannot be resolved."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"{table}: {message}")


class MissingPrimaryKey(PolicyError):
    def __init__(self, table: str):
        super().__init__(table, "primary_key_field is not set at table, database or global level")


class MissingAgeThreshold(PolicyError):
    def __init__(self, table: str):
        super().__init__(table, "older_than_days is not set at table, database or global level")


class AgeThresholdTooLow(PolicyError):
    def __init__(self, table: str, days: int):
        self.days = days
        super().__init__(table, f"older_than_days must be >= 30, got {days}")


class MissingConditionFields(PolicyError):
    def __init__(self, table: str):
        super().__init__(table, "condition_fields is empty at table, database and global level")


class ConnectionFailed(PurgeError):
    """Transient connectivity problem; callers may retry."""

    def __init__(self, cause: Any):
        self.cause = cause
        super().__init__(str(cause))


class SchemaIntrospectionFailed(PurgeError):
    def __init__(self, database: str, cause: Any):
        self.database = database
        self.cause = cause
        super().__init__(f"Schema introspection failed for database '{database}': {cause}")


class DeleteBatchFailed(PurgeError):
    def __init__(self, table: str, cause: Any):
        self.table = table
        self.cause = cause
        super().__init__(f"Delete failed for table '{table}': {cause}")


class PurgeCancelled(PurgeError):
    """Raised between batches once a stop has been requested."""

    def __init__(self, table: str, rows_deleted: int):
        self.table = table
        self.rows_deleted = rows_deleted
        super().__init__(f"Purge of '{table}' cancelled after {rows_deleted} rows")
