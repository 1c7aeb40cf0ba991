"""Exception hierarchy for grid planning and per-cell data acquisition."""


class NoiseMapError(Exception):
    """Base exception for noise map computation errors."""


class ConfigurationError(NoiseMapError, ValueError):
    """Raised when tables or distances are configured inconsistently."""


class MissingPrimaryKeyError(ConfigurationError):
    """Raised when a table must expose an integer primary key and does not."""

    def __init__(self, table: str, purpose: str = "row identification"):
        self.table = table
        self.purpose = purpose
        super().__init__(f"Table {table} missing primary key for {purpose}")

    def __reduce__(self):
        return (self.__class__, (self.table, self.purpose))


class DataSourceError(NoiseMapError):
    """Raised when the spatial store fails to answer a query."""


class MeshBuildError(NoiseMapError):
    """Raised when the cell geometry cannot be triangulated."""


class MissingColumnError(ConfigurationError):
    """Raised when a configured attribute column does not exist."""

    def __init__(self, table: str, column: str):
        self.table = table
        self.column = column
        super().__init__(f"Table {table} has no column {column}")

    def __reduce__(self):
        return (self.__class__, (self.table, self.column))
