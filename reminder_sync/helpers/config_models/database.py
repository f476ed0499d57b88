from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationInfo, field_validator

if TYPE_CHECKING:
    from reminder_sync.persistence.istore import IStore


class ModeEnum(str, Enum):
    COSMOS_DB = "cosmos_db"
    """Use Azure Cosmos DB."""
    SQLITE = "sqlite"
    """Use a local SQLite file."""


class CosmosDbModel(BaseModel, frozen=True):
    container: str
    database: str
    endpoint: str

    @cached_property
    def instance(self) -> "IStore":
        from reminder_sync.persistence.cosmos_db import (
            CosmosDbStore,
        )

        return CosmosDbStore(self)


class SqliteModel(BaseModel, frozen=True):
    path: str = ".local"
    schema_version: int = 1
    table: str = "reminders"

    def full_path(self) -> str:
        """
        Returns the full path to the sqlite database file.

        Formatted as: `{path}-v{schema_version}.sqlite`.
        """
        return f"{self.path}-v{self.schema_version}.sqlite"

    @cached_property
    def instance(self) -> "IStore":
        from reminder_sync.persistence.sqlite import (
            SqliteStore,
        )

        return SqliteStore(self)


class DatabaseModel(BaseModel):
    mode: ModeEnum = ModeEnum.SQLITE  # Declared first, validators below depend on it
    cosmos_db: CosmosDbModel | None = None
    sqlite: SqliteModel | None = SqliteModel()  # Object is fully defined by default

    @field_validator("cosmos_db")
    @classmethod
    def _validate_cosmos_db(
        cls,
        cosmos_db: CosmosDbModel | None,
        info: ValidationInfo,
    ) -> CosmosDbModel | None:
        if not cosmos_db and info.data.get("mode", None) == ModeEnum.COSMOS_DB:
            raise ValueError("Cosmos DB config required")
        return cosmos_db

    @field_validator("sqlite")
    @classmethod
    def _validate_sqlite(
        cls,
        sqlite: SqliteModel | None,
        info: ValidationInfo,
    ) -> SqliteModel | None:
        if not sqlite and info.data.get("mode", None) == ModeEnum.SQLITE:
            raise ValueError("SQLite config required")
        return sqlite

    @cached_property
    def instance(self) -> "IStore":
        if self.mode == ModeEnum.SQLITE:
            assert self.sqlite
            return self.sqlite.instance

        assert self.cosmos_db
        return self.cosmos_db.instance
