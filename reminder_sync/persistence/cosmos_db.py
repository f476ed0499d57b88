import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from azure.core import MatchConditions
from azure.core.exceptions import AzureError
from azure.cosmos import ConsistencyLevel
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosResourceNotFoundError,
)
from pydantic import ValidationError

from reminder_sync.helpers.cache import lru_acache
from reminder_sync.helpers.config_models.database import CosmosDbModel
from reminder_sync.helpers.http import azure_transport
from reminder_sync.helpers.identity import credential
from reminder_sync.helpers.logging import logger
from reminder_sync.helpers.monitoring import suppress
from reminder_sync.models.readiness import ReadinessEnum
from reminder_sync.models.reminder import ReminderFiltersModel, ReminderModel
from reminder_sync.persistence.istore import IStore, StoreError

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _to_micros(value: datetime) -> int:
    """
    Convert a datetime to an integer of microseconds since epoch.

    JSON datetimes do not always have the same length, so they cannot be compared as strings.
    """
    return (value - _EPOCH) // timedelta(microseconds=1)


class CosmosDbStore(IStore):
    """
    Reminders stored in Cosmos DB, partitioned by owner.

    Documents are the JSON reminders, plus `scheduled_at_us` and `updated_at_us` integer fields for ordering.
    """

    _config: CosmosDbModel

    def __init__(self, config: CosmosDbModel):
        logger.info("Using Cosmos DB %s/%s", config.database, config.container)
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Cosmos DB service.

        This will validate the ACID properties of the database: Create, Read, Update, Delete.
        """
        test_id = str(uuid4())
        test_partition = "readiness"
        test_dict = {
            "id": test_id,  # unique id
            "owner": test_partition,  # partition key
            "test": "test",
        }
        try:
            # Test the item does not exist
            if await self._item_exists(test_id, test_partition):
                return ReadinessEnum.FAIL
            async with self._use_client() as db:
                # Create a new item
                await db.upsert_item(body=test_dict)
                # Test the item is the same
                read_item = await db.read_item(
                    item=test_id, partition_key=test_partition
                )
                assert (
                    {k: v for k, v in read_item.items() if k in test_dict} == test_dict
                )  # Check only the relevant fields, Cosmos DB adds metadata
                # Delete the item
                await db.delete_item(item=test_id, partition_key=test_partition)
            # Test the item does not exist
            if await self._item_exists(test_id, test_partition):
                return ReadinessEnum.FAIL
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except AzureError:
            logger.exception("Error requesting CosmosDB")
        except Exception:
            logger.exception("Unknown error while checking Cosmos DB readiness")
        return ReadinessEnum.FAIL

    async def _item_exists(self, test_id: str, partition_key: str) -> bool:
        exist = False
        async with self._use_client() as db:
            with suppress(CosmosResourceNotFoundError):
                await db.read_item(item=test_id, partition_key=partition_key)
                exist = True
        return exist

    async def reminder_get(
        self,
        user_id: str,
        reminder_id: str,
        include_deleted: bool = True,
    ) -> ReminderModel | None:
        logger.debug("Loading reminder %s", reminder_id)

        raw = await self._read(user_id, reminder_id)
        if not raw:
            return None
        reminder = self._parse(raw)
        if reminder and reminder.is_deleted and not include_deleted:
            return None
        return reminder

    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        logger.debug("Creating new reminder %s", reminder.id)

        # Server is the only one to decide when a record changed
        reminder = reminder.merge(
            {
                "updated_at": datetime.now(UTC),
                "version": 1,
            }
        )

        try:
            async with self._use_client() as db:
                await db.create_item(body=self._serialize(reminder))
        except AzureError as e:
            raise StoreError(f"Cosmos DB request failed: {e}") from e

        return reminder

    async def reminder_save(
        self,
        reminder: ReminderModel,
        expected_updated_at: datetime,
    ) -> ReminderModel | None:
        saved = reminder.merge(
            {
                "updated_at": self._next_updated_at(expected_updated_at),
                "version": reminder.version + 1,
            }
        )
        logger.debug("Saving reminder %s, version %s", saved.id, saved.version)

        # Read the current etag, and check nobody wrote since the caller read
        raw = await self._read(saved.owner, saved.id)
        if not raw or raw.get("updated_at_us") != _to_micros(expected_updated_at):
            logger.debug("Reminder %s changed since it was read, not saved", saved.id)
            return None

        # Replace only if the document is still the one just read
        try:
            async with self._use_client() as db:
                await db.replace_item(
                    body=self._serialize(saved),
                    etag=raw["_etag"],
                    item=saved.id,
                    match_condition=MatchConditions.IfNotModified,
                )
        except CosmosAccessConditionFailedError:
            logger.debug("Reminder %s changed while saving, not saved", saved.id)
            return None
        except CosmosResourceNotFoundError:
            return None
        except AzureError as e:
            raise StoreError(f"Cosmos DB request failed: {e}") from e

        return saved

    async def reminder_changed_since(
        self,
        user_id: str,
        since: datetime,
    ) -> list[ReminderModel]:
        logger.debug("Loading reminders changed since %s", since)

        return await self._query(
            parameters=[
                {"name": "@owner", "value": user_id},
                {"name": "@since", "value": _to_micros(since)},
            ],
            partition_key=user_id,
            query="SELECT * FROM c WHERE c.owner = @owner AND c.updated_at_us > @since ORDER BY c.updated_at_us ASC",
        )

    async def reminder_search_all(
        self,
        user_id: str,
        filters: ReminderFiltersModel,
        offset: int,
        limit: int,
    ) -> tuple[list[ReminderModel], int]:
        logger.debug("Searching reminders, with %s", filters)
        where_clause, parameters = self._where(user_id, filters)
        reminders, total = await asyncio.gather(
            self._query(
                parameters=[
                    *parameters,
                    {"name": "@offset", "value": offset},
                    {"name": "@limit", "value": limit},
                ],
                partition_key=user_id,
                query=f"SELECT * FROM c WHERE {where_clause} ORDER BY c.scheduled_at_us ASC OFFSET @offset LIMIT @limit",
            ),
            self._reminder_search_all_total_worker(user_id, where_clause, parameters),
        )
        return reminders, total

    async def _reminder_search_all_total_worker(
        self,
        user_id: str,
        where_clause: str,
        parameters: list[dict[str, Any]],
    ) -> int:
        total = 0
        try:
            async with self._use_client() as db:
                items = db.query_items(
                    parameters=parameters,
                    partition_key=user_id,
                    query=f"SELECT VALUE COUNT(1) FROM c WHERE {where_clause}",
                )
                with suppress(StopAsyncIteration):
                    total = await anext(items)  # pyright: ignore
        except AzureError as e:
            raise StoreError(f"Cosmos DB request failed: {e}") from e
        return total

    @staticmethod
    def _where(
        user_id: str,
        filters: ReminderFiltersModel,
    ) -> tuple[str, list[dict[str, Any]]]:
        """
        Build the SQL filter of a search, with its parameters.
        """
        clauses = ["c.owner = @owner", "c.is_deleted = false"]
        parameters: list[dict[str, Any]] = [{"name": "@owner", "value": user_id}]

        if filters.scheduled_from:
            clauses.append("c.scheduled_at_us >= @from")
            parameters.append(
                {"name": "@from", "value": _to_micros(filters.scheduled_from)}
            )
        if filters.scheduled_to:
            clauses.append("c.scheduled_at_us <= @to")
            parameters.append({"name": "@to", "value": _to_micros(filters.scheduled_to)})
        if filters.category:
            clauses.append("c.category = @category")
            parameters.append({"name": "@category", "value": filters.category.lower()})
        if filters.priority:
            clauses.append("c.priority = @priority")
            parameters.append({"name": "@priority", "value": filters.priority.value})
        if filters.status:
            clauses.append("c.status = @status")
            parameters.append({"name": "@status", "value": filters.status.value})
        if filters.tags:
            clauses.append(
                "EXISTS(SELECT VALUE t FROM t IN c.tags WHERE ARRAY_CONTAINS(@tags, t))"
            )
            parameters.append({"name": "@tags", "value": filters.tags})
        if filters.search:
            # Case-insensitive substring, over the free text fields
            clauses.append(
                "(CONTAINS(c.title, @search, true) OR CONTAINS(c.description, @search, true) OR CONTAINS(c.notes, @search, true) OR EXISTS(SELECT VALUE t FROM t IN c.tags WHERE CONTAINS(t, @search, true)))"
            )
            parameters.append({"name": "@search", "value": filters.search})

        return " AND ".join(clauses), parameters

    async def _read(
        self,
        user_id: str,
        reminder_id: str,
    ) -> dict[str, Any] | None:
        try:
            async with self._use_client() as db:
                return await db.read_item(item=reminder_id, partition_key=user_id)
        except CosmosResourceNotFoundError:
            return None
        except AzureError as e:
            raise StoreError(f"Cosmos DB request failed: {e}") from e

    async def _query(
        self,
        parameters: list[dict[str, Any]],
        partition_key: str,
        query: str,
    ) -> list[ReminderModel]:
        reminders: list[ReminderModel] = []
        try:
            async with self._use_client() as db:
                items = db.query_items(
                    parameters=parameters,
                    partition_key=partition_key,
                    query=query,
                )
                async for raw in items:
                    if not raw:
                        continue
                    reminder = self._parse(raw)
                    if reminder:
                        reminders.append(reminder)
        except AzureError as e:
            raise StoreError(f"Cosmos DB request failed: {e}") from e
        return reminders

    @staticmethod
    def _serialize(reminder: ReminderModel) -> dict[str, Any]:
        data = reminder.model_dump(mode="json")
        data["scheduled_at_us"] = _to_micros(reminder.scheduled_at)
        data["updated_at_us"] = _to_micros(reminder.updated_at)
        return data

    @staticmethod
    def _parse(raw: dict[str, Any]) -> ReminderModel | None:
        try:
            return ReminderModel.model_validate(raw)
        except ValidationError:
            logger.debug("Parsing error", exc_info=True)
        return None

    @lru_acache()
    async def _use_service_client(self) -> CosmosClient:
        """
        Generate the Cosmos DB client.
        """
        logger.debug("Using Cosmos DB service client for %s", self._config.endpoint)

        return CosmosClient(
            # Usage
            consistency_level=ConsistencyLevel.Strong,
            # Reliability
            connection_timeout=10,  # 10 secs
            retry_backoff_factor=0.8,
            retry_backoff_max=8,
            retry_total=3,
            # Performance
            transport=await azure_transport(),
            # Deployment
            url=self._config.endpoint,
            # Authentication
            credential=await credential(),
        )

    @asynccontextmanager
    async def _use_client(self) -> AsyncGenerator[ContainerProxy]:
        """
        Generate the container client.
        """
        async with await self._use_service_client() as client:
            database = client.get_database_client(self._config.database)
            yield database.get_container_client(self._config.container)
