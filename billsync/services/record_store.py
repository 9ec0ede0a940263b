"""Billing record persistence in Redis.

Each record is a hash at ``billing:user:{user_id}``. Secondary keys map a
provider customer id, subscription id or email back to the user id and are
rewritten in the same transaction as the record. Index entries can go stale
when a field changes, so every hit is checked against the record itself.
"""

from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from billsync.errors import PersistenceFailure
from billsync.models import BillingRecord, Plan, UpdateIntent

logger = structlog.get_logger(__name__)

USERS_KEY = "billing:users"
RECORD_PREFIX = "billing:user:"
INDEX_PREFIX = "billing:idx:"


class LookupStrategy(str, Enum):
    """Keys a billing record can be found by, tried in caller order."""

    USER_ID = "user_id"
    REMOTE_CUSTOMER_ID = "remote_customer_id"
    REMOTE_SUBSCRIPTION_ID = "remote_subscription_id"
    EMAIL = "email"


_INDEX_NAMES = {
    LookupStrategy.REMOTE_CUSTOMER_ID: "customer",
    LookupStrategy.REMOTE_SUBSCRIPTION_ID: "subscription",
    LookupStrategy.EMAIL: "email",
}


def record_key(user_id: str) -> str:
    return f"{RECORD_PREFIX}{user_id}"


def index_key(strategy: LookupStrategy, value: str) -> str:
    if strategy == LookupStrategy.EMAIL:
        value = value.strip().lower()
    return f"{INDEX_PREFIX}{_INDEX_NAMES[strategy]}:{value}"


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def _encode_fields(fields: dict[str, Any]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            mapping[name] = value.isoformat()
        elif isinstance(value, Enum):
            mapping[name] = value.value
        else:
            mapping[name] = str(value)
    return mapping


def _decode_record(user_id: str, raw: dict) -> BillingRecord:
    data: dict[str, Any] = {_decode(k): _decode(v) for k, v in raw.items()}
    fields: dict[str, Any] = {
        name: data[name]
        for name in BillingRecord.model_fields
        if data.get(name) not in (None, "")
    }
    fields["user_id"] = user_id
    fields.setdefault("email", "")
    return BillingRecord.model_validate(fields)


def _matches(record: BillingRecord, strategy: LookupStrategy, value: str) -> bool:
    if strategy == LookupStrategy.EMAIL:
        return record.email.strip().lower() == value.strip().lower()
    return getattr(record, strategy.value) == value


class RecordStore:
    """CRUD access to billing records."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get(self, user_id: str) -> BillingRecord | None:
        """
        Load a record by user id.

        Raises:
            PersistenceFailure: the store could not be read
            ValidationError: the stored hash does not form a valid record
        """
        try:
            raw = await self._redis.hgetall(record_key(user_id))
        except RedisError as e:
            raise PersistenceFailure(f"Failed to read record {user_id}: {e}") from e

        if not raw:
            return None
        return _decode_record(user_id, raw)

    async def list_user_ids(self) -> list[str]:
        """All known user ids, sorted for a stable sweep order."""
        try:
            members = await self._redis.smembers(USERS_KEY)
        except RedisError as e:
            raise PersistenceFailure(f"Failed to list records: {e}") from e
        return sorted(_decode(m) for m in members)

    async def iter_records(self) -> AsyncIterator[BillingRecord]:
        """Yield every stored record; ids whose hash has gone are skipped."""
        for user_id in await self.list_user_ids():
            record = await self.get(user_id)
            if record is not None:
                yield record

    async def create(self, user_id: str, email: str = "", name: str | None = None) -> BillingRecord:
        """Create the free-plan record for a new account; existing records are returned as-is."""
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        record = BillingRecord(user_id=user_id, email=email, name=name, plan=Plan.FREE)
        fields = record.model_dump(exclude={"user_id"})
        await self._write(user_id, fields, index_fields=fields)
        logger.info("billing_record_created", user_id=user_id)
        return record

    async def apply(self, user_id: str, intent: UpdateIntent) -> BillingRecord:
        """
        Write a patch and return the updated record.

        Only the fields set on the intent are written; nothing is removed.
        """
        changes = intent.changes()
        if changes:
            await self._write(user_id, changes, index_fields=changes)

        record = await self.get(user_id)
        if record is None:
            raise PersistenceFailure(f"Record {user_id} vanished during update")
        return record

    async def find(
        self, strategies: Sequence[tuple[LookupStrategy, str | None]]
    ) -> BillingRecord | None:
        """Try each lookup strategy in order and return the first verified match."""
        for strategy, value in strategies:
            if not value:
                continue

            if strategy == LookupStrategy.USER_ID:
                record = await self.get(value)
            else:
                record = await self._find_indexed(strategy, value)

            if record is not None:
                logger.debug("billing_record_found", strategy=strategy.value, user_id=record.user_id)
                return record
        return None

    async def _find_indexed(self, strategy: LookupStrategy, value: str) -> BillingRecord | None:
        try:
            user_id = await self._redis.get(index_key(strategy, value))
        except RedisError as e:
            raise PersistenceFailure(f"Failed to read index {strategy.value}: {e}") from e

        if not user_id:
            return None

        record = await self.get(_decode(user_id))
        if record is None or not _matches(record, strategy, value):
            logger.debug("stale_index_entry", strategy=strategy.value, value=value)
            return None
        return record

    async def _write(
        self, user_id: str, fields: dict[str, Any], index_fields: dict[str, Any]
    ) -> None:
        mapping = _encode_fields(fields)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                if mapping:
                    pipe.hset(record_key(user_id), mapping=mapping)
                pipe.sadd(USERS_KEY, user_id)
                for key in self._index_keys(index_fields):
                    pipe.set(key, user_id)
                await pipe.execute()
        except RedisError as e:
            logger.error("billing_record_write_failed", user_id=user_id, error=str(e))
            raise PersistenceFailure(f"Failed to write record {user_id}: {e}") from e

    @staticmethod
    def _index_keys(fields: dict[str, Any]) -> Iterable[str]:
        for strategy in _INDEX_NAMES:
            value = fields.get(strategy.value)
            if value:
                yield index_key(strategy, str(value))

