"""DynamoDB storage for limits and usage states.

Limits table:
    PK: LIMIT#<limit_id>                  SK: METADATA   (the limit record)
    PK: LIMIT_NAME#<name>#PLAN#<plan|~>   SK: UNIQUE     (live name/plan marker)

Usage table:
    PK: SUBJECT#<subject_id>              SK: LIMIT#<limit_id>

Inserting a limit writes the record and its name/plan marker in one
transaction, so two live records can never share a name and plan. Every
update is conditional on the stored version attribute.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, ConnectTimeoutError, ReadTimeoutError

from .config import LimitsConfig
from .exceptions import StorageConflictError, StorageTimeoutError
from .models import LimitRecord, UsageState, utcnow
from .storage import LimitStorage, identity_key, limit_key, usage_key

logger = logging.getLogger(__name__)

CONFLICT_ERROR_CODES = ("ConditionalCheckFailedException", "TransactionCanceledException")
KEY_ATTRIBUTES = ("PK", "SK")


def _convert_for_dynamodb(obj: Any) -> Any:
    """
    Recursively convert values DynamoDB cannot store.

    Floats become Decimal, datetimes ISO-8601 strings, enums their value.
    """
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: _convert_for_dynamodb(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, list):
        return [_convert_for_dynamodb(item) for item in obj]
    return obj


def _strip_keys(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if k not in KEY_ATTRIBUTES}


class DynamoDBLimitStorage(LimitStorage):
    """DynamoDB storage for production environments"""

    def __init__(self, config: Optional[LimitsConfig] = None, dynamodb=None):
        """
        Initialize DynamoDB resource and table references.

        Args:
            config: Table names, region and timeout (defaults to env)
            dynamodb: Optional pre-built boto3 DynamoDB resource
        """
        self.config = config or LimitsConfig.from_env()

        if dynamodb is None:
            timeout = self.config.storage_timeout_seconds
            dynamodb = boto3.resource(
                'dynamodb',
                region_name=self.config.aws_region,
                config=Config(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": 2},
                ),
            )

        self.dynamodb = dynamodb
        self.limits_table_name = self.config.limits_table_name
        self.usage_table_name = self.config.usage_table_name
        self.limits_table = self.dynamodb.Table(self.limits_table_name)
        self.usage_table = self.dynamodb.Table(self.usage_table_name)

        logger.info(
            f"Initialized DynamoDB limit storage: limits={self.limits_table_name}, "
            f"usage={self.usage_table_name}"
        )

    async def _call(self, operation: str, key: str, fn: Callable[..., Any], **kwargs) -> Any:
        """Run a blocking boto3 call in the thread pool and map its errors"""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, **kwargs))
        except (ReadTimeoutError, ConnectTimeoutError):
            logger.error(f"DynamoDB {operation} timed out for {key}")
            raise StorageTimeoutError(operation, self.config.storage_timeout_seconds, key)
        except ClientError as e:
            if e.response["Error"]["Code"] in CONFLICT_ERROR_CODES:
                raise StorageConflictError(key)
            logger.error(f"DynamoDB {operation} failed for {key}: {e}")
            raise

    # ========== Limits ==========

    def _limit_item(self, record: LimitRecord) -> Dict[str, Any]:
        return {
            "PK": limit_key(record.limit_id),
            "SK": "METADATA",
            **_convert_for_dynamodb(record.model_dump(by_alias=True)),
        }

    def _marker_item(self, record: LimitRecord) -> Dict[str, Any]:
        return {
            "PK": identity_key(record.name, record.plan),
            "SK": "UNIQUE",
            "limitId": record.limit_id,
        }

    async def save_limit(
        self,
        record: LimitRecord,
        expected_version: Optional[int] = None
    ) -> LimitRecord:
        client = self.dynamodb.meta.client

        if expected_version is None:
            try:
                await self._call(
                    "insert_limit",
                    identity_key(record.name, record.plan),
                    client.transact_write_items,
                    TransactItems=[
                        {
                            "Put": {
                                "TableName": self.limits_table_name,
                                "Item": self._limit_item(record),
                                "ConditionExpression": "attribute_not_exists(PK)",
                            }
                        },
                        {
                            "Put": {
                                "TableName": self.limits_table_name,
                                "Item": self._marker_item(record),
                                "ConditionExpression": "attribute_not_exists(PK)",
                            }
                        },
                    ],
                )
            except StorageConflictError:
                logger.warning(f"Limit insert conflict for {record.name!r} (plan={record.plan!r})")
                raise
            return record

        try:
            await self._call(
                "update_limit",
                limit_key(record.limit_id),
                self.limits_table.put_item,
                Item=self._limit_item(record),
                ConditionExpression="attribute_exists(PK) AND #version = :expected",
                ExpressionAttributeNames={"#version": "version"},
                ExpressionAttributeValues={":expected": expected_version},
            )
        except StorageConflictError:
            raise StorageConflictError(limit_key(record.limit_id), expected_version)
        return record

    async def load_limit_by_name_and_plan(
        self,
        name: str,
        plan: Optional[str]
    ) -> Optional[LimitRecord]:
        key = identity_key(name, plan)
        response = await self._call(
            "get_limit_marker",
            key,
            self.limits_table.get_item,
            Key={"PK": key, "SK": "UNIQUE"},
            ConsistentRead=True,
        )

        if 'Item' not in response:
            return None

        record = await self.load_limit_by_id(response['Item']['limitId'])
        if record is None or record.is_deleted:
            return None
        return record

    async def load_limit_by_id(self, limit_id: str) -> Optional[LimitRecord]:
        key = limit_key(limit_id)
        response = await self._call(
            "get_limit",
            key,
            self.limits_table.get_item,
            Key={"PK": key, "SK": "METADATA"},
            ConsistentRead=True,
        )

        if 'Item' not in response:
            return None
        return LimitRecord(**_strip_keys(response['Item']))

    async def list_limits(self) -> List[LimitRecord]:
        """List all limit records (paginated scan of record items)"""
        records = []
        kwargs = {
            "FilterExpression": "begins_with(PK, :prefix) AND SK = :sk",
            "ExpressionAttributeValues": {":prefix": "LIMIT#", ":sk": "METADATA"},
        }

        while True:
            response = await self._call("list_limits", "LIMIT#*", self.limits_table.scan, **kwargs)
            for item in response.get('Items', []):
                records.append(LimitRecord(**_strip_keys(item)))

            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return records
            kwargs["ExclusiveStartKey"] = last_key

    async def soft_delete_limit(self, limit_id: str) -> Optional[LimitRecord]:
        record = await self.load_limit_by_id(limit_id)
        if record is None or record.is_deleted:
            return None

        now = utcnow()
        deleted = record.model_copy(update={
            "deleted_at": now,
            "updated_at": now,
            "version": record.version + 1,
        })

        await self._call(
            "soft_delete_limit",
            limit_key(limit_id),
            self.dynamodb.meta.client.transact_write_items,
            TransactItems=[
                {
                    "Put": {
                        "TableName": self.limits_table_name,
                        "Item": self._limit_item(deleted),
                        "ConditionExpression": "#version = :expected AND attribute_not_exists(deletedAt)",
                        "ExpressionAttributeNames": {"#version": "version"},
                        "ExpressionAttributeValues": {":expected": record.version},
                    }
                },
                {
                    "Delete": {
                        "TableName": self.limits_table_name,
                        "Key": {"PK": identity_key(record.name, record.plan), "SK": "UNIQUE"},
                        "ConditionExpression": "limitId = :limit_id",
                        "ExpressionAttributeValues": {":limit_id": limit_id},
                    }
                },
            ],
        )
        return deleted

    # ========== Usage states ==========

    async def save_usage_state(
        self,
        state: UsageState,
        expected_version: Optional[int] = None
    ) -> UsageState:
        item = {
            "PK": f"SUBJECT#{state.subject_id}",
            "SK": f"LIMIT#{state.limit_id}",
            **_convert_for_dynamodb(state.model_dump(by_alias=True)),
        }

        if expected_version is None:
            condition = {"ConditionExpression": "attribute_not_exists(PK)"}
        else:
            condition = {
                "ConditionExpression": "#version = :expected",
                "ExpressionAttributeNames": {"#version": "version"},
                "ExpressionAttributeValues": {":expected": expected_version},
            }

        try:
            await self._call(
                "save_usage_state",
                usage_key(state.subject_id, state.limit_id),
                self.usage_table.put_item,
                Item=item,
                **condition,
            )
        except StorageConflictError:
            raise StorageConflictError(usage_key(state.subject_id, state.limit_id), expected_version)
        return state

    async def load_usage_state(
        self,
        subject_id: str,
        limit_id: str
    ) -> Optional[UsageState]:
        key = {"PK": f"SUBJECT#{subject_id}", "SK": f"LIMIT#{limit_id}"}
        response = await self._call(
            "load_usage_state",
            usage_key(subject_id, limit_id),
            self.usage_table.get_item,
            Key=key,
            ConsistentRead=True,
        )

        if 'Item' not in response:
            return None
        return UsageState(**_strip_keys(response['Item']))

    async def list_usage_states(self, subject_id: str) -> List[UsageState]:
        states = []
        kwargs = {
            "KeyConditionExpression": "PK = :pk AND begins_with(SK, :sk_prefix)",
            "ExpressionAttributeValues": {
                ":pk": f"SUBJECT#{subject_id}",
                ":sk_prefix": "LIMIT#",
            },
        }

        while True:
            response = await self._call(
                "list_usage_states", f"SUBJECT#{subject_id}", self.usage_table.query, **kwargs
            )
            for item in response.get('Items', []):
                states.append(UsageState(**_strip_keys(item)))

            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return states
            kwargs["ExclusiveStartKey"] = last_key
