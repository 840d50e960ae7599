import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from instant_case_study.schemas import BillingUpdate, UserRecord

_USERS_EMAIL_INDEX = "users_by_email"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def normalize_email(email: Optional[str]) -> Optional[str]:
    value = (email or "").strip().lower()
    return value or None


class UserNotFoundError(Exception):
    pass


class UserStoreError(Exception):
    pass


class UsageLimitExceededError(Exception):
    pass


class UserStore(ABC):
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        raise NotImplementedError

    @abstractmethod
    def upsert_user(self, user: UserRecord) -> UserRecord:
        raise NotImplementedError

    @abstractmethod
    def apply_billing_update(self, user_id: str, update: BillingUpdate) -> UserRecord:
        """Overwrite the billing fields of an existing user.

        Raises UserNotFoundError when no row exists for ``user_id`` and
        UserStoreError when the backing store rejects the write.
        """
        raise NotImplementedError

    @abstractmethod
    def increment_generation_count(self, user_id: str, limit: Optional[int] = None) -> int:
        """Add one generation. With ``limit``, refuse once the count has reached it."""
        raise NotImplementedError

    @abstractmethod
    def soft_delete_user(self, user_id: str) -> UserRecord:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self):
        self.users: Dict[str, UserRecord] = {}

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        wanted = normalize_email(email)
        if not wanted:
            return None
        for user in self.users.values():
            if normalize_email(user.email) == wanted:
                return user
        return None

    def upsert_user(self, user: UserRecord) -> UserRecord:
        self.users[user.user_id] = user
        return user

    def apply_billing_update(self, user_id: str, update: BillingUpdate) -> UserRecord:
        existing = self.users.get(user_id)
        if existing is None:
            raise UserNotFoundError(user_id)
        changes = {"is_pro": update.is_pro, "updated_at": utc_now()}
        if update.stripe_customer_id:
            changes["stripe_customer_id"] = update.stripe_customer_id
        if update.reset_generation_count:
            changes["generation_count"] = 0
        updated = existing.model_copy(update=changes)
        self.users[user_id] = updated
        return updated

    def increment_generation_count(self, user_id: str, limit: Optional[int] = None) -> int:
        existing = self.users.get(user_id)
        if existing is None:
            raise UserNotFoundError(user_id)
        if limit is not None and (existing.generation_count or 0) >= limit:
            raise UsageLimitExceededError(user_id)
        count = (existing.generation_count or 0) + 1
        self.users[user_id] = existing.model_copy(update={"generation_count": count, "updated_at": utc_now()})
        return count

    def soft_delete_user(self, user_id: str) -> UserRecord:
        existing = self.users.get(user_id)
        if existing is None:
            raise UserNotFoundError(user_id)
        updated = existing.model_copy(update={"is_deleted": True, "updated_at": utc_now()})
        self.users[user_id] = updated
        return updated


def _is_conditional_check_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoUserStore(UserStore):
    def __init__(self, table_name: str, email_index_name: str = _USERS_EMAIL_INDEX):
        self._table = boto3.resource("dynamodb").Table(table_name)
        self._email_index_name = email_index_name

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        item = self._table.get_item(Key={"user_id": user_id}).get("Item")
        if not item:
            return None
        return UserRecord.model_validate(item)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        wanted = normalize_email(email)
        if not wanted:
            return None
        response = self._table.query(
            IndexName=self._email_index_name,
            KeyConditionExpression=Key("email").eq(wanted),
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        return UserRecord.model_validate(items[0])

    def upsert_user(self, user: UserRecord) -> UserRecord:
        item = user.model_dump(mode="json")
        item["email"] = normalize_email(user.email)
        # DynamoDB index keys cannot hold NULL.
        item = {key: value for key, value in item.items() if value is not None}
        self._table.put_item(Item=item)
        return user

    def _update(self, user_id: str, expression: str, values: Dict) -> Dict:
        try:
            response = self._table.update_item(
                Key={"user_id": user_id},
                UpdateExpression=expression,
                ConditionExpression="attribute_exists(user_id)",
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_conditional_check_failure(exc):
                raise UserNotFoundError(user_id) from exc
            raise UserStoreError(f"Failed to update user {user_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise UserStoreError(f"Failed to update user {user_id}: {exc}") from exc
        return response.get("Attributes", {})

    def apply_billing_update(self, user_id: str, update: BillingUpdate) -> UserRecord:
        assignments = ["is_pro = :is_pro", "updated_at = :updated_at"]
        values = {
            ":is_pro": update.is_pro,
            ":updated_at": utc_now().isoformat(),
        }
        if update.stripe_customer_id:
            assignments.append("stripe_customer_id = :customer_id")
            values[":customer_id"] = update.stripe_customer_id
        if update.reset_generation_count:
            assignments.append("generation_count = :zero")
            values[":zero"] = 0
        attributes = self._update(user_id, "SET " + ", ".join(assignments), values)
        return UserRecord.model_validate(attributes)

    def increment_generation_count(self, user_id: str, limit: Optional[int] = None) -> int:
        expression = "SET generation_count = if_not_exists(generation_count, :zero) + :one, updated_at = :updated_at"
        values = {":zero": 0, ":one": 1, ":updated_at": utc_now().isoformat()}
        if limit is None:
            attributes = self._update(user_id, expression, values)
            return int(attributes.get("generation_count", 0))

        values[":limit"] = limit
        try:
            response = self._table.update_item(
                Key={"user_id": user_id},
                UpdateExpression=expression,
                ConditionExpression=(
                    "attribute_exists(user_id) AND "
                    "(attribute_not_exists(generation_count) OR generation_count < :limit)"
                ),
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as exc:
            if _is_conditional_check_failure(exc):
                # The old item comes back only when the row exists.
                if exc.response.get("Item"):
                    raise UsageLimitExceededError(user_id) from exc
                raise UserNotFoundError(user_id) from exc
            raise UserStoreError(f"Failed to update user {user_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise UserStoreError(f"Failed to update user {user_id}: {exc}") from exc
        return int(response.get("Attributes", {}).get("generation_count", 0))

    def soft_delete_user(self, user_id: str) -> UserRecord:
        attributes = self._update(
            user_id,
            "SET is_deleted = :deleted, updated_at = :updated_at",
            {":deleted": True, ":updated_at": utc_now().isoformat()},
        )
        return UserRecord.model_validate(attributes)


_IN_MEMORY_USER_STORE = InMemoryUserStore()


def reset_in_memory_user_store():
    _IN_MEMORY_USER_STORE.users.clear()


def get_user_store() -> UserStore:
    force_memory = _as_bool(os.environ.get("USE_IN_MEMORY_USER_STORE"), default=False)
    if force_memory:
        return _IN_MEMORY_USER_STORE

    table_name = (os.environ.get("USERS_TABLE") or "").strip()
    if not table_name:
        return _IN_MEMORY_USER_STORE

    email_index = (os.environ.get("USERS_EMAIL_INDEX") or "").strip() or _USERS_EMAIL_INDEX
    try:
        return DynamoUserStore(table_name=table_name, email_index_name=email_index)
    except Exception:
        # Keep local development unblocked if Dynamo credentials/tables are unavailable.
        return _IN_MEMORY_USER_STORE
