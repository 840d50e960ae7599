from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from instant_case_study.schemas import BillingUpdate, UserRecord
from instant_case_study.user_store import (
    DynamoUserStore,
    InMemoryUserStore,
    UsageLimitExceededError,
    UserNotFoundError,
    UserStoreError,
)


class _FakeTable:
    def __init__(self, update_results=None, query_results=None):
        self.update_results = list(update_results or [])
        self.query_results = list(query_results or [])
        self.update_calls = []
        self.query_calls = []
        self.put_calls = []

    def update_item(self, **kwargs):
        self.update_calls.append(kwargs)
        next_result = self.update_results.pop(0)
        if isinstance(next_result, Exception):
            raise next_result
        return next_result

    def query(self, **kwargs):
        self.query_calls.append(kwargs)
        if not self.query_results:
            return {"Items": []}
        return self.query_results.pop(0)

    def put_item(self, Item):
        self.put_calls.append(Item)
        return {}


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "UpdateItem")


def _store_with_table(table: _FakeTable) -> DynamoUserStore:
    store = DynamoUserStore.__new__(DynamoUserStore)
    store._table = table
    store._email_index_name = "users_by_email"
    return store


def _user_item(**overrides):
    now = datetime.now(timezone.utc).isoformat()
    item = {
        "user_id": "u_1",
        "email": "owner@example.com",
        "is_pro": True,
        "generation_count": 0,
        "is_deleted": False,
        "created_at": now,
        "updated_at": now,
    }
    item.update(overrides)
    return item


def test_billing_update_sets_absolute_values_with_existence_condition():
    table = _FakeTable(update_results=[{"Attributes": _user_item(stripe_customer_id="cus_1")}])
    store = _store_with_table(table)

    updated = store.apply_billing_update(
        "u_1",
        BillingUpdate(is_pro=True, stripe_customer_id="cus_1", reset_generation_count=True),
    )

    call = table.update_calls[0]
    assert call["Key"] == {"user_id": "u_1"}
    assert call["ConditionExpression"] == "attribute_exists(user_id)"
    assert call["UpdateExpression"] == (
        "SET is_pro = :is_pro, updated_at = :updated_at, stripe_customer_id = :customer_id, generation_count = :zero"
    )
    assert call["ExpressionAttributeValues"][":is_pro"] is True
    assert call["ExpressionAttributeValues"][":zero"] == 0
    assert updated.stripe_customer_id == "cus_1"


def test_downgrade_leaves_generation_count_and_customer_alone():
    table = _FakeTable(update_results=[{"Attributes": _user_item(is_pro=False)}])
    store = _store_with_table(table)

    store.apply_billing_update("u_1", BillingUpdate(is_pro=False))

    expression = table.update_calls[0]["UpdateExpression"]
    assert "generation_count" not in expression
    assert "stripe_customer_id" not in expression


def test_conditional_failure_means_user_not_found():
    table = _FakeTable(update_results=[_client_error("ConditionalCheckFailedException")])
    store = _store_with_table(table)

    with pytest.raises(UserNotFoundError):
        store.apply_billing_update("u_missing", BillingUpdate(is_pro=True))


def test_other_client_errors_are_store_errors():
    table = _FakeTable(update_results=[_client_error("ProvisionedThroughputExceededException")])
    store = _store_with_table(table)

    with pytest.raises(UserStoreError):
        store.apply_billing_update("u_1", BillingUpdate(is_pro=True))


def test_find_by_email_queries_index_with_normalized_email():
    table = _FakeTable(query_results=[{"Items": [_user_item()]}])
    store = _store_with_table(table)

    user = store.find_user_by_email("  Owner@Example.COM ")

    assert user.user_id == "u_1"
    assert table.query_calls[0]["IndexName"] == "users_by_email"


def test_increment_generation_count_uses_atomic_counter():
    table = _FakeTable(update_results=[{"Attributes": _user_item(is_pro=False, generation_count=2)}])
    store = _store_with_table(table)

    assert store.increment_generation_count("u_1") == 2
    assert "if_not_exists(generation_count, :zero) + :one" in table.update_calls[0]["UpdateExpression"]


def test_increment_with_limit_adds_quota_condition():
    table = _FakeTable(update_results=[{"Attributes": _user_item(is_pro=False, generation_count=3)}])
    store = _store_with_table(table)

    assert store.increment_generation_count("u_1", limit=3) == 3
    call = table.update_calls[0]
    assert "generation_count < :limit" in call["ConditionExpression"]
    assert call["ExpressionAttributeValues"][":limit"] == 3
    assert call["ReturnValuesOnConditionCheckFailure"] == "ALL_OLD"


def test_increment_past_limit_is_usage_limit_error():
    error = ClientError(
        {
            "Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"},
            "Item": {"user_id": {"S": "u_1"}, "generation_count": {"N": "3"}},
        },
        "UpdateItem",
    )
    store = _store_with_table(_FakeTable(update_results=[error]))

    with pytest.raises(UsageLimitExceededError):
        store.increment_generation_count("u_1", limit=3)


def test_increment_with_limit_for_missing_user_is_not_found():
    store = _store_with_table(_FakeTable(update_results=[_client_error("ConditionalCheckFailedException")]))

    with pytest.raises(UserNotFoundError):
        store.increment_generation_count("u_missing", limit=3)


def test_in_memory_increment_respects_limit():
    store = InMemoryUserStore()
    now = datetime.now(timezone.utc)
    store.upsert_user(UserRecord(user_id="u_1", generation_count=2, created_at=now, updated_at=now))

    assert store.increment_generation_count("u_1", limit=3) == 3
    with pytest.raises(UsageLimitExceededError):
        store.increment_generation_count("u_1", limit=3)
    assert store.get_user("u_1").generation_count == 3


def test_upsert_drops_null_attributes():
    table = _FakeTable()
    store = _store_with_table(table)
    now = datetime.now(timezone.utc)

    store.upsert_user(UserRecord(user_id="u_1", email="A@Example.com", created_at=now, updated_at=now))

    item = table.put_calls[0]
    assert item["email"] == "a@example.com"
    assert "is_pro" not in item
    assert "stripe_customer_id" not in item


def test_in_memory_billing_update_requires_existing_user():
    store = InMemoryUserStore()
    with pytest.raises(UserNotFoundError):
        store.apply_billing_update("u_1", BillingUpdate(is_pro=True))
