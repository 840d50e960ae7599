import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from instant_case_study.schemas import CaseStudyRecord


class CaseStudyStoreError(Exception):
    pass


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _newest_first(records: List[CaseStudyRecord]) -> List[CaseStudyRecord]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)


class CaseStudyStore(ABC):
    @abstractmethod
    def get_case_study(self, user_id: str, case_study_id: str) -> Optional[CaseStudyRecord]:
        raise NotImplementedError

    @abstractmethod
    def put_case_study(self, record: CaseStudyRecord) -> CaseStudyRecord:
        raise NotImplementedError

    @abstractmethod
    def list_case_studies(self, user_id: str, limit: int = 50) -> List[CaseStudyRecord]:
        raise NotImplementedError


class InMemoryCaseStudyStore(CaseStudyStore):
    def __init__(self):
        self.items: Dict[Tuple[str, str], CaseStudyRecord] = {}

    def get_case_study(self, user_id: str, case_study_id: str) -> Optional[CaseStudyRecord]:
        return self.items.get((user_id, case_study_id))

    def put_case_study(self, record: CaseStudyRecord) -> CaseStudyRecord:
        self.items[(record.user_id, record.id)] = record
        return record

    def list_case_studies(self, user_id: str, limit: int = 50) -> List[CaseStudyRecord]:
        values = [record for (item_user_id, _), record in self.items.items() if item_user_id == user_id]
        return _newest_first(values)[: max(limit, 0)]


class DynamoCaseStudyStore(CaseStudyStore):
    def __init__(self, table_name: str):
        self._table = boto3.resource("dynamodb").Table(table_name)

    def get_case_study(self, user_id: str, case_study_id: str) -> Optional[CaseStudyRecord]:
        item = self._table.get_item(Key={"user_id": user_id, "id": case_study_id}).get("Item")
        if not item:
            return None
        return CaseStudyRecord.model_validate(item)

    def put_case_study(self, record: CaseStudyRecord) -> CaseStudyRecord:
        try:
            self._table.put_item(Item=record.model_dump(mode="json"))
        except (BotoCoreError, ClientError) as exc:
            raise CaseStudyStoreError(f"Failed to save case study {record.id}: {exc}") from exc
        return record

    def list_case_studies(self, user_id: str, limit: int = 50) -> List[CaseStudyRecord]:
        response = self._table.query(KeyConditionExpression=Key("user_id").eq(user_id))
        items = list(response.get("Items", []))
        while "LastEvaluatedKey" in response:
            response = self._table.query(
                KeyConditionExpression=Key("user_id").eq(user_id),
                ExclusiveStartKey=response["LastEvaluatedKey"],
            )
            items.extend(response.get("Items", []))
        records = [CaseStudyRecord.model_validate(item) for item in items]
        return _newest_first(records)[: max(limit, 0)]


_IN_MEMORY_CASE_STUDY_STORE = InMemoryCaseStudyStore()


def get_case_study_store() -> CaseStudyStore:
    force_memory = _as_bool(os.environ.get("USE_IN_MEMORY_CASE_STUDY_STORE"), default=False)
    if force_memory:
        return _IN_MEMORY_CASE_STUDY_STORE

    table_name = (os.environ.get("CASE_STUDIES_TABLE") or "").strip()
    if not table_name:
        return _IN_MEMORY_CASE_STUDY_STORE

    try:
        return DynamoCaseStudyStore(table_name=table_name)
    except Exception:
        return _IN_MEMORY_CASE_STUDY_STORE


def reset_in_memory_case_study_store():
    _IN_MEMORY_CASE_STUDY_STORE.items.clear()
