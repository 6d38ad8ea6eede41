"""Vendor-neutral WMS source adapter contract."""

from __future__ import annotations

import hashlib
import hmac
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from wms_sync.config import settings
from wms_sync.logging import get_logger
from wms_sync.metrics import record_truncation
from wms_sync.models.entities import EntityType
from wms_sync.services.common import parse_timestamp
from wms_sync.services.errors import SyncTimeoutError
from wms_sync.services.tenants import ActiveTenant

logger = get_logger(__name__)

_SIGNATURE_RE = re.compile(r"^(?:sha256=)?([0-9a-fA-F]{64})$")


@dataclass
class SourcePage:
    records: list[dict]
    next_cursor: str | None = None


@dataclass
class ListResult:
    """Outcome of a paginated list fetch.

    ``next_cursor`` is only set when pagination stopped at the page cap; a
    caller can resume from it. ``possible_truncation`` is a warning, not a
    failure: the records returned are still valid.
    """

    records: list[dict] = field(default_factory=list)
    next_cursor: str | None = None
    pages: int = 0
    possible_truncation: bool = False
    truncation_reason: str | None = None


def parse_truncation_caps(raw: str | None) -> frozenset[int]:
    caps = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit():
            caps.add(int(part))
    return frozenset(caps)


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise SyncTimeoutError()


class SourceAdapter(ABC):
    vendor = "base"

    def __init__(
        self,
        page_size: int | None = None,
        max_pages: int | None = None,
        truncation_caps: frozenset[int] | None = None,
    ):
        self.page_size = page_size or settings.wms_page_size
        self.max_pages = max_pages or settings.wms_max_pages
        if truncation_caps is None:
            truncation_caps = parse_truncation_caps(settings.wms_truncation_caps)
        self.truncation_caps = truncation_caps

    @abstractmethod
    def list_page(
        self,
        tenant: ActiveTenant,
        entity_type: EntityType,
        since: datetime | None,
        cursor: str | None,
        deadline: float | None = None,
    ) -> SourcePage:
        """Fetch one page of records updated at or after ``since``."""

    @abstractmethod
    def fetch_one(
        self,
        tenant: ActiveTenant,
        entity_type: EntityType,
        external_id: str,
        deadline: float | None = None,
    ) -> dict:
        """Fetch a single entity by its vendor id."""

    def close(self) -> None:
        return None

    def list_entities(
        self,
        tenant: ActiveTenant,
        entity_type: EntityType,
        since: datetime | None,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> ListResult:
        """Follow pagination until exhausted or ``max_pages`` is reached.

        ``since`` is advisory; vendors are known to ignore or round it, so
        callers must re-check record timestamps themselves.
        """
        result = ListResult()
        while True:
            check_deadline(deadline)
            page = self.list_page(tenant, entity_type, since, cursor, deadline=deadline)
            result.pages += 1
            result.records.extend(page.records)
            cursor = page.next_cursor
            if not cursor:
                reason = self._truncation_reason(page.records)
                if reason:
                    result.possible_truncation = True
                    result.truncation_reason = reason
                break
            if result.pages >= self.max_pages:
                result.possible_truncation = True
                result.truncation_reason = "page_cap"
                result.next_cursor = cursor
                break

        if result.possible_truncation:
            record_truncation(entity_type.value, result.truncation_reason or "unknown")
            logger.warning(
                "source_possible_truncation vendor=%s tenant_id=%s entity_type=%s reason=%s records=%s pages=%s",
                self.vendor,
                tenant.tenant_id,
                entity_type.value,
                result.truncation_reason,
                len(result.records),
                result.pages,
            )
        return result

    def _truncation_reason(self, last_page: list[dict]) -> str | None:
        size = len(last_page)
        if size == 0:
            return None
        if size in self.truncation_caps:
            return "round_number_cap"
        if size >= self.page_size:
            return "full_final_page"
        return None

    def verify_signature(self, payload: bytes, signature: str | None, secret: str) -> bool:
        if not signature or not secret:
            return False
        match = _SIGNATURE_RE.match(signature.strip())
        if not match:
            return False
        expected = compute_signature(payload, secret)
        return hmac.compare_digest(expected, match.group(1).lower())

    def external_id(self, record: dict) -> str | None:
        value = record.get("id")
        if value is None or value == "":
            return None
        return str(value)

    def updated_at(self, record: dict) -> datetime | None:
        return parse_timestamp(record.get("updated_at") or record.get("updated_date"))
