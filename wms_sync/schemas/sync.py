from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from wms_sync.models.entities import EntityType
from wms_sync.models.sync_state import SyncStatus, SyncTier


class ManualSyncRequest(BaseModel):
    entity_type: Literal[
        "orders",
        "shipments",
        "products",
        "inventory",
        "inbound_shipments",
        "warehouses",
        "all",
    ] = "all"
    lookback_days: int | None = Field(default=None, ge=1, le=365)


class EntitySyncResultRead(BaseModel):
    entity_type: str
    status: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    fetched: int = 0
    possible_truncation: bool = False
    detail: dict | None = None


class ManualSyncResponse(BaseModel):
    created: int
    updated: int
    skipped: int
    errors: int
    results: list[EntitySyncResultRead]


class SyncStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    entity_type: EntityType
    tier: SyncTier
    status: SyncStatus
    last_sync_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    records_processed: int = 0
    error_count: int = 0
    error_detail: dict | None = None
    possible_truncation: bool = False
    next_scheduled_at: datetime | None = None


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str | None = None
    outcome: str


class ReplayRequest(BaseModel):
    type: Literal["webhook", "sync"] = "webhook"
    tenant_id: UUID | None = None
    event_ids: list[str] | None = Field(default=None, max_length=100)
    max_age_hours: int = Field(default=24, ge=1, le=168)
    dry_run: bool = False


class ReplayedEventRead(BaseModel):
    event_id: str
    event_type: str | None = None
    outcome: str | None = None
    attempts: int = 0
    error: str | None = None
    received_at: datetime | None = None


class ReplayResponse(BaseModel):
    type: str
    dry_run: bool = False
    matched: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)
    events: list[ReplayedEventRead] = Field(default_factory=list)
    queued_tenants: list[UUID] = Field(default_factory=list)


class TenantHealthRead(BaseModel):
    tenant_id: UUID
    tenant_name: str | None = None
    connection_id: str | None = None
    status: Literal["healthy", "degraded", "unhealthy"]
    last_synced_at: datetime | None = None
    last_webhook_at: datetime | None = None
    sync_lag_ms: int | None = None
    webhook_lag_ms: int | None = None
    recent_failures: int = 0
    recent_successes: int = 0
    error_rate: float = 0.0
    circuit_state: str | None = None
    sync_states: dict[str, int] = Field(default_factory=dict)


class HealthAggregateRead(BaseModel):
    total: int
    healthy: int
    degraded: int
    unhealthy: int
    avg_sync_lag_ms: int | None = None
    avg_webhook_lag_ms: int | None = None
    recent_failures: int = 0
    generated_at: datetime


class SyncHealthResponse(BaseModel):
    aggregate: HealthAggregateRead
    tenants: list[TenantHealthRead]


class TenantLagResponse(BaseModel):
    tenant_id: UUID
    tenant_name: str | None = None
    sync_lag: dict
    webhook_lag: dict
    processing_lag: dict
    recent_activity: dict[str, int]
    generated_at: datetime
