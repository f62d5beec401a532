from __future__ import annotations

from typing import Any

import structlog
from psycopg_pool import AsyncConnectionPool

from facility_triage.db.models import StoreRole

logger = structlog.get_logger(__name__)

# sync_status 中预置的表名；初始化时写入，之后不删除
SYNC_TABLES: tuple[str, ...] = (
    "facilities",
    "dependencies",
    "user_reports",
    "failure_events",
    "interventions",
    "facility_timers",
)

_SCHEMA_TEMPLATE = """
CREATE SCHEMA IF NOT EXISTS {schema};

CREATE TABLE IF NOT EXISTS {schema}.facilities (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('water', 'power', 'shelter', 'food', 'hospital')),
    lat DOUBLE PRECISION NOT NULL,
    lng DOUBLE PRECISION NOT NULL,
    status TEXT NOT NULL DEFAULT 'operational' CHECK (status IN ('operational', 'at_risk', 'failed')),
    facility_condition TEXT NOT NULL DEFAULT 'fair'
        CHECK (facility_condition IN ('excellent', 'good', 'fair', 'poor', 'bad')),
    supply_level TEXT CHECK (supply_level IN ('very_high', 'high', 'medium', 'low', 'very_low')),
    population_level TEXT CHECK (population_level IN ('very_high', 'high', 'medium', 'low', 'very_low')),
    importance TEXT NOT NULL DEFAULT 'moderate'
        CHECK (importance IN ('very_important', 'important', 'moderate', 'not_important')),
    population_served INTEGER NOT NULL DEFAULT 0,
    urgency_hours DOUBLE PRECISION NOT NULL DEFAULT 100,
    effort_penalty DOUBLE PRECISION NOT NULL DEFAULT 1.0,
    cascade_prevention_count INTEGER NOT NULL DEFAULT 0,
    intervention_score DOUBLE PRECISION NOT NULL DEFAULT 0,
    water_level_forecast DOUBLE PRECISION,
    power_outage_detected BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.dependencies (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    dependent_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    provider_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    dependency_type TEXT NOT NULL CHECK (dependency_type IN ('power', 'water', 'critical')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (dependent_id, provider_id)
);

CREATE TABLE IF NOT EXISTS {schema}.user_reports (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    facility_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    facility_condition TEXT,
    supply_level TEXT,
    population_level TEXT,
    importance TEXT,
    reported_by TEXT NOT NULL DEFAULT 'user',
    synced BOOLEAN NOT NULL DEFAULT FALSE,
    reported_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.sync_status (
    table_name TEXT PRIMARY KEY,
    last_synced_at TIMESTAMPTZ,
    pending_changes INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS {schema}.failure_events (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    facility_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    failure_type TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'medium',
    started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    resolved_at TIMESTAMPTZ,
    cascade_affected_ids BIGINT[] NOT NULL DEFAULT '{{}}'
);

CREATE TABLE IF NOT EXISTS {schema}.interventions (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    facility_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    intervention_type TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'planned',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS {schema}.facility_timers (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    facility_id BIGINT NOT NULL REFERENCES {schema}.facilities(id) ON DELETE CASCADE,
    label TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.public_data_cache (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    source TEXT NOT NULL,
    payload JSONB NOT NULL,
    fetched_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_facilities_status ON {schema}.facilities (status);
CREATE INDEX IF NOT EXISTS idx_facilities_score ON {schema}.facilities (intervention_score DESC);
CREATE INDEX IF NOT EXISTS idx_facilities_coord ON {schema}.facilities (lat, lng);
CREATE INDEX IF NOT EXISTS idx_dependencies_provider ON {schema}.dependencies (provider_id);
CREATE INDEX IF NOT EXISTS idx_user_reports_synced ON {schema}.user_reports (synced);
"""

_SEED_SYNC_STATUS = (
    "INSERT INTO {schema}.sync_status (table_name, last_synced_at, pending_changes) "
    "VALUES (%(table_name)s, NULL, 0) ON CONFLICT (table_name) DO NOTHING"
)


def schema_name(role: StoreRole) -> str:
    """在线/离线库各自使用同名 schema 隔离。"""
    return role.value


def render_schema(role: StoreRole) -> str:
    return _SCHEMA_TEMPLATE.format(schema=schema_name(role))


def sync_status_seed_sql(role: StoreRole) -> str:
    return _SEED_SYNC_STATUS.format(schema=schema_name(role))


async def init_schema(pool: AsyncConnectionPool[Any], role: StoreRole) -> None:
    """建表并预置 sync_status 行，可重复执行。"""
    ddl = render_schema(role)
    statements = [stmt.strip() for stmt in ddl.split(";") if stmt.strip()]
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            for statement in statements:
                await cur.execute(statement)
            for table in SYNC_TABLES:
                await cur.execute(sync_status_seed_sql(role), {"table_name": table})
    logger.info("schema_initialized", schema=schema_name(role), statements=len(statements))
