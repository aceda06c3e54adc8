"""
Tables read and written by the KPI pipeline.

The production store already has these (plus columns the pipeline never
touches); `metadata.create_all()` is for local databases and tests.
"""
from sqlalchemy import (
    MetaData, Table, Column, String, Text, Integer, Numeric, Float, Date, DateTime,
    ForeignKey, Index, func,
)

metadata = MetaData()

def _id():
    return Column("id", String(36), primary_key=True)

organizations = Table(
    "organizations", metadata,
    _id(),
    Column("name", Text, nullable=False),
)

buildings = Table(
    "buildings", metadata,
    _id(),
    Column("org_id", String(36), ForeignKey("organizations.id"), nullable=False),
    Column("name", Text, nullable=False),
)

units = Table(
    "units", metadata,
    _id(),
    Column("org_id", String(36), ForeignKey("organizations.id"), nullable=False),
    Column("building_id", String(36), ForeignKey("buildings.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("agreement_type", Text),
)

rooms = Table(
    "rooms", metadata,
    _id(),
    Column("unit_id", String(36), ForeignKey("units.id"), nullable=False),
    Column("name", Text),
)

room_counts = Table(
    "room_counts", metadata,
    _id(),
    Column("org_id", String(36)),
    Column("building_id", String(36)),
    Column("unit_id", String(36), ForeignKey("units.id"), nullable=False),
    Column("room_count", Integer, nullable=False),
)

transactions = Table(
    "transactions", metadata,
    _id(),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("account_name", Text),
    Column("revenue_class", Text),
    Column("period_month", Date, nullable=False),
    Column("org_id", String(36)),
    Column("building_id", String(36)),
    Column("unit_id", String(36)),
    Column("room_id", String(36)),
    Column("extra_json", Text),
)

fee_entitlements = Table(
    "fee_entitlements", metadata,
    _id(),
    Column("revenue_class", Text, nullable=False),
    Column("entitlement", Text, nullable=False),
    Column("org_id", String(36)),
    Column("building_id", String(36)),
    Column("unit_id", String(36)),
    Column("effective_start", Date),
    Column("effective_end", Date),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)

mapping_profiles = Table(
    "mapping_profiles", metadata,
    _id(),
    Column("name", Text, nullable=False),
    Column("mapping_json", Text, nullable=False),
)

kpi_results = Table(
    "kpi_results", metadata,
    _id(),
    Column("kpi_name", Text, nullable=False),
    Column("value", Float, nullable=False),
    Column("period_month", Date, nullable=False),
    Column("org_id", String(36)),
    Column("building_id", String(36)),
    Column("unit_id", String(36)),
    Column("room_id", String(36)),
    Column("computed_at", DateTime(timezone=True), server_default=func.current_timestamp()),
    Index("ix_kpi_results_name_period", "kpi_name", "period_month"),
)

audit_logs = Table(
    "audit_logs", metadata,
    _id(),
    Column("action", Text, nullable=False),
    Column("entity_type", Text),
    Column("details", Text),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)
