"""SqlKpiStore against a throwaway SQLite file."""
import json
from datetime import date, datetime
from uuid import UUID

import pytest
from sqlalchemy import create_engine, insert, select, func

from propkpi import schema
from propkpi.config import PipelineConfig
from propkpi.db import SqlKpiStore
from propkpi.models import KpiFact, PARTNER_NOI, INTERNAL_GROSS_REVENUE, INTERNAL_KPIS, PARTNER_KPIS
from propkpi.pipeline import run_pipeline

from conftest import ORG, BLDG, UNIT, ROOM, OTHER_UNIT, OTHER_ROOM, MONTH


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'kpi.db'}", future=True)
    schema.metadata.create_all(eng)
    with eng.begin() as conn:
        conn.execute(insert(schema.organizations), [{"id": str(ORG), "name": "Acme Holdings"}])
        conn.execute(insert(schema.buildings), [{"id": str(BLDG), "org_id": str(ORG), "name": "12 Main St"}])
        conn.execute(insert(schema.units), [
            {"id": str(UNIT), "org_id": str(ORG), "building_id": str(BLDG),
             "name": "Unit 4A", "agreement_type": "management"},
            {"id": str(OTHER_UNIT), "org_id": str(ORG), "building_id": str(BLDG),
             "name": "Unit 5B", "agreement_type": "master lease"},
        ])
        conn.execute(insert(schema.rooms), [
            {"id": str(ROOM), "unit_id": str(UNIT), "name": "4A Room 1"},
            {"id": str(OTHER_ROOM), "unit_id": str(OTHER_UNIT), "name": "5B Room 1"},
        ])
        conn.execute(insert(schema.room_counts), [
            {"id": str(UUID(int=80)), "org_id": str(ORG), "building_id": str(BLDG),
             "unit_id": str(UNIT), "room_count": 2},
        ])
        conn.execute(insert(schema.fee_entitlements), [
            {"id": str(UUID(int=90)), "revenue_class": "rent_income", "entitlement": "landlord",
             "effective_start": None, "created_at": datetime(2024, 1, 1)},
            {"id": str(UUID(int=91)), "revenue_class": "convenience_fee", "entitlement": "management_company",
             "effective_start": date(2024, 1, 1), "created_at": datetime(2024, 1, 1)},
        ])
        conn.execute(insert(schema.mapping_profiles), [
            {"id": str(UUID(int=95)), "name": "default", "mapping_json": json.dumps({"R1/4A": "4A Room 1"})},
        ])
        conn.execute(insert(schema.transactions), [
            {"id": str(UUID(int=1001)), "amount": 1000, "account_name": "Rent Income",
             "period_month": MONTH, "room_id": str(ROOM), "unit_id": None, "extra_json": None},
            {"id": str(UUID(int=1002)), "amount": -100, "account_name": "Convenience Fee",
             "period_month": MONTH, "room_id": None, "unit_id": None,
             "extra_json": json.dumps({"room_name": "R1/4A"})},
            {"id": str(UUID(int=1003)), "amount": 700, "account_name": "Rent Income",
             "period_month": MONTH, "room_id": str(OTHER_ROOM), "unit_id": str(OTHER_UNIT), "extra_json": None},
        ])
    return eng


@pytest.fixture
def sql_store(engine):
    return SqlKpiStore(engine)


def test_fetches_map_rows_to_models(sql_store):
    txs = {t.id: t for t in sql_store.fetch_transactions()}
    assert txs[UUID(int=1001)].period_month == MONTH
    assert txs[UUID(int=1001)].room_id == ROOM
    assert txs[UUID(int=1002)].room_name == "R1/4A"

    hierarchy = sql_store.fetch_hierarchy()
    assert hierarchy.units[UNIT].agreement_type == "management"
    assert hierarchy.room_count_by_unit() == {UNIT: 2}

    rules = sql_store.fetch_entitlement_rules()
    assert {r.revenue_class for r in rules} == {"rent_income", "convenience_fee"}
    assert all(isinstance(r.created_at, datetime) for r in rules)

    profile = sql_store.fetch_mapping_profile("default")
    assert profile.aliases == {"R1/4A": "4A Room 1"}
    assert sql_store.fetch_mapping_profile("missing") is None
    assert sql_store.fetch_transaction_months() == [MONTH]


def test_insert_fetch_and_scoped_delete(sql_store):
    facts = [
        KpiFact(PARTNER_NOI, 1.5, MONTH, ORG, BLDG, UNIT),
        KpiFact(PARTNER_NOI, 2.5, MONTH, ORG, BLDG, OTHER_UNIT),
        KpiFact(INTERNAL_GROSS_REVENUE, 9.0, MONTH, ORG, BLDG, UNIT, ROOM),
    ]
    sql_store.insert_kpi_facts(facts)
    assert sorted(f.value for f in sql_store.fetch_kpi_facts(kpi_names=[PARTNER_NOI])) == [1.5, 2.5]
    assert sql_store.fetch_kpi_facts(period_month=date(2024, 4, 1)) == []

    assert sql_store.delete_kpi_facts(PARTNER_NOI, MONTH, unit_id=UNIT) == 1
    remaining = sql_store.fetch_kpi_facts()
    assert {(f.kpi_name, f.unit_id) for f in remaining} == {(PARTNER_NOI, OTHER_UNIT), (INTERNAL_GROSS_REVENUE, UNIT)}


def test_pipeline_against_sql_store(engine, sql_store):
    config = PipelineConfig(max_workers=1)
    summary = run_pipeline(sql_store, config)
    assert summary.as_dict() == {"staged": 2, "unit_opex": 1, "partner": 1, "internal": 1}

    run_pipeline(sql_store, config)
    facts = sql_store.fetch_kpi_facts()
    assert len(facts) == len(PARTNER_KPIS) + len(INTERNAL_KPIS)
    gross = [f for f in facts if f.kpi_name == INTERNAL_GROSS_REVENUE]
    assert [(f.room_id, f.value) for f in gross] == [(ROOM, 1100.0)]

    with engine.connect() as conn:
        audits = conn.execute(select(func.count()).select_from(schema.audit_logs)).scalar_one()
        details = conn.execute(select(schema.audit_logs.c.details)).scalars().first()
    assert audits == 2
    assert json.loads(details)["staged"] == 2
