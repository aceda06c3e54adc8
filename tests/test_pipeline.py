import threading

import pytest

from propkpi import pipeline
from propkpi.memory import InMemoryKpiStore
from propkpi.models import (
    PARTNER_TOTAL_REVENUE, PARTNER_TOTAL_OPEX, PARTNER_NOI, INTERNAL_GROSS_REVENUE,
    INTERNAL_TAKE_RATE, INTERNAL_COMPANY_TOTAL_REVENUE, INTERNAL_KPIS, PARTNER_KPIS,
)
from propkpi.pipeline import PipelineError, PipelineAlreadyRunning, run_pipeline, run_all_pipelines

from conftest import UNIT, ROOM, OTHER_ROOM, MONTH, make_tx


def _values(store):
    return {(f.kpi_name, f.period_month, f.unit_id, f.room_id): f.value for f in store.facts}


def test_full_run_produces_every_kpi(store, config):
    summary = run_pipeline(store, config)
    assert summary.as_dict() == {"staged": 2, "unit_opex": 1, "partner": 1, "internal": 1}

    values = _values(store)
    assert values[(PARTNER_TOTAL_REVENUE, MONTH, UNIT, None)] == 1000
    assert values[(PARTNER_TOTAL_OPEX, MONTH, UNIT, None)] == 485
    assert values[(PARTNER_NOI, MONTH, UNIT, None)] == pytest.approx(415)
    assert values[(INTERNAL_GROSS_REVENUE, MONTH, UNIT, ROOM)] == 1100
    assert values[(INTERNAL_COMPANY_TOTAL_REVENUE, MONTH, UNIT, ROOM)] == pytest.approx(200)
    assert values[(INTERNAL_TAKE_RATE, MONTH, UNIT, ROOM)] == pytest.approx(0.1818, abs=1e-4)
    assert {f.kpi_name for f in store.facts} == set(PARTNER_KPIS) | set(INTERNAL_KPIS)


def test_rerun_is_idempotent(store, config):
    run_pipeline(store, config)
    first = sorted(store.facts, key=repr)
    run_pipeline(store, config)
    assert sorted(store.facts, key=repr) == first
    assert len(store.facts) == len(PARTNER_KPIS) + len(INTERNAL_KPIS)


def test_rerun_after_data_removal_leaves_no_stale_facts(store, config):
    run_pipeline(store, config)
    store.transactions = []
    summary = run_pipeline(store, config)
    assert summary.staged == 0
    assert store.facts == []


def test_out_of_scope_unit_never_reaches_kpis(store, config):
    store.transactions.append(make_tx(9, 5000, "Rent Income", room_id=OTHER_ROOM))
    run_pipeline(store, config)
    assert all(f.room_id != OTHER_ROOM for f in store.facts)
    assert _values(store)[(INTERNAL_GROSS_REVENUE, MONTH, UNIT, ROOM)] == 1100


def test_run_writes_audit_entry(store, config):
    run_pipeline(store, config)
    (entry,) = store.audit_log
    assert entry["action"] == "run_pipelines"
    assert entry["details"] == {"staged": 2, "unit_opex": 1, "partner": 1, "internal": 1}


def test_fetch_failure_names_the_stage(store, config):
    def boom():
        raise ConnectionError("could not connect to server")

    store.fetch_transactions = boom
    with pytest.raises(PipelineError) as exc:
        run_pipeline(store, config)
    assert exc.value.stage == "fetch"
    assert "could not connect to server" in str(exc.value)
    assert isinstance(exc.value.__cause__, ConnectionError)
    assert store.facts == []


def test_persist_failure_keeps_earlier_kpi_names(store, config):
    original = store.insert_kpi_facts

    def insert(facts):
        if facts and facts[0].kpi_name == INTERNAL_GROSS_REVENUE:
            raise RuntimeError("insert rejected")
        original(facts)

    store.insert_kpi_facts = insert
    with pytest.raises(PipelineError) as exc:
        run_pipeline(store, config)
    assert exc.value.stage == "persist_internal"
    assert {f.kpi_name for f in store.facts} == set(PARTNER_KPIS)
    assert store.audit_log == []


def test_concurrent_trigger_is_refused(store, config, monkeypatch):
    started = threading.Event()
    release = threading.Event()
    real_run = pipeline.run_pipeline

    def slow_run(s, c=None):
        started.set()
        release.wait(5)
        return real_run(s, c)

    monkeypatch.setattr(pipeline, "run_pipeline", slow_run)
    worker = threading.Thread(target=run_all_pipelines, args=(store, config))
    worker.start()
    try:
        assert started.wait(5)
        with pytest.raises(PipelineAlreadyRunning):
            run_all_pipelines(store, config)
    finally:
        release.set()
        worker.join(5)
    assert run_all_pipelines(store, config).staged == 2


def test_empty_store_runs_cleanly(config):
    store = InMemoryKpiStore()
    assert run_pipeline(store, config).as_dict() == {"staged": 0, "unit_opex": 0, "partner": 0, "internal": 0}
    assert store.facts == []
