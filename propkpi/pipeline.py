import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Optional

from .config import PipelineConfig
from .db import KpiStore
from .features import estimate_unit_opex, aggregate_partner_revenue, aggregate_internal_metrics
from .models import PipelineSummary
from .persist import KpiPersister, partner_kpi_facts, internal_kpi_facts
from .staging import stage

logger = logging.getLogger(__name__)

_running = threading.Lock()


class PipelineError(RuntimeError):
    """A pipeline stage failed; the underlying error is chained as __cause__."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage} stage failed: {message}")
        self.stage = stage


class PipelineAlreadyRunning(PipelineError):
    def __init__(self):
        super().__init__("start", "a pipeline run is already in progress")


@contextmanager
def _stage(name: str):
    logger.info("Stage %s: start", name)
    try:
        yield
    except PipelineError:
        raise
    except Exception as e:
        logger.error("Stage %s failed: %s", name, e)
        raise PipelineError(name, str(e) or type(e).__name__) from e


def run_pipeline(store: KpiStore, config: Optional[PipelineConfig] = None) -> PipelineSummary:
    """
    Full recompute: fetch -> stage -> opex -> partner/internal aggregates -> persist.

    Any failure aborts the rest of the run. KPI names already replaced stay
    replaced; consumers should only trust the KPI set after a clean run.
    """
    config = config or PipelineConfig()

    with _stage("fetch"):
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            f_tx = executor.submit(store.fetch_transactions)
            f_hier = executor.submit(store.fetch_hierarchy)
            f_rules = executor.submit(store.fetch_entitlement_rules)
            f_profile = executor.submit(store.fetch_mapping_profile, config.mapping_profile)
            transactions = f_tx.result()
            hierarchy = f_hier.result()
            rules = f_rules.result()
            profile = f_profile.result()
        logger.info(
            "Fetched %d transactions, %d units, %d entitlement rules",
            len(transactions), len(hierarchy.units), len(rules),
        )

    with _stage("stage"):
        staged = stage(transactions, hierarchy, rules, profile, config)

    with _stage("opex"):
        opex = estimate_unit_opex(hierarchy, config)

    with _stage("partner"):
        partner = aggregate_partner_revenue(staged, opex, config)

    with _stage("internal"):
        internal = aggregate_internal_metrics(staged, config)

    persister = KpiPersister(store, chunk_size=config.delete_chunk_size, max_workers=config.max_workers)
    with _stage("persist_partner"):
        for name, facts in partner_kpi_facts(partner).items():
            persister.persist(name, facts)

    with _stage("persist_internal"):
        for name, facts in internal_kpi_facts(internal).items():
            persister.persist(name, facts)

    summary = PipelineSummary(
        staged=len(staged),
        unit_opex=len(opex),
        partner=len(partner),
        internal=len(internal),
    )
    with _stage("audit"):
        store.insert_audit_log("run_pipelines", "kpi_results", summary.as_dict())
    logger.info("Pipelines completed: %s", summary.as_dict())
    return summary


def run_all_pipelines(store: KpiStore, config: Optional[PipelineConfig] = None) -> PipelineSummary:
    """run_pipeline, refusing to start while another run is active in this process"""
    if not _running.acquire(blocking=False):
        raise PipelineAlreadyRunning()
    try:
        return run_pipeline(store, config)
    finally:
        _running.release()
