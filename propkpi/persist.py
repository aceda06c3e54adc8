import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Sequence, Set, Tuple
from uuid import UUID

from .db import KpiStore
from .models import (
    KpiFact, PartnerRevenueRow, InternalMetricsRow, coerce_number,
    PARTNER_TOTAL_REVENUE, PARTNER_MANAGEMENT_FEE, PARTNER_TOTAL_OPEX, PARTNER_NOI,
    INTERNAL_GROSS_REVENUE, INTERNAL_LANDLORD_REVENUE, INTERNAL_FEE_INCOME,
    INTERNAL_MANAGEMENT_FEE, INTERNAL_COMPANY_TOTAL_REVENUE, INTERNAL_TAKE_RATE,
)

logger = logging.getLogger(__name__)

Key = Tuple[date, UUID]

# --------- row builders ---------

def _facts(name: str, rows: Iterable, getter: Callable, room_level: bool) -> List[KpiFact]:
    return [
        KpiFact(
            kpi_name=name,
            value=getter(r),
            period_month=r.period_month,
            org_id=r.org_id,
            building_id=r.building_id,
            unit_id=r.unit_id,
            room_id=r.room_id if room_level else None,
        )
        for r in rows
    ]

def partner_kpi_facts(rows: Sequence[PartnerRevenueRow]) -> Dict[str, List[KpiFact]]:
    """One fact batch per partner KPI name, unit granularity"""
    return {
        PARTNER_TOTAL_REVENUE: _facts(PARTNER_TOTAL_REVENUE, rows, lambda r: r.total_revenue, False),
        PARTNER_MANAGEMENT_FEE: _facts(PARTNER_MANAGEMENT_FEE, rows, lambda r: r.management_fee, False),
        # unknown opex stays unknown
        PARTNER_TOTAL_OPEX: _facts(PARTNER_TOTAL_OPEX, rows, lambda r: r.total_opex, False),
        PARTNER_NOI: _facts(PARTNER_NOI, rows, lambda r: r.noi, False),
    }

def internal_kpi_facts(rows: Sequence[InternalMetricsRow]) -> Dict[str, List[KpiFact]]:
    """One fact batch per internal KPI name, room granularity"""
    return {
        INTERNAL_GROSS_REVENUE: _facts(INTERNAL_GROSS_REVENUE, rows, lambda r: r.gross_revenue, True),
        INTERNAL_LANDLORD_REVENUE: _facts(INTERNAL_LANDLORD_REVENUE, rows, lambda r: r.landlord_revenue, True),
        INTERNAL_FEE_INCOME: _facts(INTERNAL_FEE_INCOME, rows, lambda r: r.fee_income, True),
        INTERNAL_MANAGEMENT_FEE: _facts(INTERNAL_MANAGEMENT_FEE, rows, lambda r: r.management_fee, True),
        INTERNAL_COMPANY_TOTAL_REVENUE: _facts(INTERNAL_COMPANY_TOTAL_REVENUE, rows, lambda r: r.company_total_revenue, True),
        INTERNAL_TAKE_RATE: _facts(INTERNAL_TAKE_RATE, rows, lambda r: r.take_rate, True),
    }

# --------- delete keys ---------

def delete_keys(facts: Iterable[KpiFact]) -> Tuple[Set[Key], Set[Key]]:
    """(period, room) pairs for room-level facts, (period, unit) pairs for the rest"""
    room_keys: Set[Key] = set()
    unit_keys: Set[Key] = set()
    for f in facts:
        if f.room_id is not None:
            room_keys.add((f.period_month, f.room_id))
        elif f.unit_id is not None:
            unit_keys.add((f.period_month, f.unit_id))
    return room_keys, unit_keys


class KpiPersister:
    """
    Replaces every fact of one KPI name with a freshly computed batch.

    Deletes are scoped to (period, room) / (period, unit) pairs: those in the
    batch plus those already stored under the name, so entities that fell
    out of the data lose their old values. Deletes go out in chunks; each
    chunk runs concurrently, chunks run one after another.
    """

    def __init__(self, store: KpiStore, chunk_size: int = 50, max_workers: int = 4):
        self.store = store
        self.chunk_size = chunk_size
        self.max_workers = max_workers

    def persist(self, kpi_name: str, facts: Sequence[KpiFact]) -> int:
        existing = self.store.fetch_kpi_facts(kpi_names=[kpi_name])
        room_keys, unit_keys = delete_keys(list(facts) + existing)

        valid = []
        for f in facts:
            value = coerce_number(f.value)
            if value is not None:
                valid.append(replace(f, value=value))
        if len(valid) < len(facts):
            logger.warning("%s: dropped %d rows with non-numeric values", kpi_name, len(facts) - len(valid))

        deleted = self._delete(kpi_name, sorted(room_keys, key=str), room_level=True)
        deleted += self._delete(kpi_name, sorted(unit_keys, key=str), room_level=False)
        self.store.insert_kpi_facts(valid)
        logger.info(
            "%s: cleared %d keys (%d facts), inserted %d",
            kpi_name, len(room_keys) + len(unit_keys), deleted, len(valid),
        )
        return len(valid)

    def _delete(self, kpi_name: str, keys: List[Key], room_level: bool) -> int:
        deleted = 0
        for i in range(0, len(keys), self.chunk_size):
            batch = keys[i:i + self.chunk_size]
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batch))) as executor:
                futures = [
                    executor.submit(
                        self.store.delete_kpi_facts,
                        kpi_name,
                        period,
                        room_id=entity_id if room_level else None,
                        unit_id=None if room_level else entity_id,
                    )
                    for period, entity_id in batch
                ]
                for future in as_completed(futures):
                    deleted += future.result() or 0
        return deleted
