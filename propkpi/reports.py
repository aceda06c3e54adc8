from dataclasses import dataclass, asdict
from datetime import date
from typing import Dict, List, Optional
from uuid import UUID

from .db import KpiStore
from .features import take_rate
from .models import (
    INTERNAL_KPIS, PARTNER_KPIS,
    INTERNAL_GROSS_REVENUE, INTERNAL_LANDLORD_REVENUE, INTERNAL_FEE_INCOME,
    INTERNAL_MANAGEMENT_FEE, INTERNAL_COMPANY_TOTAL_REVENUE,
    PARTNER_TOTAL_REVENUE, PARTNER_MANAGEMENT_FEE, PARTNER_TOTAL_OPEX, PARTNER_NOI,
)


@dataclass
class InternalSummary:
    period_month: date
    gross_revenue: float = 0.0
    landlord_revenue: float = 0.0
    management_fee: float = 0.0
    fee_income: float = 0.0
    company_total_revenue: float = 0.0
    take_rate: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        d = asdict(self)
        d["period_month"] = self.period_month.isoformat()
        return d


@dataclass
class PartnerUnitSummary:
    unit_id: UUID
    unit_name: str
    total_revenue: float = 0.0
    management_fee: float = 0.0
    total_opex: float = 0.0
    noi: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        d = asdict(self)
        d["unit_id"] = str(self.unit_id)
        return d


_PARTNER_FIELDS = {
    PARTNER_TOTAL_REVENUE: "total_revenue",
    PARTNER_MANAGEMENT_FEE: "management_fee",
    PARTNER_TOTAL_OPEX: "total_opex",
    PARTNER_NOI: "noi",
}


def available_months(store: KpiStore) -> List[date]:
    """Months with raw transactions, newest first"""
    return sorted(set(store.fetch_transaction_months()), reverse=True)

def latest_kpi_month(store: KpiStore) -> Optional[date]:
    months = [f.period_month for f in store.fetch_kpi_facts()]
    return max(months) if months else None

def internal_summary(store: KpiStore, month: date) -> InternalSummary:
    """Room-level internal KPIs summed over the month; take rate re-derived from the sums"""
    sums: Dict[str, float] = {}
    for f in store.fetch_kpi_facts(kpi_names=list(INTERNAL_KPIS), period_month=month):
        if f.room_id is None:
            continue
        sums[f.kpi_name] = sums.get(f.kpi_name, 0.0) + f.value
    gross = sums.get(INTERNAL_GROSS_REVENUE, 0.0)
    company_total = sums.get(INTERNAL_COMPANY_TOTAL_REVENUE, 0.0)
    return InternalSummary(
        period_month=month,
        gross_revenue=gross,
        landlord_revenue=sums.get(INTERNAL_LANDLORD_REVENUE, 0.0),
        management_fee=sums.get(INTERNAL_MANAGEMENT_FEE, 0.0),
        fee_income=sums.get(INTERNAL_FEE_INCOME, 0.0),
        company_total_revenue=company_total,
        take_rate=take_rate(company_total, gross) if gross > 0 else 0.0,
    )

def partner_unit_summary(
    store: KpiStore,
    month: date,
    org_id: Optional[UUID] = None,
    building_id: Optional[UUID] = None,
) -> List[PartnerUnitSummary]:
    """Partner KPIs per unit for the month, largest revenue first"""
    facts = store.fetch_kpi_facts(
        kpi_names=list(PARTNER_KPIS), period_month=month, org_id=org_id, building_id=building_id,
    )
    by_unit: Dict[UUID, PartnerUnitSummary] = {}
    for f in facts:
        if f.unit_id is None:
            continue
        row = by_unit.setdefault(f.unit_id, PartnerUnitSummary(unit_id=f.unit_id, unit_name=""))
        attr = _PARTNER_FIELDS[f.kpi_name]
        setattr(row, attr, getattr(row, attr) + f.value)

    if by_unit:
        units = store.fetch_hierarchy().units
        for unit_id, row in by_unit.items():
            unit = units.get(unit_id)
            row.unit_name = unit.name if unit else str(unit_id)
    return sorted(by_unit.values(), key=lambda r: r.total_revenue, reverse=True)
