# ============================================================
# KPI formulas: unit opex, partner NOI, internal take rate
# ============================================================

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from .config import OpexPolicy, PipelineConfig
from .models import (
    Hierarchy, StagedTransaction, UnitOpEx, PartnerRevenueRow, InternalMetricsRow,
)

logger = logging.getLogger(__name__)

ZERO_TOLERANCE = 1e-9


# ------------------------------------------------------------
# Trivial formulas
# ------------------------------------------------------------

def safe_divide(n: float, d: float) -> float:
    """n / d, or 0 when |d| < 1e-9"""
    return 0.0 if not d or abs(d) < ZERO_TOLERANCE else n / d

def management_fee(landlord_revenue: float, rate: float) -> float:
    """Management fee = Landlord revenue * rate"""
    return landlord_revenue * rate

def noi(total_revenue: float, fee: float, opex: Optional[float]) -> float:
    """NOI (monthly) = Revenue - Management fee - Opex (unknown opex counts as 0)"""
    return total_revenue - fee - (opex or 0.0)

def take_rate(company_total_revenue: float, gross_revenue: float) -> float:
    """Take rate = Company revenue / Gross revenue"""
    return safe_divide(company_total_revenue, gross_revenue)


# ------------------------------------------------------------
# Operating-expense estimate
# ------------------------------------------------------------

def unit_opex(unit_id: UUID, room_count: int, policy: OpexPolicy,
              org_id: Optional[UUID] = None, building_id: Optional[UUID] = None) -> UnitOpEx:
    if room_count < 0:
        logger.warning("Unit %s has negative room count %s; using 0", unit_id, room_count)
        room_count = 0
    cleaning = policy.cleaning_base + policy.cleaning_per_room * room_count
    electricity = policy.electricity_per_room * room_count
    gas = policy.gas_per_room * room_count
    smart_locks = policy.smart_locks_per_unit
    return UnitOpEx(
        unit_id=unit_id,
        org_id=org_id,
        building_id=building_id,
        room_count=room_count,
        cleaning=cleaning,
        electricity=electricity,
        gas=gas,
        smart_locks=smart_locks,
        total_opex=cleaning + electricity + gas + smart_locks,
    )

def estimate_unit_opex(hierarchy: Hierarchy, config: Optional[PipelineConfig] = None) -> List[UnitOpEx]:
    """Opex per in-scope unit that has a room count record"""
    config = config or PipelineConfig()
    in_scope = config.in_scope_agreement_type.strip().lower()
    out = []
    for unit_id, room_count in hierarchy.room_count_by_unit().items():
        unit = hierarchy.units.get(unit_id)
        if unit is None or (unit.agreement_type or "").strip().lower() != in_scope:
            continue
        out.append(unit_opex(unit_id, room_count, config.opex, unit.org_id, unit.building_id))
    return out


# ------------------------------------------------------------
# Partner revenue (unit x month)
# ------------------------------------------------------------

def aggregate_partner_revenue(
    staged: Iterable[StagedTransaction],
    opex_rows: Iterable[UnitOpEx],
    config: Optional[PipelineConfig] = None,
) -> List[PartnerRevenueRow]:
    config = config or PipelineConfig()
    opex_by_unit = {o.unit_id: o for o in opex_rows}

    totals: Dict[Tuple[UUID, date], float] = {}
    samples: Dict[Tuple[UUID, date], StagedTransaction] = {}
    for s in staged:
        if s.unit_id is None:
            continue
        key = (s.unit_id, s.period_month)
        samples.setdefault(key, s)
        totals[key] = totals.get(key, 0.0) + (s.amount_abs if s.is_landlord_revenue else 0.0)

    out = []
    for key, total in totals.items():
        sample = samples[key]
        opex = opex_by_unit.get(sample.unit_id)
        fee = management_fee(total, config.management_fee_rate)
        out.append(PartnerRevenueRow(
            org_id=sample.org_id,
            building_id=sample.building_id,
            unit_id=sample.unit_id,
            period_month=sample.period_month,
            total_revenue=total,
            management_fee=fee,
            noi=noi(total, fee, opex.total_opex if opex else None),
            room_count=opex.room_count if opex else None,
            opex=opex,
        ))
    return out


# ------------------------------------------------------------
# Internal metrics (room x month)
# ------------------------------------------------------------

def aggregate_internal_metrics(
    staged: Iterable[StagedTransaction],
    config: Optional[PipelineConfig] = None,
) -> List[InternalMetricsRow]:
    config = config or PipelineConfig()
    # key -> [gross, landlord, fee income]
    sums: Dict[Tuple[UUID, date], List[float]] = {}
    samples: Dict[Tuple[UUID, date], StagedTransaction] = {}
    for s in staged:
        if s.room_id is None:
            continue
        key = (s.room_id, s.period_month)
        samples.setdefault(key, s)
        acc = sums.setdefault(key, [0.0, 0.0, 0.0])
        acc[0] += s.amount_abs
        if s.is_landlord_revenue:
            acc[1] += s.amount_abs
        if s.is_management_fee_eligible:
            acc[2] += s.amount_abs

    out = []
    for key, (gross, landlord, fees) in sums.items():
        sample = samples[key]
        fee = management_fee(landlord, config.management_fee_rate)
        company_total = fee + fees
        out.append(InternalMetricsRow(
            org_id=sample.org_id,
            building_id=sample.building_id,
            unit_id=sample.unit_id,
            room_id=sample.room_id,
            period_month=sample.period_month,
            gross_revenue=gross,
            landlord_revenue=landlord,
            fee_income=fees,
            management_fee=fee,
            company_total_revenue=company_total,
            take_rate=take_rate(company_total, gross),
        ))
    return out
