from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Literal, Dict, List
from datetime import date, datetime
from uuid import UUID
import math
import re
import unicodedata

# --------- KPI names ---------

PARTNER_TOTAL_REVENUE = "partner_total_revenue"
PARTNER_MANAGEMENT_FEE = "partner_management_fee"
PARTNER_TOTAL_OPEX = "partner_total_opex"
PARTNER_NOI = "partner_noi"

INTERNAL_GROSS_REVENUE = "internal_gross_revenue"
INTERNAL_LANDLORD_REVENUE = "internal_landlord_revenue"
INTERNAL_FEE_INCOME = "internal_roomrs_fee_income"
INTERNAL_MANAGEMENT_FEE = "internal_management_fee"
INTERNAL_COMPANY_TOTAL_REVENUE = "internal_roomrs_total_revenue"
INTERNAL_TAKE_RATE = "internal_take_rate_pct"  # stored as a ratio, not x100

PARTNER_KPIS = (
    PARTNER_TOTAL_REVENUE,
    PARTNER_MANAGEMENT_FEE,
    PARTNER_TOTAL_OPEX,
    PARTNER_NOI,
)

INTERNAL_KPIS = (
    INTERNAL_GROSS_REVENUE,
    INTERNAL_LANDLORD_REVENUE,
    INTERNAL_FEE_INCOME,
    INTERNAL_MANAGEMENT_FEE,
    INTERNAL_COMPANY_TOTAL_REVENUE,
    INTERNAL_TAKE_RATE,
)

# --------- Revenue classes & entitlements ---------

LANDLORD = "landlord"
MANAGEMENT_COMPANY = "management_company"
Entitlement = Literal["landlord", "management_company"]

UNCLASSIFIED = "unclassified"

# --------- Portfolio hierarchy ---------

@dataclass(frozen=True)
class Organization:
    id: UUID
    name: str

@dataclass(frozen=True)
class Building:
    id: UUID
    org_id: UUID
    name: str

@dataclass(frozen=True)
class Unit:
    id: UUID
    org_id: UUID
    building_id: UUID
    name: str
    agreement_type: Optional[str] = None

@dataclass(frozen=True)
class Room:
    id: UUID
    unit_id: UUID
    name: Optional[str] = None

@dataclass(frozen=True)
class RoomCount:
    unit_id: UUID
    room_count: int
    org_id: Optional[UUID] = None
    building_id: Optional[UUID] = None

@dataclass(frozen=True)
class Hierarchy:
    """Organization 1-* Building 1-* Unit 1-* Room, indexed by id."""
    organizations: Dict[UUID, Organization] = field(default_factory=dict)
    buildings: Dict[UUID, Building] = field(default_factory=dict)
    units: Dict[UUID, Unit] = field(default_factory=dict)
    rooms: Dict[UUID, Room] = field(default_factory=dict)
    room_counts: List[RoomCount] = field(default_factory=list)

    def room_count_by_unit(self) -> Dict[UUID, int]:
        """Max room count recorded per unit"""
        out: Dict[UUID, int] = {}
        for rc in self.room_counts:
            prev = out.get(rc.unit_id)
            if prev is None or rc.room_count > prev:
                out[rc.unit_id] = rc.room_count
        return out

# --------- Source records ---------

@dataclass(frozen=True)
class Transaction:
    id: UUID
    amount: object  # raw, may be non-numeric
    period_month: date
    account_name: Optional[str] = None
    revenue_class: Optional[str] = None
    org_id: Optional[UUID] = None
    building_id: Optional[UUID] = None
    unit_id: Optional[UUID] = None
    room_id: Optional[UUID] = None
    room_name: Optional[str] = None  # raw room label when room_id is unresolved

@dataclass(frozen=True)
class EntitlementRule:
    id: UUID
    revenue_class: str
    entitlement: str
    org_id: Optional[UUID] = None
    building_id: Optional[UUID] = None
    unit_id: Optional[UUID] = None
    effective_start: Optional[date] = None
    effective_end: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def scope(self) -> Literal["unit", "building", "organization", "global"]:
        if self.unit_id is not None:
            return "unit"
        if self.building_id is not None:
            return "building"
        if self.org_id is not None:
            return "organization"
        return "global"

    def is_active(self, asof: date) -> bool:
        if self.effective_start is not None and self.effective_start > asof:
            return False
        if self.effective_end is not None and self.effective_end < asof:
            return False
        return True

@dataclass(frozen=True)
class MappingProfile:
    name: str
    aliases: Dict[str, str] = field(default_factory=dict)  # raw room label -> canonical room name

# --------- Pipeline records ---------

@dataclass(frozen=True)
class StagedTransaction:
    transaction_id: UUID
    period_month: date
    amount_abs: float
    revenue_class: str
    account_name: Optional[str]
    org_id: Optional[UUID]
    building_id: Optional[UUID]
    unit_id: Optional[UUID]
    room_id: Optional[UUID]
    org_name: Optional[str] = None
    building_name: Optional[str] = None
    unit_name: Optional[str] = None
    room_name: Optional[str] = None
    agreement_type: Optional[str] = None
    bedrooms: Optional[int] = None
    is_landlord_revenue: bool = False
    is_management_fee_eligible: bool = False

    @property
    def month(self) -> str:
        return self.period_month.strftime("%Y-%m")

@dataclass(frozen=True)
class UnitOpEx:
    unit_id: UUID
    org_id: Optional[UUID]
    building_id: Optional[UUID]
    room_count: int
    cleaning: float
    electricity: float
    gas: float
    smart_locks: float
    total_opex: float

@dataclass(frozen=True)
class PartnerRevenueRow:
    org_id: Optional[UUID]
    building_id: Optional[UUID]
    unit_id: UUID
    period_month: date
    total_revenue: float
    management_fee: float
    noi: float
    room_count: Optional[int] = None
    opex: Optional[UnitOpEx] = None

    @property
    def total_opex(self) -> Optional[float]:
        return None if self.opex is None else self.opex.total_opex

@dataclass(frozen=True)
class InternalMetricsRow:
    org_id: Optional[UUID]
    building_id: Optional[UUID]
    unit_id: Optional[UUID]
    room_id: UUID
    period_month: date
    gross_revenue: float
    landlord_revenue: float
    fee_income: float
    management_fee: float
    company_total_revenue: float
    take_rate: float

@dataclass(frozen=True)
class KpiFact:
    kpi_name: str
    value: float
    period_month: date
    org_id: Optional[UUID] = None
    building_id: Optional[UUID] = None
    unit_id: Optional[UUID] = None
    room_id: Optional[UUID] = None

@dataclass(frozen=True)
class PipelineSummary:
    staged: int
    unit_opex: int
    partner: int
    internal: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "staged": self.staged,
            "unit_opex": self.unit_opex,
            "partner": self.partner,
            "internal": self.internal,
        }

# --------- Low-level helpers ---------

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_DASHES = re.compile("[‒–—−-]+")
_SPACES = re.compile(r"\s+")

def to_revenue_class(name: Optional[str]) -> Optional[str]:
    """'Rent Income' -> 'rent_income'; None for blank input"""
    if name is None:
        return None
    slug = _NON_ALNUM.sub("_", str(name).lower()).strip("_")
    return slug or None

def normalize_name(s: Optional[str]) -> str:
    """NFKC, lowercase, dash-like characters to space, whitespace collapsed"""
    if not s:
        return ""
    s = unicodedata.normalize("NFKC", str(s)).lower()
    return _SPACES.sub(" ", _DASHES.sub(" ", s)).strip()

def dash_variant(s: str) -> str:
    """Same label with dashes turned into spaces, case preserved"""
    return _SPACES.sub(" ", _DASHES.sub(" ", s)).strip()

def month_start(d: date) -> date:
    return date(d.year, d.month, 1)

def coerce_number(v: object) -> Optional[float]:
    """float(v), or None when v is missing, non-numeric, NaN or infinite"""
    if v is None or isinstance(v, bool):
        return None
    try:
        x = float(v)
    except (TypeError, ValueError):
        return None
    return x if math.isfinite(x) else None

def amount_or_zero(v: object) -> float:
    x = coerce_number(v)
    return 0.0 if x is None else x
