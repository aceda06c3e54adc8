import logging
from typing import AbstractSet, Iterable, List, Optional, Dict

from .config import PipelineConfig
from .entitlements import EntitlementResolver
from .models import (
    Transaction, Hierarchy, Room, Unit, EntitlementRule, MappingProfile,
    StagedTransaction, UNCLASSIFIED, LANDLORD,
    MANAGEMENT_COMPANY, to_revenue_class, normalize_name, dash_variant,
    month_start, amount_or_zero,
)

logger = logging.getLogger(__name__)


class RoomNameResolver:
    """
    Matches a raw room label to a known room: mapped alias (exact, then
    normalized), raw exact, dash variant, normalized raw. First room
    registered under a name wins.
    """

    def __init__(self, rooms: Iterable[Room], profile: Optional[MappingProfile] = None):
        self._exact: Dict[str, Room] = {}
        self._norm: Dict[str, Room] = {}
        for r in rooms:
            if not r.name:
                continue
            self._exact.setdefault(r.name, r)
            self._norm.setdefault(normalize_name(r.name), r)
        aliases = profile.aliases if profile else {}
        self._aliases = dict(aliases)
        self._norm_aliases = {normalize_name(k): v for k, v in aliases.items()}

    def resolve(self, raw_name: Optional[str]) -> Optional[Room]:
        raw = (raw_name or "").strip()
        if not raw:
            return None
        norm = normalize_name(raw)
        mapped = self._aliases.get(raw) or self._norm_aliases.get(norm)
        if mapped:
            hit = self._exact.get(mapped) or self._norm.get(normalize_name(mapped))
            if hit:
                return hit
        return (
            self._exact.get(raw)
            or self._exact.get(dash_variant(raw))
            or self._norm.get(norm)
        )


def revenue_class_for(tx: Transaction, known_classes: AbstractSet[str] = frozenset()) -> str:
    """
    Stored classification if present, else the snake-cased GL account name.
    A derived class nothing in the rule table covers becomes 'unclassified'.
    """
    stored = to_revenue_class(tx.revenue_class)
    if stored:
        return stored
    derived = to_revenue_class(tx.account_name)
    return derived if derived in known_classes else UNCLASSIFIED


def stage(
    transactions: Iterable[Transaction],
    hierarchy: Hierarchy,
    entitlement_rules: Iterable[EntitlementRule],
    mapping_profile: Optional[MappingProfile] = None,
    config: Optional[PipelineConfig] = None,
) -> List[StagedTransaction]:
    """Join transactions to the hierarchy, resolve entitlement, keep in-scope units only."""
    config = config or PipelineConfig()
    in_scope = config.in_scope_agreement_type.strip().lower()
    resolver = EntitlementResolver(entitlement_rules)
    known_classes = resolver.known_classes
    rooms = RoomNameResolver(hierarchy.rooms.values(), mapping_profile)
    bedrooms = hierarchy.room_count_by_unit()

    out: List[StagedTransaction] = []
    unresolved = 0
    out_of_scope = 0
    for tx in transactions:
        room: Optional[Room] = None
        if tx.room_id is not None:
            room = hierarchy.rooms.get(tx.room_id)
        elif tx.room_name:
            room = rooms.resolve(tx.room_name)
            if room is not None and tx.unit_id is not None and room.unit_id != tx.unit_id:
                room = None

        unit_id = tx.unit_id or (room.unit_id if room else None)
        unit: Optional[Unit] = hierarchy.units.get(unit_id) if unit_id else None
        if unit is None:
            unresolved += 1
            continue
        if (unit.agreement_type or "").strip().lower() != in_scope:
            out_of_scope += 1
            continue

        org_id = tx.org_id or unit.org_id
        building_id = tx.building_id or unit.building_id
        room_id = tx.room_id or (room.id if room else None)
        period = month_start(tx.period_month)
        rev_class = revenue_class_for(tx, known_classes)
        entitlement = resolver.resolve(rev_class, org_id, building_id, unit.id, period)

        org = hierarchy.organizations.get(org_id) if org_id else None
        building = hierarchy.buildings.get(building_id) if building_id else None
        out.append(StagedTransaction(
            transaction_id=tx.id,
            period_month=period,
            amount_abs=abs(amount_or_zero(tx.amount)),
            revenue_class=rev_class,
            account_name=tx.account_name,
            org_id=org_id,
            building_id=building_id,
            unit_id=unit.id,
            room_id=room_id,
            org_name=org.name if org else None,
            building_name=building.name if building else None,
            unit_name=unit.name,
            room_name=room.name if room else tx.room_name,
            agreement_type=unit.agreement_type,
            bedrooms=bedrooms.get(unit.id),
            is_landlord_revenue=entitlement == LANDLORD,
            is_management_fee_eligible=entitlement == MANAGEMENT_COMPANY,
        ))

    if unresolved:
        logger.warning("%d transactions could not be matched to a unit", unresolved)
    logger.info("Staged %d transactions (%d outside agreement type %r)", len(out), out_of_scope, in_scope)
    return out
