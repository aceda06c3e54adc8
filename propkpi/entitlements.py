import logging
from datetime import date
from uuid import UUID
from typing import Iterable, Optional, Dict, FrozenSet, List

from .models import (
    EntitlementRule, Entitlement, LANDLORD, MANAGEMENT_COMPANY, UNCLASSIFIED,
    to_revenue_class,
)

logger = logging.getLogger(__name__)

_ENTITLEMENT_ALIASES = {
    "landlord": LANDLORD,
    "management_company": MANAGEMENT_COMPANY,
    "management": MANAGEMENT_COMPANY,
    "company": MANAGEMENT_COMPANY,
    # stored enum value for the operator's own share
    "roomrs": MANAGEMENT_COMPANY,
}

def normalize_entitlement(value: Optional[str]) -> Optional[Entitlement]:
    """'Management-Company' -> 'management_company'; None if unrecognised"""
    return _ENTITLEMENT_ALIASES.get(to_revenue_class(value) or "")

def _tie_break_key(rule: EntitlementRule):
    # latest created, then latest effective start, then greatest id
    return (
        rule.created_at.timestamp() if rule.created_at else float("-inf"),
        rule.effective_start or date.min,
        str(rule.id),
    )


class EntitlementResolver:
    """
    Resolves which party is entitled to a revenue class at a location.

    Precedence is unit > building > organization > global default. Several
    active rules at the same level are settled by the most recently created
    one, so the outcome never depends on the order rules were loaded in.
    """

    def __init__(self, rules: Iterable[EntitlementRule]):
        self._by_class: Dict[str, List[EntitlementRule]] = {}
        for r in rules:
            cls = to_revenue_class(r.revenue_class)
            if cls is None or normalize_entitlement(r.entitlement) is None:
                logger.warning(
                    "Skipping entitlement rule %s: revenue_class=%r entitlement=%r",
                    r.id, r.revenue_class, r.entitlement,
                )
                continue
            self._by_class.setdefault(cls, []).append(r)

    @property
    def known_classes(self) -> FrozenSet[str]:
        """Revenue classes that have at least one usable rule"""
        return frozenset(self._by_class)

    def resolve(
        self,
        revenue_class: Optional[str],
        org_id: Optional[UUID],
        building_id: Optional[UUID],
        unit_id: Optional[UUID],
        as_of_date: date,
    ) -> Optional[Entitlement]:
        cls = to_revenue_class(revenue_class)
        if cls is None or cls == UNCLASSIFIED:
            return None
        active = [r for r in self._by_class.get(cls, []) if r.is_active(as_of_date)]
        if not active:
            return None

        levels = (
            [r for r in active if unit_id is not None and r.unit_id == unit_id],
            [r for r in active if r.unit_id is None and building_id is not None and r.building_id == building_id],
            [r for r in active if r.unit_id is None and r.building_id is None
             and org_id is not None and r.org_id == org_id],
            [r for r in active if r.scope == "global"],
        )
        for matches in levels:
            if not matches:
                continue
            winner = max(matches, key=_tie_break_key)
            if len(matches) > 1:
                logger.debug(
                    "%d %s rules for %s at %s; using %s",
                    len(matches), winner.scope, cls, as_of_date, winner.id,
                )
            return normalize_entitlement(winner.entitlement)
        return None
