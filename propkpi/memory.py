import threading
from uuid import UUID
from datetime import date
from typing import Optional, List, Dict, Sequence

from .models import (
    Hierarchy, Transaction, EntitlementRule, MappingProfile, KpiFact,
)


class InMemoryKpiStore:
    """KpiStore kept in plain lists; for tests and dry runs."""

    def __init__(
        self,
        transactions: Optional[List[Transaction]] = None,
        hierarchy: Optional[Hierarchy] = None,
        rules: Optional[List[EntitlementRule]] = None,
        mapping_profiles: Optional[Dict[str, MappingProfile]] = None,
        facts: Optional[List[KpiFact]] = None,
    ):
        self.transactions = list(transactions or [])
        self.hierarchy = hierarchy or Hierarchy()
        self.rules = list(rules or [])
        self.mapping_profiles = dict(mapping_profiles or {})
        self.facts = list(facts or [])
        self.audit_log: List[Dict[str, object]] = []
        self._lock = threading.Lock()

    def fetch_transactions(self) -> List[Transaction]:
        return list(self.transactions)

    def fetch_hierarchy(self) -> Hierarchy:
        return self.hierarchy

    def fetch_entitlement_rules(self) -> List[EntitlementRule]:
        return list(self.rules)

    def fetch_mapping_profile(self, name: str) -> Optional[MappingProfile]:
        return self.mapping_profiles.get(name)

    def fetch_transaction_months(self) -> List[date]:
        return sorted({t.period_month for t in self.transactions}, reverse=True)

    def fetch_kpi_facts(
        self,
        kpi_names: Optional[Sequence[str]] = None,
        period_month: Optional[date] = None,
        org_id: Optional[UUID] = None,
        building_id: Optional[UUID] = None,
    ) -> List[KpiFact]:
        with self._lock:
            return [
                f for f in self.facts
                if (kpi_names is None or f.kpi_name in kpi_names)
                and (period_month is None or f.period_month == period_month)
                and (org_id is None or f.org_id == org_id)
                and (building_id is None or f.building_id == building_id)
            ]

    def delete_kpi_facts(
        self,
        kpi_name: str,
        period_month: date,
        room_id: Optional[UUID] = None,
        unit_id: Optional[UUID] = None,
    ) -> int:
        def doomed(f: KpiFact) -> bool:
            return (
                f.kpi_name == kpi_name
                and f.period_month == period_month
                and (room_id is None or f.room_id == room_id)
                and (unit_id is None or f.unit_id == unit_id)
            )
        with self._lock:
            before = len(self.facts)
            self.facts = [f for f in self.facts if not doomed(f)]
            return before - len(self.facts)

    def insert_kpi_facts(self, facts: Sequence[KpiFact]) -> None:
        with self._lock:
            self.facts.extend(facts)

    def insert_audit_log(self, action: str, entity_type: str, details: Dict[str, object]) -> None:
        self.audit_log.append({"action": action, "entity_type": entity_type, "details": dict(details)})
