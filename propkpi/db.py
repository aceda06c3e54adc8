import json
import logging
from uuid import UUID, uuid4
from datetime import date, datetime
from typing import Optional, List, Dict, Sequence, Protocol
from sqlalchemy import create_engine, text, bindparam
from sqlalchemy.engine import Engine

from .config import DB_URL
from .models import (
    Organization, Building, Unit, Room, RoomCount, Hierarchy, Transaction,
    EntitlementRule, MappingProfile, KpiFact,
)

logger = logging.getLogger(__name__)


class KpiStore(Protocol):
    """Everything the pipeline reads from and writes to."""

    def fetch_transactions(self) -> List[Transaction]: ...
    def fetch_hierarchy(self) -> Hierarchy: ...
    def fetch_entitlement_rules(self) -> List[EntitlementRule]: ...
    def fetch_mapping_profile(self, name: str) -> Optional[MappingProfile]: ...
    def fetch_transaction_months(self) -> List[date]: ...
    def fetch_kpi_facts(
        self,
        kpi_names: Optional[Sequence[str]] = None,
        period_month: Optional[date] = None,
        org_id: Optional[UUID] = None,
        building_id: Optional[UUID] = None,
    ) -> List[KpiFact]: ...
    def delete_kpi_facts(
        self,
        kpi_name: str,
        period_month: date,
        room_id: Optional[UUID] = None,
        unit_id: Optional[UUID] = None,
    ) -> int: ...
    def insert_kpi_facts(self, facts: Sequence[KpiFact]) -> None: ...
    def insert_audit_log(self, action: str, entity_type: str, details: Dict[str, object]) -> None: ...


# --------- value helpers ---------

def _uuid(v) -> Optional[UUID]:
    if v is None or v == "":
        return None
    return v if isinstance(v, UUID) else UUID(str(v))

def _str(v: Optional[UUID]) -> Optional[str]:
    return None if v is None else str(v)

def _as_date(v) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])

def _as_datetime(v) -> Optional[datetime]:
    if v is None or isinstance(v, datetime):
        return v
    return datetime.fromisoformat(str(v).replace("Z", "+00:00"))

def _as_json(v) -> dict:
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except ValueError:
            v = {}
    return v if isinstance(v, dict) else {}

# --------- mappers ---------

def _map_transaction(row) -> Transaction:
    extra = _as_json(row["extra_json"])
    return Transaction(
        id=_uuid(row["id"]),
        amount=row["amount"],
        period_month=_as_date(row["period_month"]),
        account_name=row["account_name"],
        revenue_class=row["revenue_class"],
        org_id=_uuid(row["org_id"]),
        building_id=_uuid(row["building_id"]),
        unit_id=_uuid(row["unit_id"]),
        room_id=_uuid(row["room_id"]),
        room_name=extra.get("room_name"),
    )

def _map_rule(row) -> EntitlementRule:
    return EntitlementRule(
        id=_uuid(row["id"]),
        revenue_class=row["revenue_class"],
        entitlement=row["entitlement"],
        org_id=_uuid(row["org_id"]),
        building_id=_uuid(row["building_id"]),
        unit_id=_uuid(row["unit_id"]),
        effective_start=_as_date(row["effective_start"]),
        effective_end=_as_date(row["effective_end"]),
        created_at=_as_datetime(row["created_at"]),
    )

def _map_fact(row) -> KpiFact:
    return KpiFact(
        kpi_name=row["kpi_name"],
        value=float(row["value"]),
        period_month=_as_date(row["period_month"]),
        org_id=_uuid(row["org_id"]),
        building_id=_uuid(row["building_id"]),
        unit_id=_uuid(row["unit_id"]),
        room_id=_uuid(row["room_id"]),
    )


class SqlKpiStore:
    """KpiStore over a relational database. Every call runs in its own transaction."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or create_engine(DB_URL, future=True)

    # --------- fetchers ---------

    def fetch_transactions(self) -> List[Transaction]:
        sql = text("""
            SELECT id, amount, account_name, revenue_class, period_month,
                   org_id, building_id, unit_id, room_id, extra_json
            FROM transactions
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()
        return [_map_transaction(r) for r in rows]

    def fetch_hierarchy(self) -> Hierarchy:
        with self.engine.begin() as conn:
            orgs = conn.execute(text("SELECT id, name FROM organizations")).mappings().all()
            bldgs = conn.execute(text("SELECT id, org_id, name FROM buildings")).mappings().all()
            units = conn.execute(text(
                "SELECT id, org_id, building_id, name, agreement_type FROM units"
            )).mappings().all()
            rooms = conn.execute(text("SELECT id, unit_id, name FROM rooms ORDER BY id")).mappings().all()
            counts = conn.execute(text(
                "SELECT unit_id, room_count, org_id, building_id FROM room_counts"
            )).mappings().all()
        return Hierarchy(
            organizations={_uuid(r["id"]): Organization(_uuid(r["id"]), r["name"]) for r in orgs},
            buildings={
                _uuid(r["id"]): Building(_uuid(r["id"]), _uuid(r["org_id"]), r["name"]) for r in bldgs
            },
            units={
                _uuid(r["id"]): Unit(
                    id=_uuid(r["id"]),
                    org_id=_uuid(r["org_id"]),
                    building_id=_uuid(r["building_id"]),
                    name=r["name"],
                    agreement_type=r["agreement_type"],
                )
                for r in units
            },
            rooms={_uuid(r["id"]): Room(_uuid(r["id"]), _uuid(r["unit_id"]), r["name"]) for r in rooms},
            room_counts=[
                RoomCount(
                    unit_id=_uuid(r["unit_id"]),
                    room_count=int(r["room_count"] or 0),
                    org_id=_uuid(r["org_id"]),
                    building_id=_uuid(r["building_id"]),
                )
                for r in counts
            ],
        )

    def fetch_entitlement_rules(self) -> List[EntitlementRule]:
        sql = text("""
            SELECT id, revenue_class, entitlement, org_id, building_id, unit_id,
                   effective_start, effective_end, created_at
            FROM fee_entitlements
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()
        return [_map_rule(r) for r in rows]

    def fetch_mapping_profile(self, name: str) -> Optional[MappingProfile]:
        sql = text("SELECT name, mapping_json FROM mapping_profiles WHERE name = :name LIMIT 1")
        with self.engine.begin() as conn:
            row = conn.execute(sql, {"name": name}).mappings().first()
        if not row:
            return None
        aliases = {str(k): str(v) for k, v in _as_json(row["mapping_json"]).items() if v}
        return MappingProfile(name=row["name"], aliases=aliases)

    def fetch_transaction_months(self) -> List[date]:
        sql = text("SELECT DISTINCT period_month FROM transactions ORDER BY period_month DESC")
        with self.engine.begin() as conn:
            rows = conn.execute(sql).all()
        return [_as_date(r[0]) for r in rows]

    def fetch_kpi_facts(
        self,
        kpi_names: Optional[Sequence[str]] = None,
        period_month: Optional[date] = None,
        org_id: Optional[UUID] = None,
        building_id: Optional[UUID] = None,
    ) -> List[KpiFact]:
        clauses, params, binds = [], {}, []
        if kpi_names is not None:
            clauses.append("kpi_name IN :names")
            params["names"] = list(kpi_names)
            binds.append(bindparam("names", expanding=True))
        if period_month is not None:
            clauses.append("period_month = :pm")
            params["pm"] = period_month.isoformat()
        if org_id is not None:
            clauses.append("org_id = :oid")
            params["oid"] = str(org_id)
        if building_id is not None:
            clauses.append("building_id = :bid")
            params["bid"] = str(building_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = text(
            "SELECT kpi_name, value, period_month, org_id, building_id, unit_id, room_id "
            "FROM kpi_results" + where
        ).bindparams(*binds)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, params).mappings().all()
        return [_map_fact(r) for r in rows]

    # --------- writers ---------

    def delete_kpi_facts(
        self,
        kpi_name: str,
        period_month: date,
        room_id: Optional[UUID] = None,
        unit_id: Optional[UUID] = None,
    ) -> int:
        sql = "DELETE FROM kpi_results WHERE kpi_name = :name AND period_month = :pm"
        params = {"name": kpi_name, "pm": period_month.isoformat()}
        if room_id is not None:
            sql += " AND room_id = :rid"
            params["rid"] = str(room_id)
        if unit_id is not None:
            sql += " AND unit_id = :uid"
            params["uid"] = str(unit_id)
        with self.engine.begin() as conn:
            return conn.execute(text(sql), params).rowcount

    def insert_kpi_facts(self, facts: Sequence[KpiFact]) -> None:
        if not facts:
            return
        sql = text("""
            INSERT INTO kpi_results
                (id, kpi_name, value, period_month, org_id, building_id, unit_id, room_id)
            VALUES (:id, :kpi_name, :value, :period_month, :org_id, :building_id, :unit_id, :room_id)
        """)
        params = [
            {
                "id": str(uuid4()),
                "kpi_name": f.kpi_name,
                "value": f.value,
                "period_month": f.period_month.isoformat(),
                "org_id": _str(f.org_id),
                "building_id": _str(f.building_id),
                "unit_id": _str(f.unit_id),
                "room_id": _str(f.room_id),
            }
            for f in facts
        ]
        with self.engine.begin() as conn:
            conn.execute(sql, params)
        logger.debug("Inserted %d kpi_results rows", len(params))

    def insert_audit_log(self, action: str, entity_type: str, details: Dict[str, object]) -> None:
        sql = text("""
            INSERT INTO audit_logs (id, action, entity_type, details)
            VALUES (:id, :action, :entity_type, :details)
        """)
        with self.engine.begin() as conn:
            conn.execute(sql, {
                "id": str(uuid4()),
                "action": action,
                "entity_type": entity_type,
                "details": json.dumps(details),
            })
