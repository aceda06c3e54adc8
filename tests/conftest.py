"""
Shared fixtures: one organization, one building, a management unit with one
room (2 bedrooms) and a leased-only unit that the pipelines must ignore.
"""
from datetime import date
from uuid import UUID

import pytest

from propkpi.config import PipelineConfig
from propkpi.memory import InMemoryKpiStore
from propkpi.models import (
    Organization, Building, Unit, Room, RoomCount, Hierarchy, Transaction,
    EntitlementRule,
)

ORG = UUID(int=1)
BLDG = UUID(int=2)
UNIT = UUID(int=3)
ROOM = UUID(int=4)
OTHER_UNIT = UUID(int=5)
OTHER_ROOM = UUID(int=6)

MONTH = date(2024, 3, 1)


def make_tx(n, amount, account_name, room_id=ROOM, period=MONTH, **kw) -> Transaction:
    return Transaction(
        id=UUID(int=1000 + n),
        amount=amount,
        period_month=period,
        account_name=account_name,
        room_id=room_id,
        **kw,
    )


def make_rule(n, revenue_class, entitlement, **kw) -> EntitlementRule:
    return EntitlementRule(id=UUID(int=100 + n), revenue_class=revenue_class, entitlement=entitlement, **kw)


@pytest.fixture
def hierarchy() -> Hierarchy:
    return Hierarchy(
        organizations={ORG: Organization(ORG, "Acme Holdings")},
        buildings={BLDG: Building(BLDG, ORG, "12 Main St")},
        units={
            UNIT: Unit(UNIT, ORG, BLDG, "Unit 4A", agreement_type="Management"),
            OTHER_UNIT: Unit(OTHER_UNIT, ORG, BLDG, "Unit 5B", agreement_type="Master Lease"),
        },
        rooms={
            ROOM: Room(ROOM, UNIT, "12 Main St - 4A - Room 1"),
            OTHER_ROOM: Room(OTHER_ROOM, OTHER_UNIT, "12 Main St - 5B - Room 1"),
        },
        room_counts=[
            RoomCount(UNIT, 2, ORG, BLDG),
            RoomCount(OTHER_UNIT, 3, ORG, BLDG),
        ],
    )


@pytest.fixture
def rules():
    return [
        make_rule(1, "rent_income", "landlord"),
        make_rule(2, "convenience_fee", "management_company"),
    ]


@pytest.fixture
def transactions():
    return [
        make_tx(1, 1000, "Rent Income"),
        make_tx(2, -100, "Convenience Fee"),
    ]


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(max_workers=2, delete_chunk_size=2)


@pytest.fixture
def store(transactions, hierarchy, rules) -> InMemoryKpiStore:
    return InMemoryKpiStore(transactions=transactions, hierarchy=hierarchy, rules=rules)
