from __future__ import annotations

from collections import Counter
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base
from leadflow.crm.automation import RoundRobinAssignor
from leadflow.crm.models import CRMPosition, CRMTeamMember
from leadflow.crm.repositories import PositionRepository


TENANT = "tenant-a"
BASE_TIME = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _fallback_count() -> float:
    return REGISTRY.get_sample_value("round_robin_assignments_total", {"mode": "fallback"}) or 0.0


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _position(session: Session, title: str = "Sales Agent", *, tenant_id: str = TENANT, cursor: int = 0) -> CRMPosition:
    position = CRMPosition(tenant_id=tenant_id, title=title, last_assigned_index=cursor, permission_set={})
    session.add(position)
    session.flush()
    return position


def _member(
    session: Session,
    name: str,
    offset: int,
    *,
    position: CRMPosition | None = None,
    position_title: str | None = None,
    tenant_id: str = TENANT,
    status: str = "active",
    is_available: bool = True,
) -> CRMTeamMember:
    member = CRMTeamMember(
        tenant_id=tenant_id,
        position_id=position.id if position is not None else None,
        position_title=position_title or (position.title if position is not None else None),
        name=name,
        status=status,
        is_available=is_available,
        created_at=BASE_TIME + timedelta(minutes=offset),
    )
    session.add(member)
    session.flush()
    return member


def test_rotation_cycles_through_pool_in_creation_order(db_session: Session) -> None:
    position = _position(db_session)
    carol = _member(db_session, "Carol", 3, position=position)
    alice = _member(db_session, "Alice", 1, position=position)
    bob = _member(db_session, "Bob", 2, position=position)
    assignor = RoundRobinAssignor()

    picks = [assignor.next_member(db_session, TENANT, "Sales Agent") for _ in range(4)]

    assert [member.name for member in picks] == ["Alice", "Bob", "Carol", "Alice"]
    assert {alice.id, bob.id, carol.id} == {member.id for member in picks}
    assert position.last_assigned_index == 4


def test_unavailable_member_is_skipped_and_rotation_continues(db_session: Session) -> None:
    position = _position(db_session)
    alice = _member(db_session, "Alice", 1, position=position)
    bob = _member(db_session, "Bob", 2, position=position)
    assignor = RoundRobinAssignor()

    assert assignor.next_member(db_session, TENANT, "Sales Agent").id == alice.id
    assert assignor.next_member(db_session, TENANT, "Sales Agent").id == bob.id

    bob.is_available = False
    db_session.flush()

    assert assignor.next_member(db_session, TENANT, "Sales Agent").id == alice.id


def test_inactive_members_are_never_selected(db_session: Session) -> None:
    position = _position(db_session)
    _member(db_session, "Alice", 1, position=position, status="inactive")
    bob = _member(db_session, "Bob", 2, position=position)
    assignor = RoundRobinAssignor()

    assert [assignor.next_member(db_session, TENANT, "Sales Agent").id for _ in range(3)] == [bob.id] * 3


def test_cursor_larger_than_pool_wraps_around(db_session: Session) -> None:
    position = _position(db_session, cursor=7)
    _member(db_session, "Alice", 1, position=position)
    bob = _member(db_session, "Bob", 2, position=position)
    _member(db_session, "Carol", 3, position=position)

    selected = RoundRobinAssignor().next_member(db_session, TENANT, "Sales Agent")

    assert selected.id == bob.id
    assert position.last_assigned_index == 2


def test_cursor_survives_commit(db_session: Session) -> None:
    position = _position(db_session)
    _member(db_session, "Alice", 1, position=position)
    bob = _member(db_session, "Bob", 2, position=position)
    assignor = RoundRobinAssignor()

    assignor.next_member(db_session, TENANT, "Sales Agent")
    db_session.commit()
    db_session.expire_all()

    assert db_session.get(CRMPosition, position.id).last_assigned_index == 1
    assert assignor.next_member(db_session, TENANT, "Sales Agent").id == bob.id


def test_empty_pool_returns_none_without_moving_cursor(db_session: Session) -> None:
    position = _position(db_session, cursor=3)
    _member(db_session, "Alice", 1, position=position, is_available=False)

    assert RoundRobinAssignor().next_member(db_session, TENANT, "Sales Agent") is None
    assert position.last_assigned_index == 3


def test_missing_position_falls_back_to_earliest_member_with_title(db_session: Session) -> None:
    first = _member(db_session, "Dina", 1, position_title="Closer")
    _member(db_session, "Omar", 2, position_title="Closer")
    _member(db_session, "Early but away", 0, position_title="Closer", is_available=False)
    assignor = RoundRobinAssignor()
    before = _fallback_count()

    picks = [assignor.next_member(db_session, TENANT, "Closer") for _ in range(3)]

    assert [member.id for member in picks] == [first.id] * 3
    assert _fallback_count() == before + 3


def test_fallback_without_members_returns_none(db_session: Session) -> None:
    _member(db_session, "Dina", 1, position_title="Closer", tenant_id="tenant-b")

    assert RoundRobinAssignor().next_member(db_session, TENANT, "Closer") is None


def test_positions_are_scoped_to_tenant(db_session: Session) -> None:
    other_position = _position(db_session, tenant_id="tenant-b")
    _member(db_session, "Other tenant", 1, position=other_position, tenant_id="tenant-b")
    position = _position(db_session)
    mine = _member(db_session, "Mine", 2, position=position)

    assert RoundRobinAssignor().next_member(db_session, TENANT, "Sales Agent").id == mine.id
    assert other_position.last_assigned_index == 0


def test_advance_cursor_validates_arguments(db_session: Session) -> None:
    position = _position(db_session)
    repository = PositionRepository()

    with pytest.raises(ValueError):
        repository.advance_cursor(db_session, position.id, 0)

    other = _position(db_session, "Closer")
    db_session.delete(other)
    db_session.flush()
    with pytest.raises(LookupError):
        repository.advance_cursor(db_session, other.id, 2)


@pytest.mark.parametrize("picks", [3, 4, 5, 7, 10, 11])
def test_each_member_is_picked_floor_or_ceil_of_share(db_session: Session, picks: int) -> None:
    position = _position(db_session)
    members = [_member(db_session, name, offset, position=position) for offset, name in enumerate(["Alice", "Bob", "Carol"])]
    assignor = RoundRobinAssignor()

    counts = Counter(assignor.next_member(db_session, TENANT, "Sales Agent").id for _ in range(picks))

    low, high = picks // len(members), -(-picks // len(members))
    assert set(counts) == {member.id for member in members}
    assert all(low <= count <= high for count in counts.values())
    assert sum(counts.values()) == picks
