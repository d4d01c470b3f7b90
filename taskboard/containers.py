"""Insert, move and delete ordered members and keep container id arrays in step.

Position math lives in :mod:`taskboard.reorder`; this module reads the
current state, applies the plan through a :class:`PositionStore` and rewrites
the container's ordered id array (``ListModel.card_ids`` /
``Board.list_ids``) in the same session, so one commit covers both.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from .db import Board, Card, ListModel
from .errors import NotFound, StaleState
from .positions import PositionStore, storage_errors
from .reorder import MovePlan, plan_move

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberKind:
    name: str
    member_cls: type
    container_cls: type
    container_field: str
    index_field: str


CARDS = MemberKind("card", Card, ListModel, "list_id", "card_ids")
LISTS = MemberKind("list", ListModel, Board, "board_id", "list_ids")


class ContainerLocks:
    """Process-local mutual exclusion keyed by ``(kind, container_id)``."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], Any] = {}

    def _lock_for(self, key: tuple[str, str]):
        with self._guard:
            return self._locks.setdefault(key, threading.RLock())

    @contextmanager
    def hold(self, *keys: tuple[str, str]) -> Iterator[None]:
        # sorted acquisition so two moves between the same pair never deadlock
        ordered = sorted(set(keys))
        with ExitStack() as stack:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                stack.callback(lock.release)
            yield


@dataclass
class MoveResult:
    member: Any
    plan: MovePlan
    affected_ids: list[str] = field(default_factory=list)
    source_order: list[str] = field(default_factory=list)
    destination_order: list[str] = field(default_factory=list)


@dataclass
class DeleteResult:
    member_id: str
    container_id: str
    position: int
    affected_ids: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)


class ContainerService:
    def __init__(self, session: Session, kind: MemberKind) -> None:
        self.session = session
        self.kind = kind
        self.store = PositionStore(session, kind.member_cls, kind.container_field)

    # === Lookups ===
    def get_member(self, member_id: str):
        with storage_errors("get_member"):
            member = self.session.get(self.kind.member_cls, member_id, populate_existing=True)
        if member is None:
            raise NotFound(f"{self.kind.name} not found", {"id": member_id})
        return member

    def get_container(self, container_id: str):
        with storage_errors("get_container"):
            container = self.session.get(self.kind.container_cls, container_id, populate_existing=True)
        if container is None:
            raise NotFound(f"{self.kind.container_cls.__tablename__[:-1]} not found", {"id": container_id})
        return container

    def _container_of(self, member) -> str:
        return getattr(member, self.kind.container_field)

    def _index(self, container) -> list[str]:
        return list(getattr(container, self.kind.index_field) or [])

    def _set_index(self, container, ids: list[str]) -> None:
        # assign a fresh list so the JSON column is flagged dirty
        setattr(container, self.kind.index_field, list(ids))

    # === Operations ===
    def insert_member(self, container_id: str, member) -> Any:
        """Append ``member`` to the end of ``container_id``."""
        container = self.get_container(container_id)
        current_max = self.store.max_position(container_id)
        member.position = 0 if current_max is None else current_max + 1
        setattr(member, self.kind.container_field, container_id)
        self.session.add(member)
        self._set_index(container, self._index(container) + [member.id])
        with storage_errors("insert_member"):
            self.session.flush()
        logger.info(
            "inserted %s %s into %s at %d", self.kind.name, member.id, container_id, member.position
        )
        return member

    def move_member(
        self,
        member_id: str,
        source_container_id: Optional[str],
        destination_container_id: str,
        desired_position: int,
    ) -> MoveResult:
        member = self.get_member(member_id)
        actual_container_id = self._container_of(member)
        if source_container_id is not None and source_container_id != actual_container_id:
            raise StaleState(
                f"{self.kind.name} is no longer in the given source",
                {"expected": source_container_id, "actual": actual_container_id},
            )
        source_container_id = actual_container_id
        destination = self.get_container(destination_container_id)

        source_snapshot = self.store.snapshot(source_container_id)
        positions = dict(source_snapshot)
        if member_id not in positions:
            raise StaleState(f"{self.kind.name} vanished from its container", {"id": member_id})
        if destination_container_id == source_container_id:
            destination_snapshot = source_snapshot
        else:
            destination_snapshot = self.store.snapshot(destination_container_id)

        plan = plan_move(
            member_id,
            source_container_id,
            destination_container_id,
            positions[member_id],
            desired_position,
            len(destination_snapshot),
        )
        if plan.is_noop:
            order = [mid for mid, _ in source_snapshot]
            return MoveResult(member, plan, [], order, order)

        affected: list[str] = []
        for shift in plan.shifts:
            affected.extend(self.store.shift_range(shift))
        self.store.set_position(plan.target.member_id, plan.target.container_id, plan.target.position)

        if plan.cross_container:
            source = self.get_container(source_container_id)
            self._set_index(source, [mid for mid in self._index(source) if mid != member_id])
        destination_ids = [mid for mid in self._index(destination) if mid != member_id]
        destination_ids.insert(plan.target.position, member_id)
        self._set_index(destination, destination_ids)

        with storage_errors("move_member"):
            self.session.flush()
            self.session.refresh(member)

        logger.info(
            "moved %s %s from %s@%d to %s@%d (%d siblings shifted)",
            self.kind.name,
            member_id,
            source_container_id,
            plan.current_position,
            destination_container_id,
            plan.target.position,
            len(affected),
        )
        source_order = [mid for mid, _ in self.store.snapshot(source_container_id)]
        if plan.cross_container:
            destination_order = [mid for mid, _ in self.store.snapshot(destination_container_id)]
        else:
            destination_order = source_order
        return MoveResult(member, plan, affected, source_order, destination_order)

    def delete_member(self, member_id: str) -> DeleteResult:
        member = self.get_member(member_id)
        container_id = self._container_of(member)
        position = member.position
        container = self.get_container(container_id)

        self.session.delete(member)
        with storage_errors("delete_member"):
            self.session.flush()
        affected = self.store.compact_after_delete(container_id, position)
        self._set_index(container, [mid for mid in self._index(container) if mid != member_id])
        with storage_errors("delete_member"):
            self.session.flush()

        logger.info(
            "deleted %s %s from %s@%d (%d siblings compacted)",
            self.kind.name,
            member_id,
            container_id,
            position,
            len(affected),
        )
        return DeleteResult(
            member_id,
            container_id,
            position,
            affected,
            [mid for mid, _ in self.store.snapshot(container_id)],
        )

    def reconcile(self, container_id: str) -> list[str]:
        """Renumber a container to ``0..n-1`` in its current order and rebuild its id array."""
        container = self.get_container(container_id)
        snapshot = self.store.snapshot(container_id)
        changed = []
        for index, (member_id, position) in enumerate(snapshot):
            if position != index:
                self.store.set_position(member_id, container_id, index)
                changed.append(member_id)
        order = [mid for mid, _ in snapshot]
        if self._index(container) != order:
            self._set_index(container, order)
        with storage_errors("reconcile"):
            self.session.flush()
        if changed:
            logger.warning(
                "reconciled %s container %s: %d positions rewritten", self.kind.name, container_id, len(changed)
            )
        return changed
