"""SQL-backed position storage for one kind of ordered member.

A ``PositionStore`` is bound to a member class (``Card`` or ``ListModel``)
and the column naming its container (``list_id`` or ``board_id``). Every
method issues its own statement in the caller's session; committing is the
caller's business.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .errors import StorageUnavailable
from .reorder import RangeShift

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error("storage operation %s failed: %s", operation, exc)
        raise StorageUnavailable(f"storage unavailable during {operation}") from exc


class PositionStore:
    def __init__(self, session: Session, member_cls: type, container_field: str) -> None:
        self.session = session
        self.member_cls = member_cls
        self.container_field = container_field
        self._container = getattr(member_cls, container_field)
        self._position = member_cls.position
        self._id = member_cls.id

    def snapshot(self, container_id: str) -> list[tuple[str, int]]:
        """Return ``(member_id, position)`` pairs of a container in display order."""
        stmt = (
            select(self._id, self._position)
            .where(self._container == container_id)
            .order_by(self._position, self.member_cls.created_at, self._id)
        )
        with storage_errors("snapshot"):
            return [(row[0], row[1]) for row in self.session.execute(stmt)]

    def max_position(self, container_id: str) -> Optional[int]:
        stmt = select(func.max(self._position)).where(self._container == container_id)
        with storage_errors("max_position"):
            return self.session.execute(stmt).scalar()

    def shift_range(self, shift: RangeShift) -> list[str]:
        """Apply ``shift.delta`` to the matching members; return their ids."""
        conditions = [self._container == shift.container_id]
        if shift.lower is not None:
            conditions.append(self._position >= shift.lower)
        if shift.upper is not None:
            conditions.append(self._position <= shift.upper)
        with storage_errors("shift_range"):
            ids = list(self.session.scalars(select(self._id).where(*conditions)))
            if not ids:
                return []
            self.session.execute(
                update(self.member_cls)
                .where(*conditions)
                .values(position=self._position + shift.delta),
                execution_options={"synchronize_session": "fetch"},
            )
        logger.debug(
            "shifted %d %s in %s by %+d (range %s..%s)",
            len(ids),
            self.member_cls.__tablename__,
            shift.container_id,
            shift.delta,
            shift.lower,
            shift.upper,
        )
        return ids

    def set_position(self, member_id: str, container_id: str, position: int) -> None:
        with storage_errors("set_position"):
            self.session.execute(
                update(self.member_cls)
                .where(self._id == member_id)
                .values({self.container_field: container_id, "position": position}),
                execution_options={"synchronize_session": "fetch"},
            )

    def compact_after_delete(self, container_id: str, deleted_position: int) -> list[str]:
        return self.shift_range(RangeShift(container_id, deleted_position + 1, None, -1))
