"""Position planning for ordered members (cards in a list, lists in a board).

Positions inside a container are the zero-based sequence ``0..n-1``. A move
never rewrites every sibling: it shifts the siblings between the old and the
new slot by one and then places the moved member. ``plan_move`` only computes
that; applying it is up to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import InvalidRange


@dataclass(frozen=True)
class RangeShift:
    """Add ``delta`` to every position in ``[lower, upper]`` of a container.

    Both bounds are inclusive; ``None`` leaves that side open.
    """

    container_id: str
    lower: Optional[int]
    upper: Optional[int]
    delta: int

    def covers(self, position: int) -> bool:
        if self.lower is not None and position < self.lower:
            return False
        if self.upper is not None and position > self.upper:
            return False
        return True


@dataclass(frozen=True)
class TargetUpdate:
    member_id: str
    container_id: str
    position: int


@dataclass(frozen=True)
class MovePlan:
    member_id: str
    source_container_id: str
    destination_container_id: str
    current_position: int
    shifts: list[RangeShift] = field(default_factory=list)
    target: Optional[TargetUpdate] = None

    @property
    def is_noop(self) -> bool:
        return self.target is None

    @property
    def cross_container(self) -> bool:
        return self.source_container_id != self.destination_container_id


def plan_move(
    member_id: str,
    source_container_id: str,
    destination_container_id: str,
    current_position: int,
    desired_position: int,
    destination_size: int,
) -> MovePlan:
    """Compute the shifts and the target update for one move.

    ``current_position`` and ``destination_size`` must come from the same
    read of storage; the member is trusted to sit at ``current_position`` in
    ``source_container_id``. ``destination_size`` counts the destination's
    members before the move, so for a move inside one container it includes
    the member itself and an index equal to it means "last".
    """
    if desired_position < 0 or desired_position > destination_size:
        raise InvalidRange(
            f"position {desired_position} is outside 0..{destination_size}",
            {"position": desired_position, "size": destination_size},
        )

    plan_args = dict(
        member_id=member_id,
        source_container_id=source_container_id,
        destination_container_id=destination_container_id,
        current_position=current_position,
    )

    if source_container_id == destination_container_id:
        # the member already holds a slot, so "after the last" is the last slot
        desired_position = min(desired_position, max(destination_size - 1, 0))
        if desired_position == current_position:
            return MovePlan(**plan_args)
        if desired_position > current_position:
            shift = RangeShift(source_container_id, current_position + 1, desired_position, -1)
        else:
            shift = RangeShift(source_container_id, desired_position, current_position - 1, +1)
        return MovePlan(
            shifts=[shift],
            target=TargetUpdate(member_id, source_container_id, desired_position),
            **plan_args,
        )

    shifts = [RangeShift(source_container_id, current_position + 1, None, -1)]
    if desired_position < destination_size:
        shifts.append(RangeShift(destination_container_id, desired_position, None, +1))
    return MovePlan(
        shifts=shifts,
        target=TargetUpdate(member_id, destination_container_id, desired_position),
        **plan_args,
    )
