from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .containers import CARDS, LISTS, ContainerLocks, ContainerService, DeleteResult, MoveResult
from .db import Activity, Board, BoardMembership, Card, ListModel
from .errors import Forbidden, InvalidRequest, NotFound, StaleState
from .positions import storage_errors
from .utils import new_uuid, strip_or_none

logger = logging.getLogger(__name__)


class Storage:
    """Boards, lists and cards on top of a SQLAlchemy session.

    Every mutating method is one unit of work: it takes the container locks
    it needs, commits on success and rolls back on any error.
    """

    MOVE_ATTEMPTS = 3

    def __init__(
        self,
        session: Session,
        locks: Optional[ContainerLocks] = None,
        serialize: bool = True,
    ) -> None:
        self.session = session
        self.locks = locks or ContainerLocks()
        self.serialize = serialize
        self.cards = ContainerService(session, CARDS)
        self.lists = ContainerService(session, LISTS)

    @contextmanager
    def _unit_of_work(self, *lock_keys: tuple[str, str]) -> Iterator[None]:
        with ExitStack() as stack:
            if self.serialize and lock_keys:
                stack.enter_context(self.locks.hold(*lock_keys))
            try:
                yield
                with storage_errors("commit"):
                    self.session.commit()
            except Exception:
                self.session.rollback()
                raise

    def _log(self, board_id: str, user_id: str, action: str, **details: Any) -> None:
        self.session.add(Activity(board_id=board_id, user_id=user_id, action=action, details=details))

    # === Board operations ===
    def create_board(
        self,
        owner: str,
        title: str,
        description: Optional[str] = None,
        background: Optional[str] = None,
        visibility: str = "private",
    ) -> Board:
        board = Board(
            id=new_uuid(),
            title=title.strip(),
            description=strip_or_none(description),
            background=background or "#0079bf",
            visibility=visibility,
            owner=owner,
            list_ids=[],
            favorited_by=[],
            version=1,
        )
        board.memberships.append(BoardMembership(user_id=owner, role="owner"))
        with self._unit_of_work():
            self.session.add(board)
            self._log(board.id, owner, "created this board")
        logger.info("board %s created by %s", board.id, owner)
        return board

    def list_boards_for_user(self, user_id: str) -> List[Board]:
        stmt = (
            select(Board)
            .join(BoardMembership, BoardMembership.board_id == Board.id)
            .where(BoardMembership.user_id == user_id)
            .order_by(Board.created_at.desc(), Board.id)
        )
        with storage_errors("list_boards"):
            return list(self.session.scalars(stmt))

    def list_public_boards(self) -> List[Board]:
        stmt = select(Board).where(Board.visibility == "public").order_by(Board.created_at.desc(), Board.id)
        with storage_errors("list_public_boards"):
            return list(self.session.scalars(stmt))

    def get_board(self, board_id: str) -> Board:
        with storage_errors("get_board"):
            board = self.session.get(Board, board_id)
        if board is None:
            raise NotFound("board not found", {"id": board_id})
        return board

    def role_for(self, board_id: str, user_id: str) -> Optional[str]:
        stmt = select(BoardMembership.role).where(
            BoardMembership.board_id == board_id, BoardMembership.user_id == user_id
        )
        with storage_errors("role_for"):
            return self.session.scalars(stmt).first()

    def members_count(self, board_id: str) -> int:
        stmt = select(func.count(BoardMembership.id)).where(BoardMembership.board_id == board_id)
        with storage_errors("members_count"):
            return self.session.execute(stmt).scalar_one()

    def update_board(self, board: Board, user_id: str, **fields: Any) -> Board:
        with self._unit_of_work():
            if fields.get("title") is not None:
                board.title = fields["title"].strip()
            if "description" in fields:
                board.description = strip_or_none(fields["description"])
            if fields.get("background") is not None:
                board.background = fields["background"]
            if fields.get("visibility") is not None:
                board.visibility = fields["visibility"]
            board.version += 1
            self._log(board.id, user_id, "updated this board", fields=sorted(fields))
        return board

    def delete_board(self, board: Board) -> None:
        board_id = board.id
        with self._unit_of_work(("list", board_id)):
            self.session.delete(board)
        logger.info("board %s deleted", board_id)

    def add_member(self, board: Board, user_id: str, role: str, actor: str) -> BoardMembership:
        if role == "owner":
            raise Forbidden("a board has exactly one owner")
        with self._unit_of_work():
            membership = self.session.scalars(
                select(BoardMembership).where(
                    BoardMembership.board_id == board.id, BoardMembership.user_id == user_id
                )
            ).first()
            if membership is None:
                membership = BoardMembership(board_id=board.id, user_id=user_id, role=role)
                self.session.add(membership)
            elif membership.role == "owner":
                raise Forbidden("the owner's role cannot be changed")
            else:
                membership.role = role
            self._log(board.id, actor, "added a member", userId=user_id, role=role)
        return membership

    def remove_member(self, board: Board, user_id: str, actor: str) -> None:
        with self._unit_of_work():
            membership = self.session.scalars(
                select(BoardMembership).where(
                    BoardMembership.board_id == board.id, BoardMembership.user_id == user_id
                )
            ).first()
            if membership is None:
                raise NotFound("member not found", {"userId": user_id})
            if membership.role == "owner":
                raise Forbidden("the owner cannot be removed")
            self.session.delete(membership)
            self._log(board.id, actor, "removed a member", userId=user_id)

    def toggle_favorite(self, board: Board, user_id: str) -> bool:
        """Star or unstar the board for one user; returns the new state."""
        with self._unit_of_work():
            favorited = list(board.favorited_by or [])
            if user_id in favorited:
                favorited.remove(user_id)
            else:
                favorited.append(user_id)
            board.favorited_by = favorited
        return user_id in favorited

    def activity(self, board_id: str, limit: int) -> List[Activity]:
        stmt = (
            select(Activity)
            .where(Activity.board_id == board_id)
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
        )
        with storage_errors("activity"):
            return list(self.session.scalars(stmt))

    def reconcile_board(self, board: Board, user_id: str) -> Dict[str, List[str]]:
        """Run the compaction pass on the board and every list on it."""
        list_ids = [lid for lid, _ in self.lists.store.snapshot(board.id)]
        keys = [("list", board.id)] + [("card", lid) for lid in list_ids]
        changed: Dict[str, List[str]] = {}
        with self._unit_of_work(*keys):
            changed[board.id] = self.lists.reconcile(board.id)
            for list_id in list_ids:
                changed[list_id] = self.cards.reconcile(list_id)
            self._log(board.id, user_id, "reconciled positions")
        return {cid: ids for cid, ids in changed.items() if ids}

    # === List operations ===
    def board_lists(self, board_id: str, include_archived: bool = False) -> List[ListModel]:
        stmt = select(ListModel).where(ListModel.board_id == board_id)
        if not include_archived:
            stmt = stmt.where(ListModel.is_archived.is_(False))
        stmt = stmt.order_by(ListModel.position, ListModel.created_at, ListModel.id)
        with storage_errors("board_lists"):
            return list(self.session.scalars(stmt))

    def get_list(self, list_id: str) -> ListModel:
        with storage_errors("get_list"):
            lst = self.session.get(ListModel, list_id)
        if lst is None:
            raise NotFound("list not found", {"id": list_id})
        return lst

    def create_list(self, board: Board, title: str, user_id: str) -> ListModel:
        lst = ListModel(id=new_uuid(), board_id=board.id, title=title.strip(), card_ids=[], is_archived=False)
        with self._unit_of_work(("list", board.id)):
            self.lists.insert_member(board.id, lst)
            self._log(board.id, user_id, "added a list", listId=lst.id, listTitle=lst.title)
        return lst

    def rename_list(self, lst: ListModel, title: str, user_id: str) -> ListModel:
        with self._unit_of_work():
            lst.title = title.strip()
            self._log(lst.board_id, user_id, "renamed a list", listId=lst.id, listTitle=lst.title)
        return lst

    def toggle_list_archive(self, lst: ListModel, user_id: str) -> ListModel:
        with self._unit_of_work():
            lst.is_archived = not lst.is_archived
            action = "archived a list" if lst.is_archived else "unarchived a list"
            self._log(lst.board_id, user_id, action, listId=lst.id, listTitle=lst.title)
        return lst

    def move_list(self, lst: ListModel, position: int, user_id: str) -> MoveResult:
        board_id = lst.board_id
        with self._unit_of_work(("list", board_id)):
            result = self.lists.move_member(lst.id, board_id, board_id, position)
            if not result.plan.is_noop:
                self._log(
                    board_id,
                    user_id,
                    "moved a list",
                    listId=lst.id,
                    oldPosition=result.plan.current_position,
                    newPosition=result.plan.target.position,
                )
        return result

    def delete_list(self, lst: ListModel, user_id: str) -> DeleteResult:
        board_id, list_id, title = lst.board_id, lst.id, lst.title
        with self._unit_of_work(("list", board_id), ("card", list_id)):
            result = self.lists.delete_member(list_id)
            self._log(board_id, user_id, "deleted a list", listId=list_id, listTitle=title)
        return result

    # === Card operations ===
    def list_cards(self, list_ids: List[str], include_archived: bool = False) -> Dict[str, List[Card]]:
        by_list: Dict[str, List[Card]] = {lid: [] for lid in list_ids}
        if not list_ids:
            return by_list
        stmt = select(Card).where(Card.list_id.in_(list_ids))
        if not include_archived:
            stmt = stmt.where(Card.is_archived.is_(False))
        stmt = stmt.order_by(Card.position, Card.created_at, Card.id)
        with storage_errors("list_cards"):
            for card in self.session.scalars(stmt):
                by_list[card.list_id].append(card)
        return by_list

    def get_card(self, card_id: str) -> Card:
        with storage_errors("get_card"):
            card = self.session.get(Card, card_id)
        if card is None:
            raise NotFound("card not found", {"id": card_id})
        return card

    def create_card(
        self,
        lst: ListModel,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        due_date: Optional[datetime] = None,
        priority: str = "medium",
        labels: Optional[List[Dict[str, str]]] = None,
    ) -> Card:
        card = Card(
            id=new_uuid(),
            board_id=lst.board_id,
            title=title.strip(),
            description=strip_or_none(description),
            due_date=due_date,
            priority=priority,
            labels=list(labels or []),
            assignees=[],
            comments=[],
            is_completed=False,
            is_archived=False,
            version=1,
        )
        with self._unit_of_work(("card", lst.id)):
            self.cards.insert_member(lst.id, card)
            self._log(lst.board_id, user_id, "added a card", cardId=card.id, cardTitle=card.title, listId=lst.id)
        return card

    def update_card(self, card: Card, user_id: str, **fields: Any) -> Card:
        with self._unit_of_work():
            if fields.get("title") is not None:
                card.title = fields["title"].strip()
            if "description" in fields:
                card.description = strip_or_none(fields["description"])
            if "due_date" in fields:
                card.due_date = fields["due_date"]
            if fields.get("priority") is not None:
                card.priority = fields["priority"]
            if fields.get("is_completed") is not None:
                card.is_completed = fields["is_completed"]
            if fields.get("labels") is not None:
                card.labels = list(fields["labels"])
            self._touch(card)
            self._log(card.board_id, user_id, "updated a card", cardId=card.id, fields=sorted(fields))
        return card

    def toggle_card_archive(self, card: Card, user_id: str) -> Card:
        with self._unit_of_work():
            card.is_archived = not card.is_archived
            card.version += 1
            action = "archived a card" if card.is_archived else "unarchived a card"
            self._log(card.board_id, user_id, action, cardId=card.id, cardTitle=card.title)
        return card

    def assign_member(self, card: Card, assignee: str, user_id: str) -> Card:
        if self.role_for(card.board_id, assignee) is None:
            raise NotFound("user is not a member of this board", {"userId": assignee})
        if assignee in (card.assignees or []):
            raise InvalidRequest("user is already assigned to this card", {"userId": assignee})
        with self._unit_of_work():
            card.assignees = list(card.assignees or []) + [assignee]
            self._touch(card)
            self._log(card.board_id, user_id, "assigned a member", cardId=card.id, userId=assignee)
        return card

    def unassign_member(self, card: Card, assignee: str, user_id: str) -> Card:
        if assignee not in (card.assignees or []):
            raise NotFound("user is not assigned to this card", {"userId": assignee})
        with self._unit_of_work():
            card.assignees = [uid for uid in card.assignees if uid != assignee]
            self._touch(card)
            self._log(card.board_id, user_id, "unassigned a member", cardId=card.id, userId=assignee)
        return card

    def add_comment(self, card: Card, user_id: str, text: str) -> Dict[str, Any]:
        text = text.strip()
        if not text:
            raise InvalidRequest("comment text is required")
        comment = {
            "id": new_uuid(),
            "userId": user_id,
            "text": text,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with self._unit_of_work():
            card.comments = list(card.comments or []) + [comment]
            self._touch(card)
            self._log(card.board_id, user_id, "commented on this card", cardId=card.id, commentId=comment["id"])
        return comment

    def _touch(self, card: Card) -> None:
        card.version += 1
        card.updated_at = datetime.now(timezone.utc)

    def _current_list_id(self, card_id: str) -> str:
        with storage_errors("current_list_id"):
            list_id = self.session.scalars(select(Card.list_id).where(Card.id == card_id)).first()
        if list_id is None:
            raise NotFound("card not found", {"id": card_id})
        return list_id

    def move_card(
        self,
        card: Card,
        destination_list_id: str,
        position: int,
        user_id: str,
        source_list_id: Optional[str] = None,
    ) -> MoveResult:
        """Move a card within or across lists of its board.

        With an explicit ``source_list_id`` a card found elsewhere is a
        ``StaleState``. Without one, the card's list is read from the
        database and locked; if another writer moved the card in between,
        the read is repeated a few times before giving up.
        """
        destination = self.get_list(destination_list_id)
        if destination.board_id != card.board_id:
            raise NotFound("destination list not found on this board", {"id": destination_list_id})
        card_id = card.id
        if source_list_id is None:
            for _ in range(self.MOVE_ATTEMPTS - 1):
                expected = self._current_list_id(card_id)
                try:
                    return self._move_card_from(card_id, expected, destination_list_id, position, user_id)
                except StaleState:
                    logger.info("card %s left list %s before its move started, retrying", card_id, expected)
            source_list_id = self._current_list_id(card_id)
        return self._move_card_from(card_id, source_list_id, destination_list_id, position, user_id)

    def _move_card_from(
        self, card_id: str, source_list_id: str, destination_list_id: str, position: int, user_id: str
    ) -> MoveResult:
        with self._unit_of_work(("card", source_list_id), ("card", destination_list_id)):
            result = self.cards.move_member(card_id, source_list_id, destination_list_id, position)
            if not result.plan.is_noop:
                moved = result.member
                self._touch(moved)
                self._log(
                    moved.board_id,
                    user_id,
                    "moved this card" if not result.plan.cross_container else "moved this card to another list",
                    cardId=moved.id,
                    sourceListId=source_list_id,
                    destinationListId=destination_list_id,
                    oldPosition=result.plan.current_position,
                    newPosition=result.plan.target.position,
                )
        return result

    def delete_card(self, card: Card, user_id: str) -> DeleteResult:
        board_id, card_id, title = card.board_id, card.id, card.title
        with self._unit_of_work(("card", card.list_id)):
            result = self.cards.delete_member(card_id)
            self._log(board_id, user_id, "deleted a card", cardId=card_id, cardTitle=title)
        return result

