import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .auth import get_current_user, user_from_token
from .config import get_settings
from .containers import ContainerLocks, MoveResult
from .db import Activity, Board, Card, ListModel, get_session, init_db
from .errors import Forbidden, StaleState, TaskboardError
from .events import hub, stream_board_events
from .logging_setup import configure_logging
from .models import (
    ActivityOut,
    BoardCreate,
    BoardOut,
    BoardUpdate,
    BoardView,
    CardAssign,
    CardCreate,
    CardMove,
    CardMoveOut,
    CardOut,
    CardUpdate,
    CommentCreate,
    CommentOut,
    ErrorBody,
    ErrorEnvelope,
    FavoriteOut,
    ListCreate,
    ListMove,
    ListMoveOut,
    ListOut,
    ListUpdate,
    ListWithCards,
    MemberAdd,
    MemberOut,
    ReconcileOut,
)
from .storage import Storage
from .utils import etag_for, matches_etag, new_uuid

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

READ_ROLES = ("owner", "admin", "member", "observer")
WRITE_ROLES = ("owner", "admin", "member")
MANAGE_ROLES = ("owner", "admin")

locks = ContainerLocks()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    logger.info("taskboard %s ready", VERSION)
    yield


app = FastAPI(title="Taskboard API", version=VERSION, lifespan=lifespan)


def get_storage(session: Session = Depends(get_session)) -> Storage:
    return Storage(session, locks=locks, serialize=get_settings().serialize_moves)


@app.exception_handler(TaskboardError)
async def taskboard_error_handler(request: Request, exc: TaskboardError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = ErrorEnvelope(
        error=ErrorBody(
            code=exc.code,
            message=exc.message,
            details=exc.details,
            requestId=request.headers.get("X-Request-ID") or new_uuid(),
        )
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# === Helpers ===


def board_out(storage: Storage, board: Board, user_id: str) -> BoardOut:
    return BoardOut(
        id=board.id,
        title=board.title,
        description=board.description,
        background=board.background,
        visibility=board.visibility,
        owner=board.owner,
        listIds=list(board.list_ids or []),
        createdAt=board.created_at,
        updatedAt=board.updated_at,
        version=board.version,
        myRole=storage.role_for(board.id, user_id),
        membersCount=storage.members_count(board.id),
        isFavorite=user_id in (board.favorited_by or []),
    )


def list_out(lst: ListModel) -> ListOut:
    return ListOut(
        id=lst.id,
        boardId=lst.board_id,
        title=lst.title,
        position=lst.position,
        cardIds=list(lst.card_ids or []),
        isArchived=lst.is_archived,
        createdAt=lst.created_at,
        updatedAt=lst.updated_at,
    )


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        boardId=card.board_id,
        listId=card.list_id,
        title=card.title,
        description=card.description,
        position=card.position,
        dueDate=card.due_date,
        priority=card.priority,
        isCompleted=card.is_completed,
        labels=card.labels or [],
        assignees=list(card.assignees or []),
        comments=card.comments or [],
        isArchived=card.is_archived,
        createdAt=card.created_at,
        updatedAt=card.updated_at,
        version=card.version,
    )


def activity_out(entry: Activity) -> ActivityOut:
    return ActivityOut(
        id=entry.id,
        boardId=entry.board_id,
        userId=entry.user_id,
        action=entry.action,
        details=entry.details or {},
        createdAt=entry.created_at,
    )


def check_role(
    storage: Storage, board: Board, user_id: str, roles: tuple, allow_public: bool = False
) -> Optional[str]:
    role = storage.role_for(board.id, user_id)
    if role in roles:
        return role
    if allow_public and board.visibility == "public":
        return role
    raise Forbidden("access denied", {"boardId": board.id})


def publish(board_id: str, event_type: str, payload: dict) -> None:
    hub.publish(board_id, event_type, payload)


def move_payload(result: MoveResult, container_key: str) -> dict:
    plan = result.plan
    return {
        "id": plan.member_id,
        f"source{container_key}": plan.source_container_id,
        f"destination{container_key}": plan.destination_container_id,
        "oldPosition": plan.current_position,
        "newPosition": plan.target.position if plan.target else plan.current_position,
        "affectedIds": result.affected_ids,
        "sourceOrder": result.source_order,
        "destinationOrder": result.destination_order,
    }


# === Health & metadata ===


@app.get("/v1/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/v1/version")
def version() -> dict:
    return {"version": VERSION}


# === Board endpoints ===


@app.post("/v1/boards", response_model=BoardOut, status_code=201)
def create_board(
    payload: BoardCreate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.create_board(user, payload.title, payload.description, payload.background, payload.visibility)
    return board_out(storage, board, user)


@app.get("/v1/boards", response_model=dict)
def list_boards(user: str = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    boards = [board_out(storage, b, user) for b in storage.list_boards_for_user(user)]
    return {"boards": boards, "nextCursor": None}


@app.get("/v1/boards/public", response_model=dict)
def list_public_boards(user: str = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    boards = [board_out(storage, b, user) for b in storage.list_public_boards()]
    return {"boards": boards, "nextCursor": None}


@app.get("/v1/boards/{board_id}", response_model=BoardView)
def get_board(
    board_id: str,
    response: Response,
    include_archived: bool = Query(False, alias="includeArchived"),
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, READ_ROLES, allow_public=True)
    response.headers["ETag"] = etag_for(board.version)
    lists = storage.board_lists(board.id, include_archived=include_archived)
    cards = storage.list_cards([lst.id for lst in lists], include_archived=include_archived)
    return BoardView(
        board=board_out(storage, board, user),
        lists=[
            ListWithCards(**list_out(lst).model_dump(), cards=[card_out(c) for c in cards[lst.id]])
            for lst in lists
        ],
    )


@app.patch("/v1/boards/{board_id}", response_model=BoardOut)
def update_board(
    board_id: str,
    payload: BoardUpdate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    if_match: Optional[str] = Header(None, alias="If-Match"),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, MANAGE_ROLES)
    if not matches_etag(if_match, board.version):
        raise StaleState("board was modified", {"version": board.version})
    board = storage.update_board(board, user, **payload.model_dump(exclude_unset=True))
    return board_out(storage, board, user)


@app.delete("/v1/boards/{board_id}", status_code=204)
def delete_board(
    board_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    if storage.role_for(board.id, user) != "owner":
        raise Forbidden("only the owner can delete a board", {"boardId": board.id})
    storage.delete_board(board)
    publish(board_id, "board-deleted", {"id": board_id})
    return Response(status_code=204)


@app.post("/v1/boards/{board_id}/members", response_model=MemberOut, status_code=201)
def add_member(
    board_id: str,
    payload: MemberAdd,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, MANAGE_ROLES)
    membership = storage.add_member(board, payload.userId, payload.role, user)
    return MemberOut(boardId=board_id, userId=membership.user_id, role=membership.role)


@app.delete("/v1/boards/{board_id}/members/{member_id}", status_code=204)
def remove_member(
    board_id: str,
    member_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    if member_id != user:
        check_role(storage, board, user, MANAGE_ROLES)
    storage.remove_member(board, member_id, user)
    return Response(status_code=204)


@app.put("/v1/boards/{board_id}/favorite", response_model=FavoriteOut)
def toggle_favorite(
    board_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, READ_ROLES, allow_public=True)
    return FavoriteOut(boardId=board_id, isFavorite=storage.toggle_favorite(board, user))


@app.get("/v1/boards/{board_id}/activity", response_model=list[ActivityOut])
def board_activity(
    board_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, READ_ROLES, allow_public=True)
    entries = storage.activity(board.id, limit or get_settings().activity_page_size)
    return [activity_out(e) for e in entries]


@app.post("/v1/boards/{board_id}/reconcile", response_model=ReconcileOut)
def reconcile_board(
    board_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, MANAGE_ROLES)
    changed = storage.reconcile_board(board, user)
    if changed:
        publish(board_id, "board-reconciled", {"changed": changed})
    return ReconcileOut(changed=changed)


# === List endpoints ===


@app.post("/v1/boards/{board_id}/lists", response_model=ListOut, status_code=201)
def create_list(
    board_id: str,
    payload: ListCreate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = storage.get_board(board_id)
    check_role(storage, board, user, WRITE_ROLES)
    lst = list_out(storage.create_list(board, payload.title, user))
    publish(board_id, "list-created", lst.model_dump(mode="json"))
    return lst


@app.patch("/v1/lists/{list_id}", response_model=ListOut)
def rename_list(
    list_id: str,
    payload: ListUpdate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    lst = storage.get_list(list_id)
    check_role(storage, storage.get_board(lst.board_id), user, WRITE_ROLES)
    out = list_out(storage.rename_list(lst, payload.title, user))
    publish(out.boardId, "list-updated", out.model_dump(mode="json"))
    return out


@app.post("/v1/lists/{list_id}/archive", response_model=ListOut)
def archive_list(
    list_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    lst = storage.get_list(list_id)
    check_role(storage, storage.get_board(lst.board_id), user, WRITE_ROLES)
    out = list_out(storage.toggle_list_archive(lst, user))
    publish(out.boardId, "list-archived", {"id": out.id, "isArchived": out.isArchived})
    return out


@app.post("/v1/lists/{list_id}/move", response_model=ListMoveOut)
def move_list(
    list_id: str,
    payload: ListMove,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    lst = storage.get_list(list_id)
    board_id = lst.board_id
    check_role(storage, storage.get_board(board_id), user, WRITE_ROLES)
    result = storage.move_list(lst, payload.position, user)
    if not result.plan.is_noop:
        publish(board_id, "list-moved", move_payload(result, "BoardId"))
    return ListMoveOut(
        member=list_out(result.member),
        affectedIds=result.affected_ids,
        sourceOrder=result.source_order,
        destinationOrder=result.destination_order,
    )


@app.delete("/v1/lists/{list_id}", status_code=204)
def delete_list(
    list_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    lst = storage.get_list(list_id)
    board_id = lst.board_id
    check_role(storage, storage.get_board(board_id), user, WRITE_ROLES)
    result = storage.delete_list(lst, user)
    publish(board_id, "list-deleted", {"id": list_id, "affectedIds": result.affected_ids, "order": result.order})
    return Response(status_code=204)


# === Card endpoints ===


@app.post("/v1/lists/{list_id}/cards", response_model=CardOut, status_code=201)
def create_card(
    list_id: str,
    payload: CardCreate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    lst = storage.get_list(list_id)
    check_role(storage, storage.get_board(lst.board_id), user, WRITE_ROLES)
    card = storage.create_card(
        lst,
        user,
        payload.title,
        payload.description,
        payload.dueDate,
        payload.priority,
        [label.model_dump() for label in payload.labels],
    )
    out = card_out(card)
    publish(out.boardId, "card-created", out.model_dump(mode="json"))
    return out


@app.get("/v1/cards/{card_id}", response_model=CardOut)
def get_card(
    card_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    check_role(storage, storage.get_board(card.board_id), user, READ_ROLES, allow_public=True)
    return card_out(card)


@app.patch("/v1/cards/{card_id}", response_model=CardOut)
def update_card(
    card_id: str,
    payload: CardUpdate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    if_match: Optional[str] = Header(None, alias="If-Match"),
):
    card = storage.get_card(card_id)
    check_role(storage, storage.get_board(card.board_id), user, WRITE_ROLES)
    if not matches_etag(if_match, card.version):
        raise StaleState("card was modified", {"version": card.version})
    fields = payload.model_dump(exclude_unset=True)
    renamed = {"dueDate": "due_date", "isCompleted": "is_completed"}
    card = storage.update_card(card, user, **{renamed.get(k, k): v for k, v in fields.items()})
    out = card_out(card)
    publish(out.boardId, "card-updated", out.model_dump(mode="json"))
    return out


@app.post("/v1/cards/{card_id}/archive", response_model=CardOut)
def archive_card(
    card_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    check_role(storage, storage.get_board(card.board_id), user, WRITE_ROLES)
    out = card_out(storage.toggle_card_archive(card, user))
    publish(out.boardId, "card-archived", {"id": out.id, "isArchived": out.isArchived})
    return out


@app.post("/v1/cards/{card_id}/assign", response_model=CardOut)
def assign_card_member(
    card_id: str,
    payload: CardAssign,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    check_role(storage, storage.get_board(card.board_id), user, WRITE_ROLES)
    out = card_out(storage.assign_member(card, payload.userId, user))
    publish(out.boardId, "card-assigned", {"id": out.id, "userId": payload.userId, "assignees": out.assignees})
    return out


@app.delete("/v1/cards/{card_id}/assign/{member_id}", response_model=CardOut)
def unassign_card_member(
    card_id: str,
    member_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    check_role(storage, storage.get_board(card.board_id), user, WRITE_ROLES)
    out = card_out(storage.unassign_member(card, member_id, user))
    publish(out.boardId, "card-unassigned", {"id": out.id, "userId": member_id, "assignees": out.assignees})
    return out


@app.post("/v1/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
def add_card_comment(
    card_id: str,
    payload: CommentCreate,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    board_id = card.board_id
    check_role(storage, storage.get_board(board_id), user, WRITE_ROLES)
    comment = CommentOut(**storage.add_comment(card, user, payload.text))
    publish(board_id, "card-comment-added", {"id": card_id, "comment": comment.model_dump(mode="json")})
    return comment


@app.post("/v1/cards/{card_id}/move", response_model=CardMoveOut)
def move_card(
    card_id: str,
    payload: CardMove,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    board_id = card.board_id
    check_role(storage, storage.get_board(board_id), user, WRITE_ROLES)
    result = storage.move_card(card, payload.destinationListId, payload.position, user, payload.sourceListId)
    if not result.plan.is_noop:
        publish(board_id, "card-moved", move_payload(result, "ListId"))
    return CardMoveOut(
        member=card_out(result.member),
        affectedIds=result.affected_ids,
        sourceOrder=result.source_order,
        destinationOrder=result.destination_order,
    )


@app.delete("/v1/cards/{card_id}", status_code=204)
def delete_card(
    card_id: str,
    user: str = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = storage.get_card(card_id)
    board_id = card.board_id
    check_role(storage, storage.get_board(board_id), user, WRITE_ROLES)
    result = storage.delete_card(card, user)
    publish(
        board_id,
        "card-deleted",
        {"id": card_id, "listId": result.container_id, "affectedIds": result.affected_ids, "order": result.order},
    )
    return Response(status_code=204)


# === Realtime ===


def _authorize_subscriber(storage: Storage, board_id: str, token: Optional[str]) -> bool:
    user = user_from_token(token)
    if user is None:
        return False
    try:
        check_role(storage, storage.get_board(board_id), user, READ_ROLES, allow_public=True)
    except TaskboardError:
        return False
    return True


@app.websocket("/v1/boards/{board_id}/events")
async def board_events(
    websocket: WebSocket,
    board_id: str,
    token: Optional[str] = Query(None),
    storage: Storage = Depends(get_storage),
):
    if not await run_in_threadpool(_authorize_subscriber, storage, board_id, token):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await run_in_threadpool(storage.session.close)
    await stream_board_events(websocket, hub, board_id)
