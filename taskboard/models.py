from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

Visibility = Literal["private", "public"]
Role = Literal["admin", "member", "observer"]
Priority = Literal["low", "medium", "high", "urgent"]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    requestId: Optional[str] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody


# === Boards ===


class BoardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    background: Optional[str] = Field(default=None, max_length=32)
    visibility: Visibility = "private"


class BoardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    background: Optional[str] = Field(default=None, max_length=32)
    visibility: Optional[Visibility] = None


class BoardOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    background: str
    visibility: str
    owner: str
    listIds: list[str]
    createdAt: datetime
    updatedAt: datetime
    version: int
    myRole: Optional[str]
    membersCount: int
    isFavorite: bool = False


class MemberAdd(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    role: Role = "member"


class FavoriteOut(BaseModel):
    boardId: str
    isFavorite: bool


class MemberOut(BaseModel):
    boardId: str
    userId: str
    role: str


class ActivityOut(BaseModel):
    id: int
    boardId: str
    userId: str
    action: str
    details: dict[str, Any]
    createdAt: datetime


# === Lists ===


class ListCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)


class ListUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=100)


class ListMove(BaseModel):
    position: int


class ListOut(BaseModel):
    id: str
    boardId: str
    title: str
    position: int
    cardIds: list[str]
    isArchived: bool
    createdAt: datetime
    updatedAt: datetime


# === Cards ===


class Label(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    color: str = Field(default="#61bd4f", max_length=32)


class CardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    dueDate: Optional[datetime] = None
    priority: Priority = "medium"
    labels: list[Label] = Field(default_factory=list)


class CardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    dueDate: Optional[datetime] = None
    priority: Optional[Priority] = None
    isCompleted: Optional[bool] = None
    labels: Optional[list[Label]] = None


class CardAssign(BaseModel):
    userId: str = Field(min_length=1, max_length=128)


class CommentCreate(BaseModel):
    text: str = Field(min_length=1, max_length=1000)


class CommentOut(BaseModel):
    id: str
    userId: str
    text: str
    createdAt: datetime


class CardMove(BaseModel):
    destinationListId: str
    position: int
    sourceListId: Optional[str] = None


class CardOut(BaseModel):
    id: str
    boardId: str
    listId: str
    title: str
    description: Optional[str]
    position: int
    dueDate: Optional[datetime]
    priority: str
    isCompleted: bool
    labels: list[Label]
    assignees: list[str] = Field(default_factory=list)
    comments: list[CommentOut] = Field(default_factory=list)
    isArchived: bool
    createdAt: datetime
    updatedAt: datetime
    version: int


class ListWithCards(ListOut):
    cards: list[CardOut]


class BoardView(BaseModel):
    board: BoardOut
    lists: list[ListWithCards]


# === Position changes ===


class ListMoveOut(BaseModel):
    member: ListOut
    affectedIds: list[str]
    sourceOrder: list[str]
    destinationOrder: list[str]


class CardMoveOut(BaseModel):
    member: CardOut
    affectedIds: list[str]
    sourceOrder: list[str]
    destinationOrder: list[str]


class ReconcileOut(BaseModel):
    changed: dict[str, list[str]]
