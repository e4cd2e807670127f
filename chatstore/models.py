"""Data models for the conversation tree.

A chat document holds a flat map of message nodes (a forest linked through
``parentId``) plus a list of named branch pointers into it. Documents are
persisted with camelCase keys, exactly as ``Chat.to_document()`` returns them.
"""

import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from .errors import ChatStoreError

CURRENT_SCHEMA_VERSION = 2
MAIN_BRANCH_ID = "branch-main"
MAIN_BRANCH_NAME = "Main"

# Titles produced by default_title() (and by older releases) count as placeholders.
DEFAULT_TITLE_RE = re.compile(r"^Chat [\d/.\-]+$")


# ----------------------------
# Helpers
# ----------------------------
def now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def default_title() -> str:
    return f"Chat {date.today().isoformat()}"


def generate_chat_id() -> str:
    return str(uuid.uuid4())


def generate_message_id() -> str:
    return f"msg-{uuid.uuid4()}"


def generate_branch_id() -> str:
    return f"branch-{uuid.uuid4()}"


# ----------------------------
# Models
# ----------------------------
class CamelModel(BaseModel):
    """Base model reading and writing camelCase document keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(CamelModel):
    """A node of the message forest.

    Optional metadata (provider, model, duration, debug, ...) is kept as
    extra keys so whatever the caller attached survives a save/load cycle.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    parent_id: Optional[str] = None
    role: MessageRole
    content: str = ""
    timestamp: Optional[str] = None
    turn: Optional[int] = None


class Branch(CamelModel):
    id: str
    name: str
    created_at: Optional[str] = None
    fork_point_message_id: Optional[str] = None
    tip_message_id: Optional[str] = None
    is_active: bool = False


class Chat(CamelModel):
    """A durable conversation: message forest, branch pointers and metadata.

    ``messages`` must only be mutated through ``insert_message`` and
    ``remove_message`` so the children index stays in step with it.
    """

    schema_version: int = CURRENT_SCHEMA_VERSION
    id: str
    template_id: Optional[str] = None
    title: str = Field(default_factory=default_title)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    provider_override: Optional[Any] = None
    messages: Dict[str, Message] = Field(default_factory=dict)
    branches: List[Branch] = Field(default_factory=list)
    active_branch_id: str = MAIN_BRANCH_ID
    deleted_branches: List[Branch] = Field(default_factory=list)

    _children: Optional[Dict[Optional[str], List[str]]] = PrivateAttr(default=None)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        for branch in self.branches:
            if branch.id == branch_id:
                return branch
        return None

    @property
    def active_branch(self) -> Optional[Branch]:
        return self.get_branch(self.active_branch_id)

    def children_index(self) -> Dict[Optional[str], List[str]]:
        """Map of parentId -> child ids in insertion order (roots under None)."""
        if self._children is None:
            index: Dict[Optional[str], List[str]] = {}
            for msg in self.messages.values():
                index.setdefault(msg.parent_id, []).append(msg.id)
            self._children = index
        return self._children

    def insert_message(self, message: Message) -> None:
        self.messages[message.id] = message
        if self._children is not None:
            self._children.setdefault(message.parent_id, []).append(message.id)

    def remove_message(self, message_id: str) -> Optional[Message]:
        message = self.messages.pop(message_id, None)
        if message is None or self._children is None:
            return message
        siblings = self._children.get(message.parent_id)
        if siblings and message_id in siblings:
            siblings.remove(message_id)
            if not siblings:
                del self._children[message.parent_id]
        return message

    def reset_messages(self) -> None:
        self.messages = {}
        self._children = None

    def touch(self) -> None:
        self.updated_at = now_iso()


def new_main_branch(created_at: Optional[str] = None, tip_message_id: Optional[str] = None) -> Branch:
    return Branch(
        id=MAIN_BRANCH_ID,
        name=MAIN_BRANCH_NAME,
        created_at=created_at or now_iso(),
        fork_point_message_id=None,
        tip_message_id=tip_message_id,
        is_active=True,
    )


class Result(BaseModel):
    """Uniform outcome of a store operation.

    Payload (``chat``, ``branch``, ``message`` ...) rides along as extra
    attributes on a successful result.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    success: bool = True
    error: Optional[str] = None
    error_code: Optional[str] = None
    status_code: int = Field(default=200, exclude=True)

    @classmethod
    def ok(cls, **payload: Any) -> "Result":
        return cls(success=True, **payload)

    @classmethod
    def fail(cls, exc: ChatStoreError) -> "Result":
        return cls(
            success=False,
            error=exc.message,
            error_code=exc.error_code,
            status_code=exc.status_code,
        )
