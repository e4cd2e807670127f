"""Message store mutations.

These functions work on an in-memory ``Chat`` and raise ``ChatStoreError``
subclasses; persistence is the caller's job.
"""

import logging
from typing import Any, Dict, Optional

from .errors import InvalidOperationError, NotFoundError, ValidationError
from .models import (
    DEFAULT_TITLE_RE,
    MAIN_BRANCH_ID,
    Chat,
    Message,
    MessageRole,
    generate_message_id,
    new_main_branch,
    now_iso,
)
from .tree import count_user_messages, get_message_path

logger = logging.getLogger(__name__)

# Marks "no explicit parent given": the target branch tip is used.
BRANCH_TIP = object()

TITLE_WORDS = 5
TITLE_MAX_CHARS = 30

RESERVED_KEYS = {"id", "parentId", "parent_id", "role", "content", "timestamp", "turn"}


def _title_from(content: str) -> str:
    first_words = " ".join(content.split()[:TITLE_WORDS])
    if len(first_words) > TITLE_MAX_CHARS:
        return first_words[:TITLE_MAX_CHARS] + "..."
    return first_words


def add_message(
    chat: Chat,
    role: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    parent_id: Any = BRANCH_TIP,
    branch_id: Optional[str] = None,
) -> Message:
    """Append a message and advance the target branch tip to it.

    The parent is ``parent_id`` when given (``None`` starts a new root),
    otherwise the tip of ``branch_id`` or of the active branch.
    """
    try:
        role_value = MessageRole(role)
    except ValueError:
        raise ValidationError(f"Invalid role: {role}") from None

    target_id = branch_id or chat.active_branch_id
    branch = chat.get_branch(target_id)
    if branch is None:
        raise NotFoundError(f'Branch "{target_id}" not found')

    parent = branch.tip_message_id if parent_id is BRANCH_TIP else parent_id
    if parent is not None and parent not in chat.messages:
        raise NotFoundError(f'Parent message "{parent}" not found')

    parent_path = get_message_path(chat, parent)
    fork_point = branch.fork_point_message_id
    if fork_point and fork_point not in parent_path:
        raise InvalidOperationError(
            f'Parent "{parent}" is not on branch "{branch.id}" (fork point {fork_point})'
        )

    prior_turns = count_user_messages([chat.messages[mid] for mid in parent_path])
    now = now_iso()
    extra = {
        k: v for k, v in (metadata or {}).items()
        if k not in RESERVED_KEYS and v is not None
    }
    msg = Message(
        id=generate_message_id(),
        parent_id=parent,
        role=role_value,
        content=content,
        timestamp=now,
        turn=prior_turns + (1 if role_value == MessageRole.USER else 0),
        **extra,
    )

    chat.insert_message(msg)
    branch.tip_message_id = msg.id
    chat.updated_at = now

    if (
        len(chat.messages) == 1
        and role_value == MessageRole.USER
        and DEFAULT_TITLE_RE.match(chat.title or "")
    ):
        chat.title = _title_from(content)

    logger.debug(f"Chat {chat.id}: added {msg.id} on {branch.id} (parent {parent})")
    return msg


def clear_messages(chat: Chat) -> None:
    """Drop every message and branch, leaving a fresh, empty main branch."""
    chat.reset_messages()
    chat.branches = [new_main_branch(created_at=chat.created_at)]
    chat.deleted_branches = []
    chat.active_branch_id = MAIN_BRANCH_ID
    chat.touch()
