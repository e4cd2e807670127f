"""Branch manager: named tip pointers into the message forest."""

import logging
from typing import Any, Dict, List, Optional, Set

from .errors import InvalidOperationError, NotFoundError
from .models import MAIN_BRANCH_ID, Branch, Chat, generate_branch_id, now_iso
from .tree import get_descendants, get_message_path

logger = logging.getLogger(__name__)


def _require_branch(chat: Chat, branch_id: str) -> Branch:
    branch = chat.get_branch(branch_id)
    if branch is None:
        raise NotFoundError(f'Branch "{branch_id}" not found')
    return branch


def create_branch(
    chat: Chat,
    fork_point_message_id: Optional[str] = None,
    name: Optional[str] = None,
) -> Branch:
    """Create a branch whose tip starts at the fork point.

    The new branch shares the whole history up to the fork point and only
    diverges once messages are added to it.
    """
    if fork_point_message_id and fork_point_message_id not in chat.messages:
        raise NotFoundError("Fork point message not found")

    branch = Branch(
        id=generate_branch_id(),
        name=name or f"Branch {len(chat.branches) + 1}",
        created_at=now_iso(),
        fork_point_message_id=fork_point_message_id or None,
        tip_message_id=fork_point_message_id or None,
        is_active=False,
    )
    chat.branches.append(branch)
    chat.touch()
    logger.info(f'Chat {chat.id}: created branch "{branch.name}" from {fork_point_message_id or "root"}')
    return branch


def set_active_branch(chat: Chat, branch_id: str) -> Branch:
    branch = _require_branch(chat, branch_id)
    for b in chat.branches:
        b.is_active = b.id == branch_id
    chat.active_branch_id = branch_id
    chat.touch()
    logger.info(f'Chat {chat.id}: switched to branch "{branch.name}"')
    return branch


def update_branch(chat: Chat, branch_id: str, name: Optional[str] = None) -> Branch:
    """Rename a branch; the name is the only mutable field."""
    branch = _require_branch(chat, branch_id)
    if name is not None:
        branch.name = name
    chat.touch()
    return branch


def _paths_in_use(chat: Chat) -> Set[str]:
    used: Set[str] = set()
    for b in list(chat.branches) + list(chat.deleted_branches):
        used.update(get_message_path(chat, b.tip_message_id))
    return used


def delete_branch(chat: Chat, branch_id: str, delete_messages: bool = False) -> List[str]:
    """Remove a branch pointer and return the ids of any messages removed.

    With ``delete_messages`` the messages after the fork point that no other
    branch path reaches are removed together with their descendants.
    Otherwise the branch record moves to ``deleted_branches`` and its
    messages are retained.
    """
    branch = _require_branch(chat, branch_id)
    if branch.id == MAIN_BRANCH_ID:
        raise InvalidOperationError("Cannot delete the main branch")

    chat.branches.remove(branch)
    removed: List[str] = []

    if delete_messages:
        path = get_message_path(chat, branch.tip_message_id)
        fork = branch.fork_point_message_id
        own = path[path.index(fork) + 1:] if fork in path else path
        in_use = _paths_in_use(chat)
        doomed: Set[str] = set()
        for mid in own:
            if mid in in_use or mid in doomed:
                continue
            doomed.add(mid)
            # Nothing below an unused message can be on a live path either.
            doomed.update(get_descendants(chat, mid))
        for mid in list(chat.messages):
            if mid in doomed:
                chat.remove_message(mid)
                removed.append(mid)
    else:
        branch.is_active = False
        chat.deleted_branches.append(branch)

    if chat.active_branch_id == branch_id:
        chat.active_branch_id = MAIN_BRANCH_ID
        for b in chat.branches:
            b.is_active = b.id == MAIN_BRANCH_ID

    chat.touch()
    logger.info(f'Chat {chat.id}: deleted branch "{branch.name}" ({len(removed)} messages removed)')
    return removed


def list_branches(chat: Chat) -> List[Dict[str, Any]]:
    """Branch documents in insertion order, each with its path length."""
    out: List[Dict[str, Any]] = []
    for b in chat.branches:
        doc = b.to_document()
        doc["messageCount"] = len(get_message_path(chat, b.tip_message_id))
        out.append(doc)
    return out
