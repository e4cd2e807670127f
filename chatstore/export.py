"""Export chats as markdown or JSON and read JSON exports back."""

import json
from typing import List, Optional, Tuple

import pydantic
import yaml

from .errors import NotFoundError, ValidationError
from .migrations import migrate_to_tree_structure
from .models import MAIN_BRANCH_ID, Chat, MessageRole
from .tree import get_branch_messages, get_message_path

EXPORT_FORMATS = ("json", "markdown")


def _markdown(chat: Chat, branch_id: str) -> str:
    branch = chat.get_branch(branch_id)
    messages = get_branch_messages(chat, branch_id)
    meta = {
        "chatId": chat.id,
        "template": chat.template_id,
        "created": chat.created_at,
        "branch": branch.name,
        "messageCount": len(messages),
    }
    front = "---\n" + yaml.safe_dump(meta, sort_keys=False).strip() + "\n---\n\n"
    parts = [f"# {chat.title}\n\n", front]
    for m in messages:
        label = "**User**" if m.role == MessageRole.USER else "**Assistant**"
        parts.append(f"{label}:\n\n{m.content}\n\n")
    return "".join(parts)


def export_chat(chat: Chat, fmt: str = "json", branch_id: Optional[str] = None) -> Tuple[str, str]:
    """Return ``(format, content)``.

    ``markdown`` renders one branch (default: active) root to tip; ``json``
    is the whole chat document with every branch.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"Unsupported export format: {fmt}")
    if fmt == "markdown":
        target = branch_id or chat.active_branch_id
        if chat.get_branch(target) is None:
            raise NotFoundError(f'Branch "{target}" not found')
        return fmt, _markdown(chat, target)
    return fmt, json.dumps(chat.to_document(), indent=2, ensure_ascii=False)


def _find_cycles(chat: Chat) -> List[str]:
    problems: List[str] = []
    settled = set()
    for start in chat.messages:
        trail: List[str] = []
        current = start
        while current in chat.messages and current not in settled:
            if current in trail:
                cycle = trail[trail.index(current):]
                problems.append(f"messages {' -> '.join(cycle)} form a cycle")
                break
            trail.append(current)
            current = chat.messages[current].parent_id
        settled.update(trail)
    return problems


def check_integrity(chat: Chat) -> List[str]:
    """List structural problems; an empty list means the chat is consistent."""
    problems: List[str] = []
    bad_keys = [key for key, msg in chat.messages.items() if key != msg.id]
    for key in bad_keys:
        problems.append(f"message key {key} does not match its id {chat.messages[key].id}")
    if bad_keys:
        return problems
    problems.extend(_find_cycles(chat))

    for msg in chat.messages.values():
        if msg.parent_id is not None and msg.parent_id not in chat.messages:
            problems.append(f"message {msg.id} has missing parent {msg.parent_id}")

    if chat.get_branch(MAIN_BRANCH_ID) is None:
        problems.append("main branch missing")
    active = [b.id for b in chat.branches if b.is_active]
    if active != [chat.active_branch_id]:
        problems.append(f"active flags {active} do not match activeBranchId {chat.active_branch_id}")

    for b in chat.branches:
        if b.tip_message_id is None:
            continue
        path = get_message_path(chat, b.tip_message_id)
        if not path:
            problems.append(f"branch {b.id} tip {b.tip_message_id} not found")
        elif chat.messages[path[0]].parent_id is not None:
            problems.append(f"branch {b.id} tip is not reachable from a root")
        elif b.fork_point_message_id and b.fork_point_message_id not in path:
            problems.append(f"branch {b.id} tip does not descend from its fork point")
    return problems


def parse_chat_document(content: str) -> Chat:
    """Read a JSON export back into a ``Chat``, migrating older schemas."""
    try:
        doc = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}") from e
    if not isinstance(doc, dict) or not doc.get("id"):
        raise ValidationError("Chat document must be an object with an id")

    try:
        chat = Chat.model_validate(migrate_to_tree_structure(doc))
    except (pydantic.ValidationError, ValueError) as e:
        raise ValidationError(f"Invalid chat document: {e}") from e

    problems = check_integrity(chat)
    if problems:
        raise ValidationError("Inconsistent chat document", details={"problems": problems})
    return chat
