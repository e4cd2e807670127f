"""Read-only traversal of the message forest.

Children lookups go through the chat's parentId -> children index, so every
query here is proportional to the part of the tree it visits.
"""

import logging
from typing import Any, Dict, List, Optional

from .models import Chat, Message, MessageRole

logger = logging.getLogger(__name__)


# ----------------------------
# Paths
# ----------------------------
def get_message_path(chat: Chat, message_id: Optional[str]) -> List[str]:
    """Return message ids from the root down to ``message_id`` (inclusive).

    A parent that is missing from the chat ends the walk there: the path is
    truncated rather than treated as an error.
    """
    if not message_id or message_id not in chat.messages:
        return []

    path: List[str] = []
    seen = set()
    current: Optional[str] = message_id
    while current:
        msg = chat.messages.get(current)
        if msg is None:
            logger.warning(f"Chat {chat.id}: parent {current} missing, path truncated")
            break
        if current in seen:
            logger.warning(f"Chat {chat.id}: cycle at {current}, path truncated")
            break
        seen.add(current)
        path.append(current)
        current = msg.parent_id

    path.reverse()
    return path


def get_branch_messages(chat: Chat, branch_id: str) -> List[Message]:
    """Transcript of a branch: every message on its root -> tip path."""
    branch = chat.get_branch(branch_id)
    if branch is None:
        return []
    return [chat.messages[mid] for mid in get_message_path(chat, branch.tip_message_id)]


def count_user_messages(messages: List[Message]) -> int:
    return sum(1 for m in messages if m.role == MessageRole.USER)


# ----------------------------
# Structure queries
# ----------------------------
def get_children(chat: Chat, message_id: Optional[str]) -> List[Message]:
    return [chat.messages[cid] for cid in chat.children_index().get(message_id, [])]


def get_descendants(chat: Chat, message_id: str) -> List[str]:
    """All descendant ids, depth-first (children, then their subtrees)."""
    index = chat.children_index()
    out: List[str] = []
    stack = list(reversed(index.get(message_id, [])))
    while stack:
        mid = stack.pop()
        out.append(mid)
        stack.extend(reversed(index.get(mid, [])))
    return out


def get_leaf_nodes(chat: Chat) -> List[str]:
    """Ids of messages that no other message names as its parent."""
    index = chat.children_index()
    return [mid for mid in chat.messages if not index.get(mid)]


def _preview(content: str, length: int) -> str:
    content = content or ""
    return content[:length] + ("..." if len(content) > length else "")


def get_tree_structure(chat: Chat, preview_length: int = 50) -> List[Dict[str, Any]]:
    """
    Nested view of the whole forest for rendering.

    Example node:
        {"id": ..., "role": "user", "preview": "Hello...", "timestamp": ...,
         "children": [...]}
    """
    index = chat.children_index()

    def make_node(msg: Message) -> Dict[str, Any]:
        return {
            "id": msg.id,
            "role": msg.role.value,
            "preview": _preview(msg.content, preview_length),
            "timestamp": msg.timestamp,
            "children": [],
        }

    roots = [make_node(chat.messages[mid]) for mid in index.get(None, [])]
    # Iterative so very long linear chats do not hit the recursion limit.
    stack = list(roots)
    while stack:
        node = stack.pop()
        for cid in index.get(node["id"], []):
            child = make_node(chat.messages[cid])
            node["children"].append(child)
            stack.append(child)
    return roots


# ----------------------------
# Prompt context
# ----------------------------
def get_chat_history(chat: Chat, max_messages: int = 20, branch_id: Optional[str] = None) -> List[str]:
    """Last ``max_messages`` of a branch as ``"User: ..."`` / ``"Assistant: ..."`` lines."""
    messages = get_branch_messages(chat, branch_id or chat.active_branch_id)
    recent = messages[-max_messages:] if max_messages > 0 else []
    return [
        f"{'User' if m.role == MessageRole.USER else 'Assistant'}: {m.content}"
        for m in recent
    ]


def build_context(
    chat: Chat,
    branch_id: Optional[str],
    system_prompt: str,
    max_messages: Optional[int] = None,
) -> List[Dict[str, str]]:
    """
    Build context array for OpenAI API calls.

    Context is the system prompt followed by the branch transcript (shared
    ancestors included), optionally limited to the most recent messages.
    """
    messages = get_branch_messages(chat, branch_id or chat.active_branch_id)
    if max_messages is not None:
        messages = messages[-max_messages:] if max_messages > 0 else []

    out: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    out.extend(
        {"role": m.role.value, "content": m.content}
        for m in messages
        if m.content
    )
    return out
