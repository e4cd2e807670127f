"""Conversation tree storage for chatloom.

This package keeps chat messages as a forest of nodes, named branch pointers
into it, and the on-disk documents (with their migrations) that hold both.
"""

from .branches import create_branch, delete_branch, list_branches, set_active_branch, update_branch
from .config import Settings
from .errors import ChatStoreError, InvalidOperationError, NotFoundError, ValidationError
from .export import check_integrity, export_chat, parse_chat_document
from .messages import BRANCH_TIP, add_message, clear_messages
from .migrations import migrate_to_tree_structure
from .models import (
    CURRENT_SCHEMA_VERSION,
    MAIN_BRANCH_ID,
    Branch,
    Chat,
    Message,
    MessageRole,
    Result,
)
from .store import ChatStore
from .tree import (
    build_context,
    get_branch_messages,
    get_chat_history,
    get_children,
    get_descendants,
    get_leaf_nodes,
    get_message_path,
    get_tree_structure,
)
from .turns import TurnLogger
