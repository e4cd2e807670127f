"""Schema migration of chat documents.

v1 documents keep ``messages`` as an ordered list (one implicit linear
branch). v2 documents keep an id-keyed map linked through ``parentId`` plus
explicit branches. Migration works on the raw JSON dict, before validation.
"""

import logging
from typing import Any, Dict

from .models import (
    CURRENT_SCHEMA_VERSION,
    MAIN_BRANCH_ID,
    default_title,
    generate_message_id,
    new_main_branch,
    now_iso,
)

logger = logging.getLogger(__name__)

METADATA_KEYS = ("provider", "model", "duration", "debug")
ROLES = ("user", "assistant")


def needs_migration(doc: Dict[str, Any]) -> bool:
    return doc.get("schemaVersion") != CURRENT_SCHEMA_VERSION


def migrate_to_tree_structure(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``doc`` as a current-schema document.

    A document already at the current version is returned unchanged. Each v1
    message gets a fresh id and the previous message as its parent, and a
    single main branch points at the last one. Messages with a role other
    than user or assistant are dropped.
    """
    version = doc.get("schemaVersion")
    if version == CURRENT_SCHEMA_VERSION:
        return doc
    if isinstance(version, int) and version > CURRENT_SCHEMA_VERSION:
        raise ValueError(f"Unsupported chat schema version: {version}")

    title = doc.get("title") or default_title()
    logger.info(f'Migrating chat "{title}" to tree structure')

    messages: Dict[str, Dict[str, Any]] = {}
    prev_id = None
    turn = 0
    for index, raw in enumerate(doc.get("messages") or []):
        if not isinstance(raw, dict) or raw.get("role") not in ROLES:
            logger.warning(f"Dropping v1 message #{index}: unsupported role")
            continue
        msg_id = generate_message_id()
        if raw.get("role") == "user":
            turn += 1
        entry: Dict[str, Any] = {
            "id": msg_id,
            "parentId": prev_id,
            "role": raw.get("role"),
            "content": raw.get("content") or "",
            "timestamp": raw.get("timestamp"),
            "turn": turn,
        }
        for key in METADATA_KEYS:
            if raw.get(key):
                entry[key] = raw[key]
        messages[msg_id] = entry
        prev_id = msg_id

    created_at = doc.get("createdAt") or now_iso()
    migrated = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "id": doc.get("id"),
        "templateId": doc.get("templateId"),
        "title": title,
        "createdAt": created_at,
        "updatedAt": doc.get("updatedAt") or created_at,
        "providerOverride": doc.get("providerOverride"),
        "messages": messages,
        "branches": [new_main_branch(created_at=created_at, tip_message_id=prev_id).to_document()],
        "activeBranchId": MAIN_BRANCH_ID,
        "deletedBranches": [],
    }

    logger.info(f"Migrated {len(messages)} messages to tree structure")
    return migrated
