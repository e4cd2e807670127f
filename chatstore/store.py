"""Durable chat store.

Layout under ``chats_dir``::

    <chatId>/chat.json            the chat document
    <chatId>/turns/...            per-turn debug artifacts (see turns.py)
    <chatId>.json                 old flat layout, moved into a folder on first access

Every mutation is a read-modify-write of the whole document, written to a
temp file and renamed into place.
"""

import json
import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import branches as branch_ops
from . import messages as message_ops
from .config import Settings
from .errors import ChatStoreError, InvalidOperationError, NotFoundError, ValidationError
from .export import export_chat, parse_chat_document
from .migrations import migrate_to_tree_structure, needs_migration
from .models import (
    CURRENT_SCHEMA_VERSION,
    Chat,
    Result,
    default_title,
    generate_chat_id,
    new_main_branch,
    now_iso,
)
from .tree import get_branch_messages, get_chat_history, get_tree_structure

logger = logging.getLogger(__name__)

CHAT_FILE = "chat.json"
TURNS_DIR = "turns"
CHAT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
UPDATABLE_FIELDS = ("title", "template_id", "provider_override")


# ----------------------------
# File I/O Helpers
# ----------------------------
def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: Any) -> None:
    """Write JSON through a temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _updated_sort_key(summary: Dict[str, Any]) -> datetime:
    try:
        ts = datetime.fromisoformat(summary.get("updatedAt") or "")
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class ChatStore:
    """File-backed store of chat documents rooted at one directory.

    Construct one per process (or per test) and pass it to collaborators.
    Public operations return a ``Result``; filesystem and JSON errors
    propagate.
    """

    def __init__(
        self,
        chats_dir: Path,
        legacy_dir: Optional[Path] = None,
        preview_length: int = 50,
    ):
        self.chats_dir = Path(chats_dir)
        self.legacy_dir = Path(legacy_dir) if legacy_dir else None
        self.preview_length = preview_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatStore":
        return cls(
            settings.chats_dir,
            legacy_dir=settings.legacy_chats_dir,
            preview_length=settings.preview_length,
        )

    # ----------------------------
    # Paths
    # ----------------------------
    @staticmethod
    def is_valid_id(chat_id: str) -> bool:
        return bool(chat_id) and bool(CHAT_ID_RE.match(chat_id))

    def chat_dir(self, chat_id: str) -> Path:
        return self.chats_dir / chat_id

    def chat_path(self, chat_id: str) -> Path:
        return self.chat_dir(chat_id) / CHAT_FILE

    def turns_dir(self, chat_id: str) -> Path:
        return self.chat_dir(chat_id) / TURNS_DIR

    def legacy_path(self, chat_id: str) -> Path:
        return self.chats_dir / f"{chat_id}.json"

    def ensure_chat_dir(self, chat_id: str) -> None:
        self.turns_dir(chat_id).mkdir(parents=True, exist_ok=True)

    def chat_exists(self, chat_id: str) -> bool:
        if not self.is_valid_id(chat_id):
            return False
        return self.chat_path(chat_id).exists() or self.legacy_path(chat_id).exists()

    # ----------------------------
    # Layout migrations
    # ----------------------------
    def migrate_chat_to_folder(self, chat_id: str) -> bool:
        """Move ``<id>.json`` to ``<id>/chat.json``; the old file goes last."""
        legacy = self.legacy_path(chat_id)
        if not legacy.exists():
            return False

        if self.chat_path(chat_id).exists():
            # A previous run wrote the folder copy but stopped before the unlink.
            logger.warning(f"Chat {chat_id}: folder copy already present, removing stale {legacy.name}")
            legacy.unlink()
            return False

        data = read_json(legacy)
        self.ensure_chat_dir(chat_id)
        write_json(self.chat_path(chat_id), data)
        legacy.unlink()
        logger.info(f"Migrated chat {chat_id} to folder format")
        return True

    def migrate_from_legacy(self) -> int:
        """Import flat chat files from the old chats directory."""
        if not self.legacy_dir or not self.legacy_dir.is_dir():
            return 0

        migrated = 0
        for src in sorted(self.legacy_dir.glob("*.json")):
            chat_id = src.stem
            if not self.is_valid_id(chat_id) or self.chat_exists(chat_id):
                continue
            write_json(self.legacy_path(chat_id), read_json(src))
            src.unlink()
            migrated += 1
        return migrated

    def initialize(self) -> None:
        self.chats_dir.mkdir(parents=True, exist_ok=True)
        migrated = self.migrate_from_legacy()
        if migrated:
            logger.info(f"Imported {migrated} chat(s) from {self.legacy_dir}")
        logger.info(f"Chat store initialized at {self.chats_dir} ({len(self.list_chats())} chats)")

    # ----------------------------
    # Document access
    # ----------------------------
    def _write_chat(self, chat: Chat) -> None:
        self.ensure_chat_dir(chat.id)
        write_json(self.chat_path(chat.id), chat.to_document())

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Load a chat, running both migrations; ``None`` if it does not exist."""
        if not self.is_valid_id(chat_id):
            return None
        self.chats_dir.mkdir(parents=True, exist_ok=True)

        if self.legacy_path(chat_id).exists():
            self.migrate_chat_to_folder(chat_id)

        path = self.chat_path(chat_id)
        if not path.exists():
            return None

        doc = read_json(path)
        if not needs_migration(doc):
            return Chat.model_validate(doc)
        chat = Chat.model_validate(migrate_to_tree_structure(doc))
        write_json(path, chat.to_document())
        return chat

    def _require_chat(self, chat_id: str) -> Chat:
        chat = self.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f'Chat "{chat_id}" not found')
        return chat

    def _apply(self, chat_id: str, op: Callable[[Chat], Dict[str, Any]], persist: bool = True) -> Result:
        try:
            chat = self._require_chat(chat_id)
            payload = op(chat)
        except ChatStoreError as e:
            return Result.fail(e)
        if persist:
            self._write_chat(chat)
        return Result.ok(chat=chat, **payload)

    # ----------------------------
    # Chat CRUD
    # ----------------------------
    def list_chats(self) -> List[Dict[str, Any]]:
        """Chat summaries (no messages), most recently updated first."""
        self.chats_dir.mkdir(parents=True, exist_ok=True)
        out: List[Dict[str, Any]] = []

        for entry in sorted(self.chats_dir.iterdir()):
            if entry.is_file() and entry.suffix == ".json" and self.is_valid_id(entry.stem):
                self.migrate_chat_to_folder(entry.stem)
                entry = self.chat_dir(entry.stem)
            if not entry.is_dir():
                continue
            path = entry / CHAT_FILE
            if not path.exists():
                continue
            data = read_json(path)
            if any(s["id"] == data.get("id") for s in out):
                continue

            messages = data.get("messages") or {}
            out.append({
                "id": data.get("id"),
                "templateId": data.get("templateId"),
                "title": data.get("title"),
                "createdAt": data.get("createdAt"),
                "updatedAt": data.get("updatedAt"),
                "messageCount": len(messages),
                "providerOverride": data.get("providerOverride"),
                "branchCount": len(data.get("branches") or []) or 1,
            })

        out.sort(key=_updated_sort_key, reverse=True)
        return out

    def create_chat(
        self,
        template_id: str,
        title: Optional[str] = None,
        provider_override: Optional[Any] = None,
    ) -> Result:
        if not template_id:
            return Result.fail(ValidationError("templateId required"))

        now = now_iso()
        chat = Chat(
            schema_version=CURRENT_SCHEMA_VERSION,
            id=generate_chat_id(),
            template_id=template_id,
            title=title or default_title(),
            created_at=now,
            updated_at=now,
            provider_override=provider_override,
            branches=[new_main_branch(created_at=now)],
        )
        self._write_chat(chat)
        logger.info(f"Created chat: {chat.title} ({chat.id})")
        return Result.ok(chat=chat)

    def update_chat(self, chat_id: str, updates: Dict[str, Any]) -> Result:
        """Update title, template id and/or provider override."""

        def op(chat: Chat) -> Dict[str, Any]:
            title = updates.get("title", chat.title)
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("title must be a non-empty string")
            for key in UPDATABLE_FIELDS:
                if key in updates:
                    setattr(chat, key, updates[key])
            chat.touch()
            logger.info(f"Updated chat: {chat.title}")
            return {}

        return self._apply(chat_id, op)

    def delete_chat(self, chat_id: str) -> Result:
        if not self.is_valid_id(chat_id):
            return Result.fail(NotFoundError(f'Chat "{chat_id}" not found'))

        legacy = self.legacy_path(chat_id)
        folder = self.chat_dir(chat_id)
        if not legacy.exists() and not self.chat_path(chat_id).exists():
            return Result.fail(NotFoundError(f'Chat "{chat_id}" not found'))

        source = self.chat_path(chat_id) if self.chat_path(chat_id).exists() else legacy
        title = read_json(source).get("title")
        if legacy.exists():
            legacy.unlink()
        if folder.exists():
            shutil.rmtree(folder)

        logger.info(f"Deleted chat: {title}")
        return Result.ok(message=f'Deleted chat "{title}"')

    def import_chat(self, content: str, overwrite: bool = False) -> Result:
        """Store a chat from its JSON export, keeping its id."""
        try:
            chat = parse_chat_document(content)
            if not self.is_valid_id(chat.id):
                raise ValidationError(f'Invalid chat id "{chat.id}"')
            if self.chat_exists(chat.id) and not overwrite:
                raise InvalidOperationError(f'Chat "{chat.id}" already exists')
        except ChatStoreError as e:
            return Result.fail(e)

        self._write_chat(chat)
        logger.info(f"Imported chat: {chat.title} ({chat.id})")
        return Result.ok(chat=chat)

    # ----------------------------
    # Messages
    # ----------------------------
    def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        parent_id: Any = message_ops.BRANCH_TIP,
        branch_id: Optional[str] = None,
    ) -> Result:
        return self._apply(
            chat_id,
            lambda chat: {
                "message": message_ops.add_message(
                    chat, role, content, metadata=metadata, parent_id=parent_id, branch_id=branch_id
                )
            },
        )

    def get_messages(
        self,
        chat_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        branch_id: Optional[str] = None,
    ) -> Result:
        """One branch transcript (default: active), optionally paginated."""

        def op(chat: Chat) -> Dict[str, Any]:
            target = branch_id or chat.active_branch_id
            if chat.get_branch(target) is None:
                raise NotFoundError(f'Branch "{target}" not found')
            messages = get_branch_messages(chat, target)
            page = messages[offset:] if offset > 0 else messages
            if limit:
                page = page[:limit]
            return {"messages": page, "total": len(messages), "branch_id": target}

        return self._apply(chat_id, op, persist=False)

    def clear_messages(self, chat_id: str) -> Result:
        def op(chat: Chat) -> Dict[str, Any]:
            message_ops.clear_messages(chat)
            logger.info(f"Cleared messages in chat: {chat.title}")
            return {"message": f'Cleared messages in "{chat.title}"'}

        return self._apply(chat_id, op)

    def get_chat_history(
        self,
        chat_id: str,
        max_messages: int = 20,
        branch_id: Optional[str] = None,
    ) -> List[str]:
        chat = self.get_chat(chat_id)
        if chat is None:
            return []
        return get_chat_history(chat, max_messages, branch_id)

    # ----------------------------
    # Branches
    # ----------------------------
    def create_branch(
        self,
        chat_id: str,
        fork_point_message_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Result:
        return self._apply(
            chat_id,
            lambda chat: {"branch": branch_ops.create_branch(chat, fork_point_message_id, name)},
        )

    def set_active_branch(self, chat_id: str, branch_id: str) -> Result:
        return self._apply(chat_id, lambda chat: {"branch": branch_ops.set_active_branch(chat, branch_id)})

    def update_branch(self, chat_id: str, branch_id: str, name: Optional[str] = None) -> Result:
        return self._apply(chat_id, lambda chat: {"branch": branch_ops.update_branch(chat, branch_id, name)})

    def delete_branch(self, chat_id: str, branch_id: str, delete_messages: bool = False) -> Result:
        def op(chat: Chat) -> Dict[str, Any]:
            name = chat.get_branch(branch_id).name if chat.get_branch(branch_id) else branch_id
            removed = branch_ops.delete_branch(chat, branch_id, delete_messages)
            return {"message": f'Deleted branch "{name}"', "removed_message_ids": removed}

        return self._apply(chat_id, op)

    def list_branches(self, chat_id: str) -> Result:
        return self._apply(
            chat_id, lambda chat: {"branches": branch_ops.list_branches(chat)}, persist=False
        )

    # ----------------------------
    # Views
    # ----------------------------
    def get_tree(self, chat_id: str) -> Result:
        return self._apply(
            chat_id,
            lambda chat: {
                "tree": get_tree_structure(chat, self.preview_length),
                "branches": chat.branches,
                "active_branch_id": chat.active_branch_id,
            },
            persist=False,
        )

    def export_chat(self, chat_id: str, fmt: str = "json", branch_id: Optional[str] = None) -> Result:
        def op(chat: Chat) -> Dict[str, Any]:
            out_format, content = export_chat(chat, fmt, branch_id)
            return {"format": out_format, "content": content}

        return self._apply(chat_id, op, persist=False)
