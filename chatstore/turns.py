"""Per-turn debug artifacts.

A turn is one user message plus its reply. Artifacts live next to the chat
document, independent of it::

    <chatId>/turns/0003/{request,response,memory}.json                main branch
    <chatId>/turns/<branchId>/0003/{request,response,memory}.json     other branches

Only main-branch turns sit directly under ``turns/``, so a reader that only
knows the flat ``turns/<NNNN>/`` layout sees main-branch turns alone; turns of
any other branch are nested one level deeper under the branch id.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import MAIN_BRANCH_ID
from .store import ChatStore, read_json, write_json
from .tree import count_user_messages, get_branch_messages

logger = logging.getLogger(__name__)

ARTIFACTS = ("request", "response", "memory")


class TurnLogger:
    def __init__(self, store: ChatStore):
        self.store = store

    def turn_dir(self, chat_id: str, turn_number: int, branch_id: Optional[str] = None) -> Path:
        if not self.store.is_valid_id(chat_id) or (branch_id and not self.store.is_valid_id(branch_id)):
            raise ValueError(f"Invalid turn location: {chat_id}/{branch_id}")
        base = self.store.turns_dir(chat_id)
        if branch_id and branch_id != MAIN_BRANCH_ID:
            base = base / branch_id
        return base / f"{int(turn_number):04d}"

    def current_turn_number(self, chat_id: str, branch_id: Optional[str] = None) -> int:
        """Turn number at the tip of a branch (default: active); 0 if none.

        Uses the number stamped on the tip message when present.
        """
        chat = self.store.get_chat(chat_id)
        if chat is None:
            return 0
        branch = chat.get_branch(branch_id or chat.active_branch_id)
        if branch is None or branch.tip_message_id is None:
            return 0
        tip = chat.messages.get(branch.tip_message_id)
        if tip is not None and tip.turn is not None:
            return tip.turn
        return count_user_messages(get_branch_messages(chat, branch.id))

    def _write(self, kind: str, chat_id: str, turn_number: int, data: Any, branch_id: Optional[str]) -> Path:
        path = self.turn_dir(chat_id, turn_number, branch_id) / f"{kind}.json"
        write_json(path, data)
        logger.debug(f"Chat {chat_id}: wrote turn {turn_number} {kind}")
        return path

    def log_request(self, chat_id: str, turn_number: int, data: Any, branch_id: Optional[str] = None) -> Path:
        """What was sent to the model."""
        return self._write("request", chat_id, turn_number, data, branch_id)

    def log_response(self, chat_id: str, turn_number: int, data: Any, branch_id: Optional[str] = None) -> Path:
        """What the model returned."""
        return self._write("response", chat_id, turn_number, data, branch_id)

    def log_memory(self, chat_id: str, turn_number: int, data: Any, branch_id: Optional[str] = None) -> Path:
        """Memories used and created during the turn."""
        return self._write("memory", chat_id, turn_number, data, branch_id)

    def log_turn(
        self,
        chat_id: str,
        turn_number: int,
        request: Any = None,
        response: Any = None,
        memory: Any = None,
        branch_id: Optional[str] = None,
    ) -> None:
        if request is not None:
            self.log_request(chat_id, turn_number, request, branch_id)
        if response is not None:
            self.log_response(chat_id, turn_number, response, branch_id)
        if memory is not None:
            self.log_memory(chat_id, turn_number, memory, branch_id)

    def get_turn_logs(
        self, chat_id: str, turn_number: int, branch_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        turn_dir = self.turn_dir(chat_id, turn_number, branch_id)
        if not turn_dir.is_dir():
            return None
        logs: Dict[str, Any] = {}
        for kind in ARTIFACTS:
            path = turn_dir / f"{kind}.json"
            if path.exists():
                logs[kind] = read_json(path)
        return logs

    def list_turns(self, chat_id: str, branch_id: Optional[str] = None) -> List[int]:
        base = self.turn_dir(chat_id, 0, branch_id).parent
        if not base.is_dir():
            return []
        return sorted(int(p.name) for p in base.iterdir() if p.is_dir() and p.name.isdigit())
