"""Unit tests for message store mutations."""

import pytest

from chatstore.branches import create_branch
from chatstore.errors import InvalidOperationError, NotFoundError, ValidationError
from chatstore.messages import add_message, clear_messages
from chatstore.models import MAIN_BRANCH_ID


class TestAddMessage:
    """Test cases for add_message."""

    def test_sequential_messages_chain(self, chat):
        msg1 = add_message(chat, "user", "Hello")
        msg2 = add_message(chat, "assistant", "Hi")

        assert msg1.parent_id is None
        assert msg2.parent_id == msg1.id
        assert chat.get_branch(MAIN_BRANCH_ID).tip_message_id == msg2.id
        assert msg1.id.startswith("msg-")

    def test_updates_timestamp(self, chat):
        chat.updated_at = "2000-01-01T00:00:00.000+00:00"
        msg = add_message(chat, "user", "Hello")
        assert chat.updated_at == msg.timestamp

    def test_metadata_is_kept(self, chat):
        msg = add_message(
            chat, "assistant", "Hi", metadata={"provider": "openai", "model": "gpt-4o-mini", "duration": 42}
        )
        doc = msg.to_document()
        assert doc["provider"] == "openai"
        assert doc["model"] == "gpt-4o-mini"
        assert doc["duration"] == 42

    def test_metadata_cannot_override_structure(self, chat):
        msg = add_message(chat, "user", "Hello", metadata={"id": "evil", "parentId": "x"})
        assert msg.id != "evil"
        assert msg.parent_id is None

    def test_explicit_none_parent_starts_new_root(self, linear_chat):
        chat, _, _ = linear_chat
        root = add_message(chat, "user", "Fresh start", parent_id=None)
        assert root.parent_id is None
        assert chat.get_branch(MAIN_BRANCH_ID).tip_message_id == root.id

    def test_unknown_parent_rejected(self, chat):
        with pytest.raises(NotFoundError):
            add_message(chat, "user", "Hello", parent_id="msg-missing")
        assert chat.messages == {}

    def test_unknown_branch_rejected(self, chat):
        with pytest.raises(NotFoundError) as exc_info:
            add_message(chat, "user", "Hello", branch_id="branch-nope")
        assert "branch-nope" in exc_info.value.message

    def test_invalid_role_rejected(self, chat):
        with pytest.raises(ValidationError):
            add_message(chat, "system", "Hello")

    def test_parent_must_stay_below_fork_point(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        branch = create_branch(chat, fork_point_message_id=msg2.id)
        with pytest.raises(InvalidOperationError):
            add_message(chat, "user", "Sideways", parent_id=msg1.id, branch_id=branch.id)

    def test_turn_numbers_are_stamped(self, chat):
        u1 = add_message(chat, "user", "one")
        a1 = add_message(chat, "assistant", "reply one")
        u2 = add_message(chat, "user", "two")
        a2 = add_message(chat, "assistant", "reply two")
        assert [u1.turn, a1.turn, u2.turn, a2.turn] == [1, 1, 2, 2]

    def test_turn_numbers_follow_the_branch_path(self, chat):
        u1 = add_message(chat, "user", "one")
        add_message(chat, "assistant", "reply one")
        add_message(chat, "user", "two on main")
        branch = create_branch(chat, fork_point_message_id=u1.id)
        alt = add_message(chat, "assistant", "other reply", branch_id=branch.id)
        alt_user = add_message(chat, "user", "two on branch", branch_id=branch.id)
        assert alt.turn == 1
        assert alt_user.turn == 2


class TestTitleDerivation:
    """Test cases for automatic chat titles."""

    def test_first_user_message_replaces_placeholder(self, chat):
        add_message(chat, "user", "How do I bake sourdough bread at home?")
        assert chat.title == "How do I bake sourdough"

    def test_long_words_are_truncated(self, chat):
        add_message(chat, "user", "Supercalifragilistic expialidocious antidisestablishment words")
        assert chat.title == "Supercalifragilistic expialido..."

    def test_custom_title_is_kept(self, chat):
        chat.title = "Chat about bread"
        add_message(chat, "user", "How do I bake sourdough bread?")
        assert chat.title == "Chat about bread"

    def test_only_first_message_sets_title(self, chat):
        add_message(chat, "assistant", "Welcome!")
        add_message(chat, "user", "Hello")
        assert chat.title.startswith("Chat ")


class TestClearMessages:
    """Test cases for clear_messages."""

    def test_resets_to_empty_main_branch(self, linear_chat):
        chat, msg1, _ = linear_chat
        branch = create_branch(chat, fork_point_message_id=msg1.id)
        chat.active_branch_id = branch.id

        clear_messages(chat)

        assert chat.messages == {}
        assert len(chat.branches) == 1
        assert chat.branches[0].id == MAIN_BRANCH_ID
        assert chat.branches[0].tip_message_id is None
        assert chat.branches[0].is_active is True
        assert chat.active_branch_id == MAIN_BRANCH_ID
        assert chat.children_index() == {}
