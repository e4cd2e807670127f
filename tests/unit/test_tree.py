"""Unit tests for tree traversal."""

from chatstore.branches import create_branch
from chatstore.messages import add_message
from chatstore.models import MAIN_BRANCH_ID, Message
from chatstore.tree import (
    build_context,
    get_branch_messages,
    get_chat_history,
    get_children,
    get_descendants,
    get_leaf_nodes,
    get_message_path,
    get_tree_structure,
)


class TestMessagePath:
    """Test cases for root -> message path reconstruction."""

    def test_path_runs_root_to_target(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        assert get_message_path(chat, msg2.id) == [msg1.id, msg2.id]

    def test_unknown_or_empty_id_gives_empty_path(self, linear_chat):
        chat, _, _ = linear_chat
        assert get_message_path(chat, None) == []
        assert get_message_path(chat, "msg-missing") == []

    def test_missing_parent_truncates_path(self, chat):
        chat.insert_message(Message(id="m2", parent_id="gone", role="user", content="x"))
        chat.insert_message(Message(id="m3", parent_id="m2", role="assistant", content="y"))
        assert get_message_path(chat, "m3") == ["m2", "m3"]

    def test_cycle_does_not_loop_forever(self, chat):
        chat.insert_message(Message(id="a", parent_id="b", role="user", content="x"))
        chat.insert_message(Message(id="b", parent_id="a", role="assistant", content="y"))
        assert get_message_path(chat, "a") == ["b", "a"]


class TestStructureQueries:
    """Test cases for children, descendants and leaves."""

    def test_children_and_descendants(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        alt = add_message(chat, "assistant", "Alternative", parent_id=msg1.id)
        follow = add_message(chat, "user", "Follow up", parent_id=msg2.id)

        assert [m.id for m in get_children(chat, msg1.id)] == [msg2.id, alt.id]
        assert get_descendants(chat, msg1.id) == [msg2.id, follow.id, alt.id]
        assert get_descendants(chat, follow.id) == []

    def test_leaf_nodes(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        alt = add_message(chat, "assistant", "Alternative", parent_id=msg1.id)
        assert set(get_leaf_nodes(chat)) == {msg2.id, alt.id}

    def test_index_follows_removal(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        chat.children_index()
        chat.remove_message(msg2.id)
        assert get_children(chat, msg1.id) == []
        assert get_leaf_nodes(chat) == [msg1.id]


class TestTreeStructure:
    """Test cases for the nested visualization tree."""

    def test_one_root_with_two_children(self, chat):
        root = add_message(chat, "user", "What is the capital of France?")
        add_message(chat, "assistant", "Paris.", parent_id=root.id)
        add_message(chat, "assistant", "The capital of France is Paris.", parent_id=root.id)

        tree = get_tree_structure(chat)

        assert len(tree) == 1
        assert tree[0]["id"] == root.id
        assert tree[0]["role"] == "user"
        assert len(tree[0]["children"]) == 2
        assert [c["role"] for c in tree[0]["children"]] == ["assistant", "assistant"]
        assert [c["preview"] for c in tree[0]["children"]] == [
            "Paris.",
            "The capital of France is Paris.",
        ]

    def test_preview_is_truncated(self, chat):
        add_message(chat, "user", "x" * 80)
        node = get_tree_structure(chat)[0]
        assert node["preview"] == "x" * 50 + "..."

    def test_independent_of_branch_pointers(self, linear_chat):
        chat, msg1, _ = linear_chat
        branch = create_branch(chat, fork_point_message_id=msg1.id)
        add_message(chat, "assistant", "Branch reply", branch_id=branch.id)

        tree = get_tree_structure(chat)
        assert len(tree[0]["children"]) == 2

    def test_deep_linear_chat(self, chat):
        for i in range(1200):
            add_message(chat, "user" if i % 2 == 0 else "assistant", f"m{i}")
        tree = get_tree_structure(chat)
        depth = 0
        node = tree[0]
        while node["children"]:
            node = node["children"][0]
            depth += 1
        assert depth == 1199


class TestBranchTranscripts:
    """Test cases for branch messages and prompt history."""

    def test_branch_messages_include_shared_ancestors(self, linear_chat):
        chat, msg1, msg2 = linear_chat
        branch = create_branch(chat, fork_point_message_id=msg1.id)
        new_msg = add_message(chat, "assistant", "Other answer", branch_id=branch.id)

        assert [m.id for m in get_branch_messages(chat, MAIN_BRANCH_ID)] == [msg1.id, msg2.id]
        assert [m.id for m in get_branch_messages(chat, branch.id)] == [msg1.id, new_msg.id]

    def test_unknown_branch_is_empty(self, linear_chat):
        chat, _, _ = linear_chat
        assert get_branch_messages(chat, "branch-nope") == []

    def test_chat_history_is_role_prefixed_and_bounded(self, linear_chat):
        chat, _, _ = linear_chat
        add_message(chat, "user", "Third")

        assert get_chat_history(chat) == [
            "User: Hello there",
            "Assistant: Hi! How can I help?",
            "User: Third",
        ]
        assert get_chat_history(chat, max_messages=1) == ["User: Third"]

    def test_build_context_starts_with_system_prompt(self, linear_chat):
        chat, _, _ = linear_chat
        ctx = build_context(chat, None, "Be brief.")
        assert ctx == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello there"},
            {"role": "assistant", "content": "Hi! How can I help?"},
        ]
        assert build_context(chat, None, "Be brief.", max_messages=1)[1:] == [
            {"role": "assistant", "content": "Hi! How can I help?"},
        ]
