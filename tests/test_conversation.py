import pytest

from conversation import Conversation, Role, Turn


def test_starts_with_system_turn():
    conversation = Conversation("Be brief.")

    assert len(conversation) == 1
    assert conversation.system == Turn(Role.SYSTEM, "Be brief.")
    assert conversation.messages() == [{"role": "system", "content": "Be brief."}]


def test_blank_system_prompt_rejected():
    with pytest.raises(ValueError):
        Conversation("   ")


def test_turns_are_appended_in_order():
    conversation = Conversation("sys")
    conversation.add_user("hi")
    conversation.add_assistant("hello")
    conversation.add_user("bye")

    assert [m["role"] for m in conversation.messages()] == ["system", "user", "assistant", "user"]
    assert [t.content for t in conversation] == ["sys", "hi", "hello", "bye"]


def test_turns_view_is_a_snapshot():
    conversation = Conversation("sys")
    snapshot = conversation.turns
    conversation.add_user("later")

    assert len(snapshot) == 1
    assert len(conversation.turns) == 2


def test_discard_last_never_removes_system_turn():
    conversation = Conversation("sys")
    conversation.add_user("q")
    conversation.add_assistant("a")

    conversation.discard_last(1)
    assert [t.role for t in conversation] == [Role.SYSTEM, Role.USER]

    conversation.discard_last(10)
    assert [t.role for t in conversation] == [Role.SYSTEM]


def test_max_turns_drops_oldest_pair_on_trim():
    conversation = Conversation("sys", max_turns=4)
    for i in range(3):
        conversation.add_user(f"q{i}")
        conversation.add_assistant(f"a{i}")

    assert len(conversation) == 7
    assert conversation.trim() == 2
    assert [t.content for t in conversation] == ["sys", "q1", "a1", "q2", "a2"]
    assert conversation.trim() == 0


def test_trim_never_leaves_an_assistant_turn_first():
    conversation = Conversation("sys", max_turns=2)
    conversation.add_user("u1")
    conversation.add_user("u2")
    conversation.add_assistant("a2")

    conversation.trim()

    assert [(t.role, t.content) for t in conversation.turns[1:]] == [(Role.USER, "u2"), (Role.ASSISTANT, "a2")]


def test_trim_without_limit_is_a_no_op():
    conversation = Conversation("sys")
    for i in range(5):
        conversation.add_user(f"q{i}")

    assert conversation.trim() == 0
    assert len(conversation) == 6
