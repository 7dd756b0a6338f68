"""Tests for message types and ConversationHistory."""

from taskloop.conversation import ConversationHistory, LLMMessage, ToolCall, ToolMessage


def test_messages_keep_insertion_order():
    history = ConversationHistory()
    history.add_system_message("be brief")
    history.add_user_message("hi")
    history.add_assistant_message("hello")

    assert [m.role for m in history.get_messages()] == ["system", "user", "assistant"]
    assert history.get_message_count() == 3
    assert len(history) == 3


def test_get_messages_returns_copies():
    history = ConversationHistory()
    history.add_user_message("original")

    messages = history.get_messages()
    messages[0].content = "mutated"
    messages.append(LLMMessage(role="user", content="extra"))

    assert history.get_messages()[0].content == "original"
    assert history.get_message_count() == 1


def test_tool_messages_accept_dicts_and_objects():
    history = ConversationHistory()
    call = ToolCall(id="c1", name="echo", arguments='{"text": "x"}')
    history.add_assistant_message("", [call])
    history.add_tool_messages([
        ToolMessage(content="one", tool_call_id="c1"),
        {"content": "two", "tool_call_id": "c2"},
    ])

    last = history.get_last_messages(2)
    assert [(m.role, m.content, m.tool_call_id) for m in last] == [
        ("tool", "one", "c1"),
        ("tool", "two", "c2"),
    ]


def test_get_last_messages_bounds():
    history = ConversationHistory()
    for i in range(3):
        history.add_user_message(str(i))

    assert [m.content for m in history.get_last_messages(2)] == ["1", "2"]
    assert len(history.get_last_messages(10)) == 3
    assert history.get_last_messages(0) == []


def test_clear_and_clone_are_independent():
    history = ConversationHistory()
    history.add_user_message("a")
    clone = history.clone()
    history.clear()

    assert history.get_message_count() == 0
    assert clone.get_message_count() == 1


def test_openai_format_uses_null_for_empty_assistant_content():
    history = ConversationHistory()
    history.add_user_message("list tasks")
    history.add_assistant_message("", [ToolCall(id="c1", name="list_tasks")])

    wire = history.to_openai_format()
    assert wire[0] == {"role": "user", "content": "list tasks"}
    assert wire[1]["content"] is None
    assert wire[1]["tool_calls"] == [
        {"id": "c1", "type": "function", "function": {"name": "list_tasks", "arguments": "{}"}}
    ]


def test_initial_history_from_dicts():
    history = ConversationHistory([
        {"role": "user", "content": "hi"},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c1", "function": {"name": "echo", "arguments": {"text": "x"}}}],
        },
    ])

    assistant = history.get_messages()[1]
    assert assistant.tool_calls[0].name == "echo"
    assert assistant.tool_calls[0].arguments == '{"text": "x"}'


def test_tool_call_signature():
    a = ToolCall(id="1", name="search", arguments='{"q": "x"}')
    b = ToolCall(id="2", name="search", arguments='{"q": "x"}')
    c = ToolCall(id="3", name="search", arguments='{"q": "y"}')

    assert a.signature == b.signature == 'search:{"q": "x"}'
    assert a.signature != c.signature
