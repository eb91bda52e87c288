"""Tests for serializing thread history into a backend request."""

import pytest

from sepal_server.entities.messages import Message
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.messages.store import text_content
from sepal_server.runs.prompt_builder import (
    PromptBuildError,
    build_chat_request,
    build_history,
    non_empty_messages,
    truncate_messages,
)

WEATHER_TOOL = {"type": "function", "function": {"name": "get_weather", "parameters": {"type": "object"}}}


def make_run(**kwargs):
    kwargs.setdefault("thread_id", "thread_1")
    kwargs.setdefault("model", "test-model")
    return Run(**kwargs)


def make_message(content, role="user", **kwargs):
    return Message(thread_id="thread_1", role=role, content=text_content(content), **kwargs)


def numbered(count):
    return [make_message(f"message {n}") for n in range(count)]


def test_auto_keeps_everything():
    messages = numbered(5)
    assert truncate_messages(messages, {"type": "auto"}) == messages


def test_disabled_keeps_everything():
    messages = numbered(5)
    assert truncate_messages(messages, {"type": "disabled"}) == messages


def test_missing_strategy_defaults_to_auto():
    messages = numbered(3)
    assert truncate_messages(messages, None) == messages


def test_last_messages_keeps_the_tail():
    messages = numbered(5)
    assert [m.text for m in truncate_messages(messages, {"type": "last_messages", "last_messages": 2})] == [
        "message 3",
        "message 4",
    ]


def test_last_messages_larger_than_history():
    messages = numbered(2)
    assert truncate_messages(messages, {"type": "last_messages", "last_messages": 10}) == messages


@pytest.mark.parametrize("value", [0, -1, None, "3", True])
def test_invalid_last_messages_raises(value):
    with pytest.raises(PromptBuildError):
        truncate_messages(numbered(2), {"type": "last_messages", "last_messages": value})


def test_unknown_strategy_raises():
    with pytest.raises(PromptBuildError):
        truncate_messages(numbered(2), {"type": "summarize"})


def test_instructions_come_first_and_are_not_truncated():
    run = make_run(instructions="Be brief.", truncation_strategy={"type": "last_messages", "last_messages": 1})
    history = build_history(run, numbered(3), [])

    assert history == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "message 2"},
    ]


def test_tool_calls_are_followed_by_their_outputs():
    tool_calls = [
        {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}},
        {"id": "call_2", "type": "function", "function": {"name": "get_time", "arguments": "{}"}},
    ]
    assistant = make_message("", role="assistant", meta={"tool_calls": tool_calls})
    step = RunStep(
        run_id="run_1",
        thread_id="thread_1",
        type="tool_calls",
        step_details={
            "type": "tool_calls",
            "tool_calls": [
                {**tool_calls[0], "function": {**tool_calls[0]["function"], "output": "Sunny"}},
                tool_calls[1],
            ],
        },
    )

    history = build_history(make_run(), [make_message("Weather?"), assistant], [step])

    assert history[1] == {"role": "assistant", "content": "-", "tool_calls": tool_calls}
    assert history[2] == {"role": "tool", "tool_call_id": "call_1", "name": "get_weather", "content": "Sunny"}
    # A call that never got an output still gets a tool message.
    assert history[3] == {"role": "tool", "tool_call_id": "call_2", "name": "get_time", "content": "-"}


def test_in_progress_messages_are_skipped():
    pending = make_message("partial", role="assistant", status="in_progress")
    history = build_history(make_run(), [make_message("Hi"), pending], [])

    assert history == [{"role": "user", "content": "Hi"}]


def test_non_empty_messages_replaces_blank_content():
    messages = [
        {"role": "user", "content": "   "},
        {"role": "assistant", "content": None},
        {"role": "user", "content": "ok"},
    ]

    assert [m["content"] for m in non_empty_messages(messages)] == ["-", "-", "ok"]
    assert messages[0]["content"] == "   "


def test_build_chat_request_with_tools_and_sampling():
    run = make_run(tools=[WEATHER_TOOL, {"type": "code_interpreter"}], temperature=0.2, top_p=0.9)
    request = build_chat_request(run, [{"role": "user", "content": "Hi"}], stream=True)

    assert request == {
        "model": "test-model",
        "messages": [{"role": "user", "content": "Hi"}],
        "stream": True,
        "tools": [WEATHER_TOOL],
        "temperature": 0.2,
        "top_p": 0.9,
    }


def test_build_chat_request_omits_empty_tools():
    request = build_chat_request(make_run(tools=[]), [], stream=False)

    assert "tools" not in request
    assert "temperature" not in request
    assert request["stream"] is False


def test_build_chat_request_response_format():
    run = make_run(response_format={"type": "json_object"})
    request = build_chat_request(run, [], stream=True)

    assert request["response_format"] == {"type": "json_object"}
