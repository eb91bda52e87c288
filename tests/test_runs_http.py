# mypy: ignore-errors

import json

from fastapi.testclient import TestClient

from conftest import text, tool_call

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Current weather for a city",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    },
}


def parse_sse(body: str):
    """Split an SSE body into (event, data) pairs."""
    events = []
    event, data = None, []
    for line in body.splitlines():
        if line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:") :].strip())
        elif not line.strip() and (event or data):
            events.append((event, "\n".join(data)))
            event, data = None, []
    if event or data:
        events.append((event, "\n".join(data)))
    return events


class TestThreadsAndMessages:
    def test_create_empty_thread(self, client: TestClient):
        response = client.post("/v1/threads")
        assert response.status_code == 200
        payload = response.json()
        assert payload["id"].startswith("thread_")
        assert payload["object"] == "thread"

        fetched = client.get(f"/v1/threads/{payload['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == payload["id"]

    def test_create_thread_with_messages(self, client: TestClient):
        response = client.post(
            "/v1/threads",
            json={"messages": [{"role": "user", "content": "hello"}], "metadata": {"topic": "greeting"}},
        )
        thread = response.json()
        assert thread["metadata"] == {"topic": "greeting"}

        messages = client.get(f"/v1/threads/{thread['id']}/messages", params={"order": "asc"}).json()["data"]
        assert len(messages) == 1
        assert messages[0]["role"] == "user"
        assert messages[0]["content"][0]["text"]["value"] == "hello"

    def test_get_missing_thread(self, client: TestClient):
        response = client.get("/v1/threads/thread_nonexistent")
        assert response.status_code == 404
        assert "Thread not found" in response.json()["detail"]

    def test_message_order_and_lookup(self, client: TestClient):
        thread_id = client.post("/v1/threads").json()["id"]
        first = client.post(f"/v1/threads/{thread_id}/messages", json={"content": "one"}).json()
        second = client.post(
            f"/v1/threads/{thread_id}/messages",
            json={"content": [{"type": "text", "text": {"value": "two"}}]},
        ).json()

        ascending = client.get(f"/v1/threads/{thread_id}/messages", params={"order": "asc"}).json()
        assert [m["id"] for m in ascending["data"]] == [first["id"], second["id"]]
        assert ascending["first_id"] == first["id"]

        descending = client.get(f"/v1/threads/{thread_id}/messages").json()
        assert [m["id"] for m in descending["data"]] == [second["id"], first["id"]]

        fetched = client.get(f"/v1/threads/{thread_id}/messages/{second['id']}").json()
        assert fetched["content"][0]["text"]["value"] == "two"

    def test_message_errors(self, client: TestClient):
        response = client.post("/v1/threads/thread_nonexistent/messages", json={"content": "hi"})
        assert response.status_code == 404

        thread_id = client.post("/v1/threads").json()["id"]
        response = client.post(f"/v1/threads/{thread_id}/messages", json={"role": "system", "content": "hi"})
        assert response.status_code == 422

        response = client.get(f"/v1/threads/{thread_id}/messages/msg_nonexistent")
        assert response.status_code == 404


class TestRuns:
    def _create_thread(self, client: TestClient, content: str = "What is the weather in Paris?") -> str:
        response = client.post("/v1/threads", json={"messages": [{"role": "user", "content": content}]})
        assert response.status_code == 200
        return response.json()["id"]

    def test_create_run_without_stream(self, client: TestClient, provider):
        provider.add([text("Hello"), text(" there")])
        thread_id = self._create_thread(client)

        response = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model", "metadata": {"k": "v"}})
        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "completed"
        assert run["metadata"] == {"k": "v"}
        assert run["expires_at"] is not None

        messages = client.get(f"/v1/threads/{thread_id}/messages", params={"order": "asc"}).json()["data"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["content"][0]["text"]["value"] == "Hello there"
        assert messages[1]["run_id"] == run["id"]

        fetched = client.get(f"/v1/threads/{thread_id}/runs/{run['id']}").json()
        assert fetched["status"] == "completed"

    def test_create_run_streams_events(self, client: TestClient, provider):
        provider.add([text("Sunny")])
        thread_id = self._create_thread(client)

        response = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model", "stream": True})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = parse_sse(response.text)
        assert [event for event, _ in events] == [
            "run.in_progress",
            "message.created",
            "run.step.created",
            "message.delta",
            "message.completed",
            "run.completed",
            "done",
        ]
        assert events[-1][1] == "[DONE]"

        envelope = json.loads(events[3][1])
        assert envelope["event"] == "message.delta"
        assert envelope["data"]["delta"]["content"][0]["text"]["value"] == "Sunny"

    def test_tool_call_round_trip(self, client: TestClient, provider):
        provider.add([tool_call(0, '{"city": "Paris"}', id="call_1", name="get_weather")])
        provider.add([text("It is sunny in Paris.")])
        thread_id = self._create_thread(client)

        run = client.post(
            f"/v1/threads/{thread_id}/runs",
            json={"model": "test-model", "tools": [WEATHER_TOOL]},
        ).json()
        assert run["status"] == "requires_action"
        [call] = run["required_action"]["submit_tool_outputs"]["tool_calls"]
        assert call["function"]["name"] == "get_weather"
        assert provider.requests[0]["tools"][0]["function"]["name"] == "get_weather"

        response = client.post(
            f"/v1/threads/{thread_id}/runs/{run['id']}/submit_tool_outputs",
            json={"tool_outputs": [{"tool_call_id": call["id"], "output": "Sunny, 24C"}], "stream": True},
        )
        assert response.status_code == 200
        events = [event for event, _ in parse_sse(response.text)]
        assert events[0] == "run.in_progress"
        assert events[-2:] == ["run.completed", "done"]

        steps = client.get(f"/v1/threads/{thread_id}/runs/{run['id']}/steps", params={"order": "asc"}).json()
        assert [step["type"] for step in steps["data"]] == ["message_creation", "tool_calls", "message_creation"]
        tool_step = steps["data"][1]
        assert tool_step["status"] == "completed"
        assert tool_step["step_details"]["tool_calls"][0]["function"]["output"] == "Sunny, 24C"

        fetched = client.get(f"/v1/threads/{thread_id}/runs/{run['id']}/steps/{tool_step['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == tool_step["id"]

    def test_submit_tool_outputs_errors(self, client: TestClient, provider):
        provider.add([tool_call(0, "{}", id="call_1", name="get_weather")])
        thread_id = self._create_thread(client)
        run = client.post(
            f"/v1/threads/{thread_id}/runs",
            json={"model": "test-model", "tools": [WEATHER_TOOL]},
        ).json()
        url = f"/v1/threads/{thread_id}/runs/{run['id']}/submit_tool_outputs"

        response = client.post(url, json={"tool_outputs": [{"tool_call_id": "call_other", "output": "x"}]})
        assert response.status_code == 400
        assert "call_other" in response.json()["detail"]

        response = client.post(url, json={"tool_outputs": []})
        assert response.status_code == 400
        assert "missing tool outputs" in response.json()["detail"]

        response = client.post(url, json={})
        assert response.status_code == 422

        response = client.post(
            f"/v1/threads/{thread_id}/runs/run_nonexistent/submit_tool_outputs",
            json={"tool_outputs": []},
        )
        assert response.status_code == 404

        assert client.get(f"/v1/threads/{thread_id}/runs/{run['id']}").json()["status"] == "requires_action"

    def test_cancel_run_awaiting_tool_outputs(self, client: TestClient, provider):
        provider.add([tool_call(0, "{}", id="call_1", name="get_weather")])
        thread_id = self._create_thread(client)
        run = client.post(
            f"/v1/threads/{thread_id}/runs",
            json={"model": "test-model", "tools": [WEATHER_TOOL]},
        ).json()

        response = client.post(f"/v1/threads/{thread_id}/runs/{run['id']}/cancel")
        assert response.status_code == 200
        cancelled = response.json()
        assert cancelled["status"] == "cancelled"
        assert cancelled["required_action"] is None
        assert cancelled["cancelled_at"] is not None

        response = client.post(
            f"/v1/threads/{thread_id}/runs/{run['id']}/submit_tool_outputs",
            json={"tool_outputs": [{"tool_call_id": "call_1", "output": "x"}]},
        )
        assert response.status_code == 400

    def test_cancel_completed_run_is_rejected(self, client: TestClient, provider):
        provider.add([text("done")])
        thread_id = self._create_thread(client)
        run = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model"}).json()

        response = client.post(f"/v1/threads/{thread_id}/runs/{run['id']}/cancel")
        assert response.status_code == 400

    def test_backend_failure_fails_run(self, client: TestClient, provider):
        from sepal_server.providers.base import ProviderStatusError

        provider.add(ProviderStatusError(429, "rate limited"))
        thread_id = self._create_thread(client)

        run = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model"}).json()
        assert run["status"] == "failed"
        assert run["last_error"]["code"] == "rate_limit_exceeded"
        assert run["failed_at"] is not None

    def test_list_runs(self, client: TestClient, provider):
        provider.add([text("one")])
        provider.add([text("two")])
        thread_id = self._create_thread(client)
        first = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model"}).json()
        second = client.post(f"/v1/threads/{thread_id}/runs", json={"model": "test-model"}).json()

        listed = client.get(f"/v1/threads/{thread_id}/runs").json()
        assert [r["id"] for r in listed["data"]] == [second["id"], first["id"]]

        listed = client.get(f"/v1/threads/{thread_id}/runs", params={"order": "asc", "limit": 1}).json()
        assert [r["id"] for r in listed["data"]] == [first["id"]]

    def test_create_run_validation(self, client: TestClient):
        thread_id = self._create_thread(client)

        assert client.post(f"/v1/threads/{thread_id}/runs", json={}).status_code == 422
        assert client.post(f"/v1/threads/{thread_id}/runs", json={"model": "  "}).status_code == 422
        assert (
            client.post(f"/v1/threads/{thread_id}/runs", json={"model": "m", "temperature": 3}).status_code == 422
        )
        response = client.post(
            f"/v1/threads/{thread_id}/runs",
            json={"model": "m", "truncation_strategy": {"type": "last_messages"}},
        )
        assert response.status_code == 422

    def test_missing_resources(self, client: TestClient):
        response = client.post("/v1/threads/thread_nonexistent/runs", json={"model": "test-model"})
        assert response.status_code == 404
        assert "Thread not found" in response.json()["detail"]

        assert client.get("/v1/threads/thread_nonexistent/runs").status_code == 404

        thread_id = self._create_thread(client)
        response = client.get(f"/v1/threads/{thread_id}/runs/run_nonexistent")
        assert response.status_code == 404
        assert "Run not found" in response.json()["detail"]

        assert client.post(f"/v1/threads/{thread_id}/runs/run_nonexistent/cancel").status_code == 404
        assert client.get(f"/v1/threads/{thread_id}/runs/run_nonexistent/steps").status_code == 404

    def test_truncation_limits_history(self, client: TestClient, provider):
        provider.add([text("ok")])
        thread_id = self._create_thread(client, "first")
        client.post(f"/v1/threads/{thread_id}/messages", json={"content": "second"})

        client.post(
            f"/v1/threads/{thread_id}/runs",
            json={"model": "test-model", "truncation_strategy": {"type": "last_messages", "last_messages": 1}},
        )

        assert provider.requests[0]["messages"] == [{"role": "user", "content": "second"}]
