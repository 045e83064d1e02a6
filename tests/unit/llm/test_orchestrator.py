"""
Unit tests for RequestOrchestrator.

Tests cover:
- Validation and deduplication outcomes
- Per-round audit records
- Tool-call loop, tool failures and round limiting
- Conversation mode and expired-context retry
- Error classification
"""

import json
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from responsekit.api.errors import ApiError
from responsekit.config.settings import LLMSettings
from responsekit.guard.guard import DeduplicationGuard
from responsekit.guard.liveness import AdvisoryLockChecker, ProcessFingerprintChecker
from responsekit.llm.models import (
    UNSUPPORTED_FORMAT_HINT,
    FailureKind,
    RequestBuilder,
    ResultStatus,
)
from responsekit.llm.orchestrator import NO_HANDLER_MESSAGE, RequestOrchestrator
from responsekit.store.memory import InMemoryRecordStore
from responsekit.store.models import (
    AuditStatus,
    ConversationStatus,
    Template,
    TemplateFile,
    ToolCallStatus,
)
from responsekit.tools.function_executor import FunctionToolExecutor

linux_only = pytest.mark.skipif(
    not sys.platform.startswith("linux"), reason="requires /proc"
)

# ---------------------------------------------------------------------------
# Helpers for building provider responses
# ---------------------------------------------------------------------------

def _text_response(text: str, response_id: str = "resp_final") -> dict:
    return {
        "id": response_id,
        "model": "gpt-4o-mini",
        "output": [
            {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            }
        ],
        "usage": {"input_tokens": 12, "output_tokens": 4, "total_tokens": 16},
    }


def _tool_response(name: str, arguments: dict, call_id: str = "call_1", response_id: str = "resp_tool") -> dict:
    return {
        "id": response_id,
        "model": "gpt-4o-mini",
        "output": [
            {
                "type": "function_call",
                "id": f"fc_{call_id}",
                "call_id": call_id,
                "name": name,
                "arguments": json.dumps(arguments),
            }
        ],
    }


def _sent_payload(client, index: int) -> dict:
    return client.create_response.await_args_list[index].args[0]


def _audit_rows(store: InMemoryRecordStore) -> list:
    return [record for _, record in sorted(store.audit_records.items())]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def guard(store, tmp_path):
    return DeduplicationGuard(store, AdvisoryLockChecker(tmp_path / "locks"))


@pytest.fixture
def client():
    client = MagicMock()
    client.create_response = AsyncMock(return_value=_text_response("Hello!"))
    client.create_conversation = AsyncMock(return_value="conv_1")
    return client


@pytest.fixture
def weather_tools():
    tools = FunctionToolExecutor()
    tools.register(
        "get_weather",
        lambda city: f"sunny in {city}",
        "Current weather",
        {"type": "object", "properties": {"city": {"type": "string"}}},
    )
    return tools


@pytest.fixture
def orchestrator(client, store, guard):
    return RequestOrchestrator(client, store, guard)


def _request(key: str = "job-42"):
    return RequestBuilder(key).message("Hi there")


# ---------------------------------------------------------------------------
# Basic outcomes
# ---------------------------------------------------------------------------

class TestBasicExecution:
    """Tests for single-round requests."""

    @pytest.mark.asyncio
    async def test_success_returns_text_and_audits(self, orchestrator, client, store):
        result = await orchestrator.execute(_request().instructions("Be nice.").build())

        assert result.status == ResultStatus.SUCCESS
        assert result.text() == "Hello!"
        assert result.usage["total_tokens"] == 16
        assert result.rounds == 0

        payload = _sent_payload(client, 0)
        assert payload["model"] == "gpt-4o-mini"
        assert payload["input"] == [
            {"role": "system", "content": "Be nice."},
            {"role": "user", "content": "Hi there"},
        ]

        (record,) = _audit_rows(store)
        assert record.id == result.audit_record_id
        assert record.status == AuditStatus.COMPLETED
        assert json.loads(record.request_payload) == payload
        assert json.loads(record.response_payload)["id"] == "resp_final"
        assert record.duration_seconds is not None

    @pytest.mark.asyncio
    async def test_model_override(self, orchestrator, client):
        await orchestrator.execute(_request().model("gpt-4.1").build())

        assert _sent_payload(client, 0)["model"] == "gpt-4.1"

    @pytest.mark.asyncio
    async def test_invalid_config_fails_without_audit(self, orchestrator, client, store):
        result = await orchestrator.execute(RequestBuilder("job-42").build())

        assert result.failed
        assert result.kind == FailureKind.CONFIGURATION
        assert store.audit_records == {}
        client.create_response.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_while_attempt_is_live(self, orchestrator, guard, client, store):
        holder = await guard.admit("job-42", "{}")
        try:
            result = await orchestrator.execute(_request().build())
        finally:
            holder.release()

        assert result.in_progress
        assert not result.failed
        assert result.blocking_record_id == holder.record.id
        client.create_response.assert_not_awaited()
        rejected = await store.get_audit_record(result.audit_record_id)
        assert rejected.status == AuditStatus.FAILED
        assert "REJECTED" in rejected.comments

    @pytest.mark.asyncio
    async def test_sequential_duplicates_both_run(self, orchestrator, client):
        first = await orchestrator.execute(_request().build())
        second = await orchestrator.execute(_request().build())

        assert first.success and second.success
        assert client.create_response.await_count == 2


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class TestErrorHandling:
    """Tests for API and internal failures."""

    @pytest.mark.asyncio
    async def test_generic_api_error(self, orchestrator, client, store):
        client.create_response.side_effect = ApiError(
            "Server exploded", status_code=500, body='{"error": {"message": "Server exploded"}}'
        )

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.API
        assert result.error == "API Error: Server exploded"
        record = await store.get_audit_record(result.audit_record_id)
        assert record.status == AuditStatus.FAILED
        assert "API Error: Server exploded" in record.comments
        assert record.response_payload == '{"error": {"message": "Server exploded"}}'

    @pytest.mark.asyncio
    async def test_unsupported_file_format_has_hint(self, orchestrator, client):
        client.create_response.side_effect = ApiError(
            "The file type is not supported", status_code=400, code="unsupported_file_format"
        )

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.UNSUPPORTED_INPUT
        assert result.error == "The file type is not supported"
        assert result.hint == UNSUPPORTED_FORMAT_HINT

    @pytest.mark.asyncio
    async def test_expired_previous_response_restarts_from_original_input(
        self, client, store, guard, weather_tools
    ):
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}, response_id="resp_1"),
            ApiError("Response expired", status_code=400, code="response_expired"),
            _text_response("Fresh start."),
        ]
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=weather_tools)

        result = await orchestrator.execute(_request().build())

        assert result.success
        assert result.text() == "Fresh start."
        assert _sent_payload(client, 1)["previous_response_id"] == "resp_1"
        restarted = _sent_payload(client, 2)
        assert "previous_response_id" not in restarted
        assert restarted["input"] == _sent_payload(client, 0)["input"]
        assert store.conversations == {}

        root, expired, retried = _audit_rows(store)
        assert root.status == AuditStatus.COMPLETED
        assert expired.status == AuditStatus.FAILED
        assert retried.status == AuditStatus.COMPLETED
        assert "retry" in retried.comments

    @pytest.mark.asyncio
    async def test_expired_previous_response_respects_retry_budget(self, client, store, guard):
        client.create_response.side_effect = ApiError(
            "Response expired", status_code=400, code="response_expired"
        )
        orchestrator = RequestOrchestrator(
            client, store, guard, settings=LLMSettings(max_context_retries=0)
        )

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.CONTEXT_EXPIRED
        assert client.create_response.await_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_closes_record_once(self, orchestrator, client, store):
        client.create_response.side_effect = RuntimeError("boom")

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.INTERNAL
        assert "boom" in result.error
        record = await store.get_audit_record(result.audit_record_id)
        assert record.status == AuditStatus.FAILED
        assert record.comments.count("Process failed") == 1

    @pytest.mark.asyncio
    async def test_exception_after_close_keeps_record_state(self, orchestrator, client, store):
        client.create_response.return_value = _tool_response("get_weather", {"city": "Oslo"})
        store.create_tool_call = AsyncMock(side_effect=RuntimeError("db down"))

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.INTERNAL
        record = await store.get_audit_record(result.audit_record_id)
        assert record.status == AuditStatus.COMPLETED
        assert "Process failed" not in record.comments

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, orchestrator, client):
        client.create_response.side_effect = [RuntimeError("boom"), _text_response("ok")]

        first = await orchestrator.execute(_request().build())
        second = await orchestrator.execute(_request().build())

        assert first.failed
        assert second.success


# ---------------------------------------------------------------------------
# Tool-call loop
# ---------------------------------------------------------------------------

class TestToolLoop:
    """Tests for tool execution rounds."""

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, client, store, guard, weather_tools):
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}, response_id="resp_1"),
            _text_response("It is sunny in Oslo."),
        ]
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=weather_tools)

        result = await orchestrator.execute(_request().build())

        assert result.success
        assert result.text() == "It is sunny in Oslo."
        assert result.rounds == 1

        first = _sent_payload(client, 0)
        assert first["tools"][0]["name"] == "get_weather"
        second = _sent_payload(client, 1)
        assert second["input"] == [
            {"type": "function_call_output", "call_id": "call_1", "output": "sunny in Oslo"}
        ]
        assert second["previous_response_id"] == "resp_1"

        (call,) = result.tool_calls
        assert call.function_name == "get_weather"
        assert call.arguments == {"city": "Oslo"}
        assert call.status == ToolCallStatus.SUCCESS
        assert call.output == "sunny in Oslo"

    @pytest.mark.asyncio
    async def test_each_round_has_its_own_closed_record(self, client, store, guard, weather_tools):
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}),
            _text_response("done"),
        ]
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=weather_tools)

        result = await orchestrator.execute(_request().build())

        root, continuation = _audit_rows(store)
        assert root.id == result.audit_record_id
        assert root.status == AuditStatus.COMPLETED
        assert continuation.status == AuditStatus.COMPLETED
        assert continuation.correlation_key == "job-42"
        assert f"Continuation of attempt #{root.id}: tool round 1" in continuation.comments
        assert json.loads(continuation.request_payload) == _sent_payload(client, 1)
        assert result.tool_calls[0].audit_record_id == root.id

    @linux_only
    @pytest.mark.asyncio
    async def test_fingerprint_scan_rejects_duplicate_while_tools_run(self, client, store):
        guard = DeduplicationGuard(store, ProcessFingerprintChecker())
        duplicates = []

        async def get_weather(city):
            duplicates.append(await orchestrator.execute(_request().build()))
            return f"sunny in {city}"

        tools = FunctionToolExecutor()
        tools.register("get_weather", get_weather, "Current weather")
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=tools)
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}),
            _text_response("done"),
        ]

        result = await orchestrator.execute(_request().build())

        assert result.success
        (duplicate,) = duplicates
        assert duplicate.status == ResultStatus.IN_PROGRESS
        assert client.create_response.await_count == 2

        root, continuation, rejected = _audit_rows(store)
        assert duplicate.blocking_record_id == continuation.id
        assert rejected.status == AuditStatus.FAILED
        assert continuation.status == AuditStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lock_holder_blocks_with_open_continuation(self, client, store, guard):
        duplicates = []

        async def get_weather(city):
            duplicates.append(await orchestrator.execute(_request().build()))
            return f"sunny in {city}"

        tools = FunctionToolExecutor()
        tools.register("get_weather", get_weather, "Current weather")
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=tools)
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}),
            _text_response("done"),
        ]

        await orchestrator.execute(_request().build())

        (duplicate,) = duplicates
        _, continuation, _ = _audit_rows(store)
        assert duplicate.status == ResultStatus.IN_PROGRESS
        assert duplicate.blocking_record_id == continuation.id

    @pytest.mark.asyncio
    async def test_failing_tool_is_reported_to_model(self, client, store, guard):
        def get_weather(city):
            raise ValueError(f"unknown city {city}")

        tools = FunctionToolExecutor({"get_weather": get_weather})
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Atlantis"}),
            _text_response("Sorry, I could not find that city."),
        ]
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=tools)

        result = await orchestrator.execute(_request().build())

        assert result.success
        (call,) = result.tool_calls
        assert call.status == ToolCallStatus.FAILED
        assert call.error_message == "unknown city Atlantis"
        output = _sent_payload(client, 1)["input"][0]["output"]
        assert json.loads(output) == {"error": "unknown city Atlantis"}

    @pytest.mark.asyncio
    async def test_without_executor_calls_fail_gracefully(self, orchestrator, client):
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}),
            _text_response("No tools available."),
        ]

        result = await orchestrator.execute(_request().build())

        assert result.success
        (call,) = result.tool_calls
        assert call.status == ToolCallStatus.FAILED
        assert call.error_message == NO_HANDLER_MESSAGE
        output = _sent_payload(client, 1)["input"][0]["output"]
        assert json.loads(output) == {"error": NO_HANDLER_MESSAGE}

    @pytest.mark.asyncio
    async def test_tool_round_limit(self, client, store, guard, weather_tools):
        client.create_response.return_value = _tool_response("get_weather", {"city": "Oslo"})
        orchestrator = RequestOrchestrator(
            client,
            store,
            guard,
            settings=LLMSettings(max_tool_rounds=1),
            tool_executor=weather_tools,
        )

        result = await orchestrator.execute(_request().build())

        assert result.kind == FailureKind.TOOL_ROUND_LIMIT
        assert result.rounds == 1
        assert result.response["id"] == "resp_tool"
        assert client.create_response.await_count == 2
        assert all(r.status == AuditStatus.COMPLETED for r in _audit_rows(store))

    @pytest.mark.asyncio
    async def test_malformed_calls_end_the_exchange(self, orchestrator, client):
        client.create_response.return_value = {
            "id": "resp_1",
            "output": [{"type": "function_call", "arguments": "{}"}],
        }

        result = await orchestrator.execute(_request().build())

        assert result.success
        assert result.tool_calls == []
        assert client.create_response.await_count == 1

    @pytest.mark.asyncio
    async def test_template_indexes_add_file_search(self, orchestrator, client, store):
        template = await store.create_template(Template(name="faq"))
        await store.create_template_file(
            TemplateFile(template_id=template.id, file_url="https://x/doc.txt", remote_index_id="vs_1")
        )

        await orchestrator.execute(_request().use_template(template).build())

        assert _sent_payload(client, 0)["tools"] == [
            {"type": "file_search", "vector_store_ids": ["vs_1"]}
        ]


# ---------------------------------------------------------------------------
# Conversation mode
# ---------------------------------------------------------------------------

class TestConversationMode:
    """Tests for requests bound to a remote conversation."""

    @pytest.mark.asyncio
    async def test_conversation_replaces_system_message(self, orchestrator, client, store):
        config = _request().instructions("Be nice.").conversation("user-7").build()

        result = await orchestrator.execute(config)

        assert result.conversation_id == "conv_1"
        client.create_conversation.assert_awaited_once_with("Be nice.")
        payload = _sent_payload(client, 0)
        assert payload["conversation"] == "conv_1"
        assert payload["input"] == [{"role": "user", "content": "Hi there"}]
        record = await store.get_audit_record(result.audit_record_id)
        assert record.conversation_ref == "conv_1"

    @pytest.mark.asyncio
    async def test_existing_conversation_is_reused(self, orchestrator, client):
        config = _request().conversation("user-7").build()

        await orchestrator.execute(config)
        await orchestrator.execute(config)

        client.create_conversation.assert_awaited_once()
        assert _sent_payload(client, 1)["conversation"] == "conv_1"

    @pytest.mark.asyncio
    async def test_conversation_creation_failure(self, orchestrator, client, store):
        client.create_conversation.side_effect = ApiError("quota", status_code=429)

        result = await orchestrator.execute(_request().conversation("user-7").build())

        assert result.kind == FailureKind.CONVERSATION
        client.create_response.assert_not_awaited()
        record = await store.get_audit_record(result.audit_record_id)
        assert record.status == AuditStatus.FAILED

    @pytest.mark.asyncio
    async def test_tool_rounds_stay_in_conversation(self, client, store, guard, weather_tools):
        client.create_response.side_effect = [
            _tool_response("get_weather", {"city": "Oslo"}),
            _text_response("done"),
        ]
        orchestrator = RequestOrchestrator(client, store, guard, tool_executor=weather_tools)

        await orchestrator.execute(_request().conversation("user-7").build())

        second = _sent_payload(client, 1)
        assert second["conversation"] == "conv_1"
        assert "previous_response_id" not in second

    @pytest.mark.asyncio
    async def test_expired_context_retries_with_fresh_conversation(self, orchestrator, client, store):
        client.create_conversation.side_effect = ["conv_1", "conv_2"]
        client.create_response.side_effect = [
            ApiError("Response expired", status_code=400, code="response_expired"),
            _text_response("Fresh start."),
        ]

        result = await orchestrator.execute(_request().conversation("user-7").build())

        assert result.success
        assert result.conversation_id == "conv_2"
        assert _sent_payload(client, 1)["conversation"] == "conv_2"

        statuses = {c.remote_conversation_id: c.status for c in store.conversations.values()}
        assert statuses == {"conv_1": ConversationStatus.CLOSED, "conv_2": ConversationStatus.ACTIVE}

        failed, retried = _audit_rows(store)
        assert failed.status == AuditStatus.FAILED
        assert retried.status == AuditStatus.COMPLETED
        assert "retry" in retried.comments

    @pytest.mark.asyncio
    async def test_expired_context_without_retries_left(self, client, store, guard):
        client.create_response.side_effect = ApiError(
            "Response expired", status_code=400, code="response_expired"
        )
        orchestrator = RequestOrchestrator(
            client, store, guard, settings=LLMSettings(max_context_retries=0)
        )

        result = await orchestrator.execute(_request().conversation("user-7").build())

        assert result.kind == FailureKind.CONTEXT_EXPIRED
        (conversation,) = store.conversations.values()
        assert conversation.status == ConversationStatus.CLOSED
