"""
Request Orchestrator - core request execution engine.

Drives one logical request from configuration to a final answer:

    RequestConfig
         ↓
    DeduplicationGuard.admission()   → "already in progress" if a live attempt owns the key
         ↓
    ConversationManager.get_or_create()   (conversation mode only)
         ↓
    ResponsesApiClient.create_response()  ←→  ToolExecutor (bounded loop)
         ↓
    Result

Design decisions:
- Every dispatch round has its own AuditRecord. The admitted record covers
  the first round; tool-output rounds and context retries open
  continuation records under the same admission, so the key lock is held
  for the whole logical attempt and no re-admission is needed.
- A record is closed as soon as its dispatch returns, before the response
  is interpreted, so the audit trail reflects network activity even if
  interpretation later fails.
- The next round's record is opened before tool calls run or a retry
  starts. Some record of the attempt is in_progress at every point, which
  is what the fingerprint strategy scans for.
- Tool errors are passed back to the model as an {"error": ...} output
  instead of being raised. The remote side needs an output for every call.
- Expected failures come back as a failed Result, never as an exception.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any

from responsekit.api.client import ResponsesApiClient
from responsekit.api.errors import ApiError
from responsekit.config.logging import get_logger
from responsekit.config.settings import LLMSettings
from responsekit.guard.guard import Admission, DeduplicationGuard
from responsekit.llm.conversations import ConversationManager
from responsekit.llm.models import (
    UNSUPPORTED_FORMAT_HINT,
    FailureKind,
    RequestConfig,
    Result,
)
from responsekit.llm.payload import (
    build_input,
    build_payload,
    merge_tools,
    retrieval_tool,
    validate_config,
)
from responsekit.llm.tool_calls import (
    ToolCallRequest,
    extract_tool_calls,
    function_call_output,
    resolve_tool_call,
    to_jsonable,
)
from responsekit.store.base import RecordStore
from responsekit.store.models import AuditRecord, AuditStatus, ToolCallRecord, ToolCallStatus
from responsekit.tools.base import ToolExecutor

logger = get_logger(__name__)

CONTEXT_EXPIRED_CODES = frozenset({"response_expired"})
UNSUPPORTED_INPUT_CODES = frozenset({"unsupported_file_format"})

NO_HANDLER_MESSAGE = "Function handler not configured or not found"


@dataclass
class _Attempt:
    """Mutable state of one admitted logical attempt."""

    admission: Admission
    record: AuditRecord
    record_closed: bool = False
    record_started: float = field(default_factory=time.monotonic)
    conversation_id: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    rounds: int = 0

    @property
    def correlation_key(self) -> str:
        return self.admission.correlation_key


class RequestOrchestrator:
    """
    Executes RequestConfigs against the response API.

    Args:
        client: Remote API client
        store: Record store for tool calls and conversations
        guard: Deduplication guard sharing the same store
        settings: LLM configuration (default model, tool round and retry limits)
        tool_executor: Optional executor for function calls requested by the model
        conversations: Conversation manager (created from store and client if omitted)
    """

    def __init__(
        self,
        client: ResponsesApiClient,
        store: RecordStore,
        guard: DeduplicationGuard,
        settings: LLMSettings | None = None,
        tool_executor: ToolExecutor | None = None,
        conversations: ConversationManager | None = None,
    ):
        settings = settings or LLMSettings()
        self._client = client
        self._store = store
        self._guard = guard
        self._tool_executor = tool_executor
        self._conversations = conversations or ConversationManager(store, client)
        self._default_model = settings.default_model
        self._max_tool_rounds = settings.max_tool_rounds
        self._max_context_retries = settings.max_context_retries

    async def execute(self, config: RequestConfig) -> Result:
        """
        Run a request to completion.

        Returns:
            Result with status SUCCESS, FAILED (with kind and error) or
            IN_PROGRESS when another live attempt owns the correlation key
        """
        problem = validate_config(config)
        if problem:
            logger.warning(f"Invalid request '{config.correlation_key}': {problem}")
            return Result.failure(config.correlation_key, problem, FailureKind.CONFIGURATION)

        request_text = config.model_dump_json(exclude_none=True)

        async with self._guard.admission(config.correlation_key, request_text) as admission:
            if not admission.admitted:
                return Result.already_in_progress(
                    config.correlation_key,
                    audit_record_id=admission.record.id,
                    blocking_record_id=admission.blocking_record_id,
                )

            attempt = _Attempt(admission=admission, record=admission.record)
            try:
                return await self._run_with_retries(config, attempt)
            except Exception as e:
                logger.error(
                    f"Request '{config.correlation_key}' failed unexpectedly: {e}", exc_info=True
                )
                await self._close_failed_quietly(attempt, f"Internal error: {e}")
                return self._failure(attempt, f"Internal error: {e}", FailureKind.INTERNAL)

    # ------------------------------------------------------------------
    # Retry and failure classification
    # ------------------------------------------------------------------

    async def _run_with_retries(self, config: RequestConfig, attempt: _Attempt) -> Result:
        context_retries = 0

        while True:
            try:
                return await self._run_rounds(config, attempt)
            except ApiError as e:
                expired = e.code in CONTEXT_EXPIRED_CODES
                if expired and context_retries < self._max_context_retries:
                    context_retries += 1
                    context = attempt.conversation_id or "previous response"
                    logger.warning(
                        f"Context ({context}) expired for '{attempt.correlation_key}'; "
                        f"restarting from the original input "
                        f"({context_retries}/{self._max_context_retries})"
                    )
                    await self._close_failed(attempt, f"API Error: {e}", e.body)
                    await self._open_continuation(attempt, "retry")
                    if attempt.conversation_id is not None:
                        await self._conversations.close(attempt.conversation_id)
                        attempt.conversation_id = None
                    attempt.rounds = 0
                    continue

                return await self._classify_api_error(attempt, e)

    async def _classify_api_error(self, attempt: _Attempt, error: ApiError) -> Result:
        await self._close_failed(attempt, f"API Error: {error}", error.body)

        if error.code in CONTEXT_EXPIRED_CODES:
            if attempt.conversation_id is not None:
                await self._conversations.close(attempt.conversation_id)
            return self._failure(
                attempt, f"Conversation context expired: {error.message}", FailureKind.CONTEXT_EXPIRED
            )

        if error.code in UNSUPPORTED_INPUT_CODES:
            return self._failure(
                attempt,
                error.message,
                FailureKind.UNSUPPORTED_INPUT,
                hint=UNSUPPORTED_FORMAT_HINT,
            )

        return self._failure(attempt, f"API Error: {error}", FailureKind.API)

    def _failure(self, attempt: _Attempt, error: str, kind: FailureKind, **fields: Any) -> Result:
        return Result.failure(
            attempt.correlation_key,
            error,
            kind,
            audit_record_id=attempt.admission.record.id,
            conversation_id=attempt.conversation_id,
            tool_calls=attempt.tool_calls,
            rounds=attempt.rounds,
            **fields,
        )

    # ------------------------------------------------------------------
    # Dispatch rounds
    # ------------------------------------------------------------------

    async def _run_rounds(self, config: RequestConfig, attempt: _Attempt) -> Result:
        """One pass from the first dispatch to a final answer."""
        if config.conversation_mode and attempt.conversation_id is None:
            try:
                attempt.conversation_id = await self._conversations.get_or_create(
                    config.conversation_user, config.instructions
                )
            except ApiError as e:
                logger.error(f"Cannot create conversation for '{config.conversation_user}': {e}")
                await self._close_failed(attempt, f"Conversation creation failed: {e}", e.body)
                return self._failure(
                    attempt, f"Conversation creation failed: {e}", FailureKind.CONVERSATION
                )

        tools = await self._tool_definitions(config)
        input_items = build_input(config, conversation_active=attempt.conversation_id is not None)
        previous_response_id: str | None = None
        model = config.model or self._default_model

        while True:
            payload = build_payload(
                config,
                input_items,
                model,
                tools=tools,
                conversation_id=attempt.conversation_id,
                previous_response_id=previous_response_id,
            )
            response = await self._dispatch(attempt, payload)

            calls = [
                call
                for call in (resolve_tool_call(item) for item in extract_tool_calls(response))
                if call is not None
            ]
            if not calls:
                logger.info(
                    f"Request '{attempt.correlation_key}' completed after "
                    f"{attempt.rounds} tool round(s)"
                )
                return Result.ok(
                    attempt.correlation_key,
                    response,
                    audit_record_id=attempt.admission.record.id,
                    conversation_id=attempt.conversation_id,
                    tool_calls=attempt.tool_calls,
                    rounds=attempt.rounds,
                )

            if attempt.rounds >= self._max_tool_rounds:
                logger.warning(
                    f"Request '{attempt.correlation_key}' exceeded {self._max_tool_rounds} tool rounds"
                )
                return self._failure(
                    attempt,
                    f"Tool call limit of {self._max_tool_rounds} rounds exceeded",
                    FailureKind.TOOL_ROUND_LIMIT,
                    response=response,
                )

            attempt.rounds += 1
            requested_by = attempt.record.id
            await self._open_continuation(attempt, f"tool round {attempt.rounds}")
            input_items = [await self._run_tool_call(attempt, call, requested_by) for call in calls]
            if attempt.conversation_id is None:
                previous_response_id = response.get("id")

    async def _tool_definitions(self, config: RequestConfig) -> list[dict[str, Any]]:
        executor_tools: list[dict[str, Any]] = []
        if self._tool_executor is not None:
            executor_tools = await self._tool_executor.function_tools()

        index_ids: list[str] = []
        if config.template_id is not None:
            index_ids = await self._store.list_index_ids(config.template_id)

        return merge_tools(config.tools, executor_tools, retrieval_tool(index_ids))

    async def _dispatch(self, attempt: _Attempt, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one round, auditing it on its own record."""
        if attempt.record_closed:
            await self._open_continuation(attempt, "retry")

        attempt.record = await self._store.update_audit_record(
            attempt.record.id,
            request_payload=json.dumps(payload, ensure_ascii=False),
            conversation_ref=attempt.conversation_id,
        )
        attempt.record_started = time.monotonic()

        response = await self._client.create_response(payload)

        attempt.record = await self._guard.close(
            attempt.record,
            json.dumps(response, ensure_ascii=False),
            time.monotonic() - attempt.record_started,
        )
        attempt.record_closed = True
        return response

    async def _open_continuation(self, attempt: _Attempt, reason: str) -> None:
        """Open the record for the next round. Its payload is filled in at dispatch."""
        attempt.record = await self._guard.open_continuation(
            attempt.admission,
            attempt.record.request_payload,
            reason,
            conversation_ref=attempt.conversation_id,
        )
        attempt.record_closed = False
        attempt.record_started = time.monotonic()

    async def _run_tool_call(
        self, attempt: _Attempt, call: ToolCallRequest, requested_by: int
    ) -> dict[str, Any]:
        """Execute one call and return its function_call_output item."""
        record = await self._store.create_tool_call(
            ToolCallRecord(
                audit_record_id=requested_by,
                correlation_key=attempt.correlation_key,
                function_name=call.name,
                arguments=call.arguments,
            )
        )
        started = time.monotonic()

        if self._tool_executor is None:
            logger.warning(f"No tool executor for '{call.name}'")
            output: Any = {"error": NO_HANDLER_MESSAGE}
            status, error_message = ToolCallStatus.FAILED, NO_HANDLER_MESSAGE
        else:
            try:
                output = await self._tool_executor.execute(call.name, call.arguments)
                status, error_message = ToolCallStatus.SUCCESS, None
            except Exception as e:
                # The model decides how to proceed; the exchange itself continues.
                logger.warning(f"Tool '{call.name}' failed: {e}")
                output = {"error": str(e)}
                status, error_message = ToolCallStatus.FAILED, str(e)

        record = await self._store.update_tool_call(
            record.id,
            output=to_jsonable(output),
            status=status,
            error_message=error_message,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        attempt.tool_calls.append(record)
        return function_call_output(call.call_id, output)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def _close_failed(
        self,
        attempt: _Attempt,
        message: str,
        response_text: str | None = None,
    ) -> None:
        if attempt.record_closed:
            return
        await self._guard.comment(attempt.record, message)
        attempt.record = await self._guard.close(
            attempt.record,
            response_text,
            time.monotonic() - attempt.record_started,
            status=AuditStatus.FAILED,
        )
        attempt.record_closed = True

    async def _close_failed_quietly(self, attempt: _Attempt, message: str) -> None:
        try:
            await self._close_failed(attempt, message)
        except Exception as e:
            logger.error(f"Could not close audit record #{attempt.record.id}: {e}")
