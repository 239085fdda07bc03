"""Model access for worker rounds.

``LLMClient`` sends one chat completion through litellm. Transient provider
errors are retried with capped exponential backoff; once the retries run out
a configured second model gets a single attempt. ``MockLLMClient`` replays
scripted responses instead of calling a provider.

The two ``format_*`` helpers build the assistant and tool messages a worker
appends to its conversation between rounds.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agent_swarm.config import settings
from agent_swarm.events.bus import EventBus
from agent_swarm.events.types import AgentEvent, EventType, LLMMetrics

logger = structlog.get_logger()

# Seconds; backoff never sleeps longer than this between attempts
MAX_RETRY_DELAY = 4.0

_RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
_FATAL_ERRORS = (AuthenticationError, BadRequestError)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Lenient view of tool-call arguments, always a dict.

    Non-object JSON is wrapped under ``"value"`` and unparseable text under
    ``"raw"``. Workers do not execute from this view; they parse
    ``ToolCallData.arguments`` strictly.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """One tool invocation requested by the model.

    Attributes:
        id: Provider-assigned call id, echoed back in the tool message
        name: Tool name
        args: Lenient parse from ``normalize_tool_args``
        arguments: Argument string exactly as the provider sent it, or None
            when the call was built in code
    """

    id: str
    name: str
    args: dict[str, Any]
    arguments: str | None = None


@dataclass
class LLMResponse:
    """A completion reduced to what a worker round needs.

    Attributes:
        content: Assistant text, empty when the model only called tools
        tool_calls: Requested tool invocations in provider order
        finish_reason: Provider stop reason ("stop", "tool_calls", "length")
        metrics: Model, token counts and latency
        raw_response: Untouched litellm response, kept out of repr
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Chat completions for workers, shared across a whole run.

    Rate limits, 5xx responses and timeouts are retried up to
    ``retry_attempts`` times. Bad requests and auth failures are raised
    at once. When a session id is passed, a successful call publishes
    LLM_CALL_COMPLETE and a final failure publishes AGENT_ERROR.

    Attributes:
        event_bus: Where call events go; None disables them
        default_model: Model used when a call names none
        fallback_model: Model tried once after the primary gives up
        retry_attempts: Extra attempts on the primary model
        retry_delay: First backoff step in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Run one completion.

        Args:
            messages: Conversation so far in chat-completion format
            tools: Tool definitions offered to the model
            model: Overrides ``default_model``
            temperature: Overrides the configured temperature
            max_tokens: Completion token cap, provider default if None
            session_id: Session for call events; no events without it
            agent_id: Worker id attached to call events

        Returns:
            The parsed response of whichever model answered

        Raises:
            AuthenticationError: Credentials were rejected
            BadRequestError: The provider refused the request
            Exception: The primary model's last error, when retries and the
                fallback both failed
        """
        model = model or self.default_model
        if temperature is None:
            temperature = settings.llm_temperature
        started = time.time()

        last_error: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                return await self._finish(
                    response, model, started, session_id, agent_id,
                    event="llm_call_complete", attempt=attempt + 1,
                )

            except _RETRYABLE_ERRORS as e:
                last_error = e
                retry_count = attempt + 1
                if attempt == self.retry_attempts:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    break
                delay = min(self.retry_delay * (2 ** attempt), MAX_RETRY_DELAY)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    max_retries=self.retry_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                    retry_delay=delay,
                )
                await self._async_sleep(delay)

            except _FATAL_ERRORS as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if self.event_bus and session_id:
                    await self._emit_error_event(
                        session_id=session_id,
                        agent_id=agent_id,
                        error=e,
                        model=model,
                        retry_count=0,
                        used_fallback=False,
                    )
                raise

        used_fallback = bool(self.fallback_model and self.fallback_model != model)
        if used_fallback:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
                primary_error=str(last_error),
            )
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=self.fallback_model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                return await self._finish(
                    response, self.fallback_model, started, session_id, agent_id,
                    event="llm_fallback_success",
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                # The caller sees the primary model's error
                last_error = last_error or fallback_error

        if self.event_bus and session_id and last_error:
            await self._emit_error_event(
                session_id=session_id,
                agent_id=agent_id,
                error=last_error,
                model=model,
                retry_count=retry_count,
                used_fallback=used_fallback,
            )

        raise last_error or RuntimeError("LLM call failed after all retries")

    async def _finish(
        self,
        response: ModelResponse,
        model: str,
        started: float,
        session_id: str | None,
        agent_id: str | None,
        event: str,
        **log_fields: Any,
    ) -> LLMResponse:
        """Parse a successful completion, then publish and log its metrics."""
        latency_ms = int((time.time() - started) * 1000)
        llm_response = self._parse_response(response, model, latency_ms)

        if self.event_bus and session_id:
            await self._emit_metrics_event(llm_response.metrics, session_id, agent_id)

        logger.info(
            event,
            model=model,
            input_tokens=llm_response.metrics.input_tokens,
            output_tokens=llm_response.metrics.output_tokens,
            latency_ms=latency_ms,
            tool_calls=len(llm_response.tool_calls),
            **log_fields,
        )
        return llm_response

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Reduce a litellm response to an LLMResponse.

        Raises:
            ValueError: The provider returned no choices
        """
        if not response.choices:
            raise ValueError("No response from LLM")

        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        for tc in message.tool_calls or []:
            raw_arguments = tc.function.arguments
            tool_calls.append(
                ToolCallData(
                    id=tc.id,
                    name=tc.function.name,
                    args=normalize_tool_args(raw_arguments),
                    arguments=raw_arguments if isinstance(raw_arguments, str) else None,
                )
            )

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        session_id: str,
        agent_id: str | None,
    ) -> None:
        if self.event_bus:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    session_id=session_id,
                    agent_id=agent_id,
                    data=metrics.model_dump(),
                )
            )

    async def _emit_error_event(
        self,
        session_id: str,
        agent_id: str | None,
        error: Exception,
        model: str,
        retry_count: int,
        used_fallback: bool,
    ) -> None:
        if self.event_bus:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.AGENT_ERROR,
                    session_id=session_id,
                    agent_id=agent_id,
                    data={
                        "error": str(error),
                        "error_type": type(error).__name__,
                        "model": model,
                        "retry_count": retry_count,
                        "used_fallback": used_fallback,
                        "fallback_model": self.fallback_model,
                        "phase": "llm_call",
                    },
                )
            )

    async def _async_sleep(self, seconds: float) -> None:
        # Overridden in tests
        await asyncio.sleep(seconds)


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Tool output as the ``tool`` message answering ``tool_call_id``."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Assistant turn for the history, with its tool calls if any.

    Raw argument strings are replayed byte for byte. Calls without one get
    their ``args`` serialized.
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": (
                        tc.arguments if tc.arguments is not None else json.dumps(tc.args)
                    ),
                },
            }
            for tc in tool_calls
        ]

    return message


class MockLLMClient(LLMClient):
    """Offline client that replays ``responses`` one per call.

    Every call is appended to ``call_history`` with a copy of its messages,
    so tests can inspect exactly what each round sent.
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: The script is used up
        """
        self.call_history.append({
            # Workers keep appending to the list they pass in
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Rewind the script and forget recorded calls."""
        self._response_index = 0
        self.call_history.clear()
