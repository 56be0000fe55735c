"""Agent Turn Loop - drives model calls, tool dispatch and streaming.

One request runs as a small state machine:

    INIT -> CALL_MODEL -> ROUTE -> (EXECUTE_TOOLS -> CALL_MODEL)* -> TERMINATED

ROUTE ends the request when the model asks for no tools or signals the end
of its turn. Otherwise every requested tool runs, the model's raw turn and
one message holding all tool results are appended, and the model is called
again. ``max_iterations`` caps the number of model calls regardless of what
the model wants.

Every model call is preceded by a prepare step: the conversation history
goes through the strategy manager, the messages of the current turn are
appended verbatim, and the token budget clamps the whole to its ceiling.

Failure handling:
    - Tool failures become failed results fed back to the model.
    - A model call failure or timeout emits one error event and stops.
    - Summarizer, retrieval, ledger and persistence failures are logged only.
    - Any other failure emits one error event (INTERNAL_ERROR unless it is a
      KeelError carrying its own code) and stops.

Cancellation is cooperative: once the stream is cancelled no further model
call or tool invocation starts, and no terminal event is emitted.

Example:
    >>> loop = AgentLoop.from_settings(settings, engine=engine, registry=registry)
    >>> async for event in loop.stream(AgentRequest(message="What failed last night?")):
    ...     print(event.to_dict())
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Union, TYPE_CHECKING

from keel.agent.events import (
    StreamEvent,
    done_event,
    error_event,
    text_event,
    thinking_event,
    tool_event,
    tool_result_event,
)
from keel.agent.llm import (
    BlockType,
    ContentBlock,
    ModelRequest,
    ModelResponse,
    ReasoningEngine,
    STOP_END_TURN,
    STOP_MAX_TOKENS,
)
from keel.agent.stream import EventStream
from keel.agent.tools import (
    ToolExecutionPolicy,
    ToolExecutionResult,
    ToolExecutor,
    ToolRegistry,
    build_tool_result_message,
    summarize_input,
)
from keel.cache.response_cache import ResponseCache
from keel.context.estimator import estimate_conversation
from keel.context.messages import ContextStrategy, Message, Role
from keel.context.strategies import ContextStrategyManager, StrategyOptions
from keel.core.exceptions import (
    BudgetExceededError,
    KeelError,
    ModelCallError,
    ModelTimeoutError,
    StoreError,
)
from keel.core.result import capture, degrade
from keel.telemetry.budget import AllowanceDecision, BudgetConfig, TokenBudget
from keel.telemetry.usage import UsageTracker, estimate_request_cost_cents

if TYPE_CHECKING:
    from keel.config.settings import KeelSettings
    from keel.state.store import ConversationStore


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Use the available tools when they help."
DEFAULT_RESPONSE = "I've completed the request."

TERMINAL_STOP_REASONS = frozenset({STOP_END_TURN, STOP_MAX_TOKENS})


class LoopState(str, Enum):
    """States of one request."""

    INIT = "init"
    CALL_MODEL = "call_model"
    ROUTE = "route"
    EXECUTE_TOOLS = "execute_tools"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    """Why a request stopped."""

    DONE = "done"
    MAX_ITERATIONS = "max_iterations"
    CACHE_HIT = "cache_hit"
    MODEL_ERROR = "model_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


# =============================================================================
# Configuration and Request Types
# =============================================================================


@dataclass(frozen=True)
class LoopConfig:
    """Turn loop limits and behavior.

    Attributes:
        model: Model name used for pricing
        system_prompt: Default system prompt
        max_iterations: Cap on model calls per request
        max_output_tokens: Output token limit per call
        thinking_budget: Extended thinking budget, if enabled
        model_timeout_seconds: Ceiling for one model call
        tool_result_max_tokens: Tool output tokens kept in context
        tool_result_preview_chars: Characters of tool output in events
        verbose: Include tool inputs in tool events
        strategy: Context strategy; None lets the analysis choose
        enable_compression: Allow compression in the prepare step
        enable_retrieval: Allow retrieval in the prepare step
    """

    model: str = "claude-sonnet-4-20250514"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = 20
    max_output_tokens: int = 8192
    thinking_budget: Optional[int] = None
    model_timeout_seconds: float = 60.0
    tool_result_max_tokens: int = 4000
    tool_result_preview_chars: int = 500
    verbose: bool = False
    strategy: Optional[ContextStrategy] = ContextStrategy.HYBRID
    enable_compression: bool = True
    enable_retrieval: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.model_timeout_seconds <= 0:
            raise ValueError("model_timeout_seconds must be positive")

    @classmethod
    def from_settings(cls, settings: "KeelSettings") -> "LoopConfig":
        agent = settings.agent
        return cls(
            model=settings.llm.model,
            max_iterations=agent.max_iterations,
            max_output_tokens=agent.max_output_tokens,
            thinking_budget=agent.thinking_budget,
            model_timeout_seconds=agent.model_timeout_seconds,
            tool_result_max_tokens=agent.tool_result_max_tokens,
            tool_result_preview_chars=agent.tool_result_preview_chars,
            verbose=agent.verbose,
            strategy=ContextStrategy(settings.context.strategy),
            enable_compression=settings.context.enable_compression,
            enable_retrieval=settings.context.enable_retrieval,
        )


@dataclass
class AgentRequest:
    """One caller request.

    Attributes:
        message: The user's message
        conversation_id: Conversation to load, retrieve from and persist to
        user_id: User whose monthly budget applies
        history: Prior messages; loaded from the store when None
        system_prompt: Overrides the configured system prompt
        use_cache: Allow the response cache for this request
    """

    message: str
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    history: Optional[list[Message]] = None
    system_prompt: Optional[str] = None
    use_cache: bool = True


@dataclass
class AgentRunResult:
    """Final outcome of one request."""

    response: str
    reason: TerminationReason
    iterations: int = 0
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)
    usage: UsageTracker = field(default_factory=UsageTracker)
    error: Optional[KeelError] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.reason is not TerminationReason.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "reason": self.reason.value,
            "iterations": self.iterations,
            "tool_calls": self.tool_calls,
            "usage": self.usage.to_dict(),
            "error": self.error.to_log_dict() if self.error else None,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class _Turn:
    """Loop-local state of one request."""

    request: AgentRequest
    stream: EventStream
    system_prompt: str
    history: list[Message] = field(default_factory=list)
    prepared_history: Optional[list[Message]] = None
    turn_messages: list[Message] = field(default_factory=list)
    state: LoopState = LoopState.INIT
    iterations: int = 0
    final_text: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)
    usage: UsageTracker = field(default_factory=UsageTracker)
    started: float = field(default_factory=time.perf_counter)

    @property
    def cancelled(self) -> bool:
        return self.stream.cancelled


# =============================================================================
# Agent Loop
# =============================================================================


class AgentLoop:
    """Runs requests against a reasoning engine with tools.

    One instance serves many concurrent requests; all per-request state
    lives in the request's own turn object. The cache and store are shared
    services injected at construction.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        executor: ToolExecutor,
        context: ContextStrategyManager,
        budget: Optional[TokenBudget] = None,
        cache: Optional[ResponseCache] = None,
        store: Optional["ConversationStore"] = None,
        config: Optional[LoopConfig] = None,
    ) -> None:
        """Initialize the loop.

        Args:
            engine: Reasoning engine
            executor: Tool executor over the registered tools
            context: Strategy manager used by the prepare step
            budget: Token and user budget enforcer
            cache: Shared response cache
            store: Conversation store for history, persistence and usage
            config: Loop configuration
        """
        self._engine = engine
        self._executor = executor
        self._context = context
        self._budget = budget or TokenBudget(store=store)
        self._cache = cache
        self._store = store
        self._config = config or LoopConfig()
        self._background: set[asyncio.Task[AgentRunResult]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: "KeelSettings",
        engine: ReasoningEngine,
        registry: Optional[ToolRegistry] = None,
        store: Optional["ConversationStore"] = None,
        cache: Optional[ResponseCache] = None,
        summarizer: Any = None,
    ) -> "AgentLoop":
        """Build a loop and its collaborators from settings.

        Raises:
            ConfigurationError: If any settings group is inconsistent.
        """
        agent = settings.agent
        executor = ToolExecutor(
            registry or ToolRegistry(),
            timeout_seconds=agent.tool_timeout_seconds,
            policy=ToolExecutionPolicy(agent.tool_execution_policy),
            max_concurrent=agent.max_concurrent_tools,
        )
        return cls(
            engine=engine,
            executor=executor,
            context=ContextStrategyManager.from_settings(settings, store=store, summarizer=summarizer),
            budget=TokenBudget(BudgetConfig.from_settings(settings.budget), store=store),
            cache=cache,
            store=store,
            config=LoopConfig.from_settings(settings),
        )

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def context(self) -> ContextStrategyManager:
        return self._context

    @property
    def cache(self) -> Optional[ResponseCache]:
        return self._cache

    # -------------------------------------------------------------------------
    # Entry Points
    # -------------------------------------------------------------------------

    async def run(self, request: AgentRequest, stream: EventStream) -> AgentRunResult:
        """Run one request, writing events to ``stream``.

        The stream is closed when the request ends.
        """
        turn = _Turn(
            request=request,
            stream=stream,
            system_prompt=request.system_prompt or self._config.system_prompt,
        )
        try:
            result = await self._run(turn)
        except Exception as e:
            logger.exception(f"[AgentLoop] Request failed unexpectedly: {type(e).__name__}: {e}")
            error = e if isinstance(e, KeelError) else KeelError(
                f"{type(e).__name__}: {e}", code="INTERNAL_ERROR"
            )
            if not turn.cancelled:
                await stream.emit(error_event(error.message, error.code))
            result = self._result(turn, TerminationReason.INTERNAL_ERROR, error=error)
        finally:
            turn.state = LoopState.TERMINATED
            await stream.close()
        result.duration_ms = (time.perf_counter() - turn.started) * 1000
        logger.info(
            f"[AgentLoop] Request finished: reason={result.reason.value}, "
            f"iterations={result.iterations}, tools={len(result.tool_calls)}, "
            f"tokens={result.usage.total_tokens}, {result.duration_ms:.0f}ms"
        )
        return result

    async def stream(
        self,
        request: AgentRequest,
        queue_size: int = 100,
    ) -> AsyncIterator[StreamEvent]:
        """Run a request and yield its events as they are produced.

        Leaving the iteration early cancels the request at its next safe
        point.
        """
        events = EventStream(max_size=queue_size)
        task = asyncio.create_task(self.run(request, events))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        finished = False
        try:
            async for event in events:
                yield event
            finished = True
        finally:
            if not finished and not task.done():
                events.cancel()
                logger.info("[AgentLoop] Consumer left; request cancelled")

    async def run_to_completion(self, request: AgentRequest) -> tuple[AgentRunResult, list[StreamEvent]]:
        """Run a request and collect every event."""
        events = EventStream()
        collected: list[StreamEvent] = []

        async def drain() -> None:
            async for event in events:
                collected.append(event)

        drainer = asyncio.create_task(drain())
        result = await self.run(request, events)
        await drainer
        return result, collected

    # -------------------------------------------------------------------------
    # State Machine
    # -------------------------------------------------------------------------

    async def _run(self, turn: _Turn) -> AgentRunResult:
        request = turn.request

        rejection = await self._check_allowance(turn)
        if rejection is not None:
            return rejection

        cached = await self._serve_from_cache(turn)
        if cached is not None:
            return cached

        turn.history = await self._load_history(request)
        reason = TerminationReason.MAX_ITERATIONS

        while turn.iterations < self._config.max_iterations:
            if turn.cancelled:
                reason = TerminationReason.CANCELLED
                break

            turn.state = LoopState.CALL_MODEL
            turn.iterations += 1
            try:
                response = await self._call_model(turn)
            except ModelCallError as e:
                logger.error(f"[AgentLoop] Model call failed on iteration {turn.iterations}: {e.message}")
                await turn.stream.emit(error_event(e.message, e.code))
                return self._result(turn, TerminationReason.MODEL_ERROR, error=e)

            turn.state = LoopState.ROUTE
            if response.text:
                turn.final_text = response.text
            requests = response.tool_requests
            if not requests or response.stop_reason in TERMINAL_STOP_REASONS:
                reason = TerminationReason.DONE
                break

            turn.state = LoopState.EXECUTE_TOOLS
            await self._execute_tools(turn, response)

        if reason is TerminationReason.MAX_ITERATIONS:
            logger.warning(f"[AgentLoop] Reached max iterations ({self._config.max_iterations})")
        if turn.cancelled:
            return self._result(turn, TerminationReason.CANCELLED)

        await self._finish(turn, reason)
        return self._result(turn, reason)

    async def _check_allowance(self, turn: _Turn) -> Optional[AgentRunResult]:
        user_id = turn.request.user_id
        if not user_id:
            return None
        input_tokens = estimate_conversation(
            [*(turn.request.history or []), Message(role=Role.USER, content=turn.request.message)],
            self._executor.registry.schemas(),
            turn.system_prompt,
        )
        estimated = estimate_request_cost_cents(
            self._config.model, input_tokens, self._config.max_output_tokens
        )
        outcome = await capture(
            self._budget.can_user_make_request(user_id, estimated),
            lambda msg: StoreError(msg, operation="get_user_budget"),
        )
        decision = degrade(outcome, lambda: AllowanceDecision(allowed=True), "user budget check")
        if decision.allowed:
            return None
        status = decision.status
        error = BudgetExceededError(
            decision.reason or "Monthly budget exceeded",
            user_id=user_id,
            projected_cents=(status.total_cost_cents + estimated) if status else estimated,
            limit_cents=status.limit_cents if status else 0.0,
        )
        await turn.stream.emit(error_event(error.message, error.code))
        return self._result(turn, TerminationReason.BUDGET_EXCEEDED, error=error)

    def _cache_eligible(self, turn: _Turn) -> bool:
        return (
            self._cache is not None
            and turn.request.use_cache
            and not turn.request.history
            and turn.request.conversation_id is None
        )

    async def _serve_from_cache(self, turn: _Turn) -> Optional[AgentRunResult]:
        if not self._cache_eligible(turn):
            return None
        entry = self._cache.get(turn.request.message, context=turn.system_prompt)
        if entry is None:
            return None
        logger.info(f"[AgentLoop] Cache hit ({entry.hit_count} hits, {entry.tokens_saved} tokens saved)")
        turn.final_text = entry.response
        await turn.stream.emit(text_event(entry.response))
        await turn.stream.emit(done_event(
            response=entry.response,
            tool_calls=[],
            iterations=0,
            reason=TerminationReason.CACHE_HIT.value,
            conversation_id=turn.request.conversation_id,
            usage=turn.usage.to_dict(),
        ))
        return self._result(turn, TerminationReason.CACHE_HIT)

    async def _load_history(self, request: AgentRequest) -> list[Message]:
        if request.history is not None:
            return list(request.history)
        if self._store is None or request.conversation_id is None:
            return []
        outcome = await capture(
            self._store.list_messages(request.conversation_id),
            lambda msg: StoreError(msg, operation="list_messages"),
        )
        return degrade(outcome, list, "history load")

    async def _prepare_context(self, turn: _Turn) -> list[dict[str, Any]]:
        """History through the strategy manager, then the budget clamp."""
        if turn.prepared_history is None:
            base = [*turn.history, Message(role=Role.USER, content=turn.request.message)]
            options = StrategyOptions(
                strategy=self._config.strategy,
                enable_compression=self._config.enable_compression,
                enable_retrieval=self._config.enable_retrieval,
                conversation_id=turn.request.conversation_id,
            )
            result = await self._context.apply_strategy(base, options)
            turn.prepared_history = result.messages
            logger.debug(
                f"[AgentLoop] Context prepared with {result.strategy_used.value}: "
                f"{result.original_tokens} -> {result.final_tokens} tokens"
            )

        candidate = [*turn.prepared_history, *turn.turn_messages]
        truncation = self._budget.truncate_to_fit(
            candidate,
            tools=self._executor.registry.schemas(),
            system_prompt=turn.system_prompt,
            min_messages=len(turn.turn_messages) + 1,
        )
        if truncation.messages_dropped:
            logger.info(
                f"[AgentLoop] Budget clamp dropped {truncation.messages_dropped} messages "
                f"({truncation.token_count} tokens kept)"
            )
        return [m.to_engine_message() for m in truncation.messages]

    async def _call_model(self, turn: _Turn) -> ModelResponse:
        """One model call with fragment streaming and a timeout.

        Raises:
            ModelCallError: On any engine failure, including timeouts.
        """
        messages = await self._prepare_context(turn)
        model_request = ModelRequest(
            system_prompt=turn.system_prompt,
            messages=messages,
            tools=self._executor.registry.schemas(),
            max_output_tokens=self._config.max_output_tokens,
            thinking_budget=self._config.thinking_budget,
        )
        streamed = False
        announced: set[str] = set()

        async def on_fragment(kind: BlockType, fragment: Union[str, ContentBlock]) -> None:
            nonlocal streamed
            if kind is BlockType.TOOL_USE:
                announced.add(fragment.id)
                await turn.stream.emit(self._tool_notice(fragment))
                return
            streamed = True
            if kind is BlockType.TEXT:
                await turn.stream.emit(text_event(fragment))
            elif kind is BlockType.THINKING:
                await turn.stream.emit(thinking_event(fragment))

        timeout = self._config.model_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._engine.complete(model_request, on_fragment),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ModelTimeoutError(timeout, model=self._config.model)
        except ModelCallError:
            raise
        except Exception as e:
            raise ModelCallError(f"{type(e).__name__}: {e}", model=self._config.model) from e

        turn.usage.record_usage(
            response.input_tokens,
            response.output_tokens,
            model=response.model or self._config.model,
        )

        # Blocks the engine did not stream are emitted here, in block order.
        for block in response.content:
            if block.type is BlockType.TOOL_USE:
                if block.id not in announced:
                    await turn.stream.emit(self._tool_notice(block))
            elif streamed or not block.text:
                continue
            elif block.type is BlockType.TEXT:
                await turn.stream.emit(text_event(block.text))
            elif block.type is BlockType.THINKING:
                await turn.stream.emit(thinking_event(block.text))
        return response

    def _tool_notice(self, block: ContentBlock) -> StreamEvent:
        return tool_event(
            block.name,
            block.id,
            input=block.input if self._config.verbose else None,
            param_summary=summarize_input(block.input),
        )

    async def _execute_tools(self, turn: _Turn, response: ModelResponse) -> None:
        requests = response.tool_requests
        for tool_request in requests:
            call: dict[str, Any] = {"name": tool_request.name, "id": tool_request.id}
            if self._config.verbose:
                call["input"] = tool_request.input
            turn.tool_calls.append(call)

        results = await self._executor.execute_all(requests, should_stop=lambda: turn.cancelled)
        turn.tool_results.extend(results)

        max_tokens = self._config.tool_result_max_tokens
        for result in results:
            await turn.stream.emit(tool_result_event(
                result.name,
                result.id,
                result.success,
                result.content_text(max_tokens)[: self._config.tool_result_preview_chars],
                result.duration_ms,
            ))

        assistant = response.to_assistant_message()
        tool_message = build_tool_result_message(results, max_tokens)
        turn.turn_messages.append(Message(
            role=Role.ASSISTANT,
            content=response.text,
            tools_used=tuple(r.name for r in requests),
            blocks=tuple(assistant["content"]),
        ))
        turn.turn_messages.append(Message(
            role=Role.USER,
            content="\n".join(block["content"] for block in tool_message["content"]),
            blocks=tuple(tool_message["content"]),
        ))

    async def _finish(self, turn: _Turn, reason: TerminationReason) -> None:
        request = turn.request
        response = turn.final_text or DEFAULT_RESPONSE

        if self._store is not None and request.conversation_id:
            tools_used = tuple(c["name"] for c in turn.tool_calls) or None
            outcome = await capture(
                self._store.append_messages(request.conversation_id, [
                    Message(role=Role.USER, content=request.message),
                    Message(role=Role.ASSISTANT, content=response, tools_used=tools_used),
                ]),
                lambda msg: StoreError(msg, operation="append_messages"),
            )
            if not outcome.ok:
                logger.error(f"[AgentLoop] Failed to save messages: {outcome.error}")

        if request.user_id and turn.usage.call_count:
            outcome = await capture(
                self._budget.record_usage(request.user_id, turn.usage.total_tokens, turn.usage.cost_cents),
                lambda msg: StoreError(msg, operation="record_usage"),
            )
            if not outcome.ok:
                logger.error(f"[AgentLoop] Failed to record usage: {outcome.error}")

        if (
            self._cache_eligible(turn)
            and reason is TerminationReason.DONE
            and not turn.tool_calls
            and turn.final_text
        ):
            self._cache.set(
                request.message,
                turn.final_text,
                tokens_saved=turn.usage.total_tokens,
                context=turn.system_prompt,
            )

        await turn.stream.emit(done_event(
            response=response,
            tool_calls=turn.tool_calls,
            iterations=turn.iterations,
            reason=reason.value,
            conversation_id=request.conversation_id,
            usage=turn.usage.to_dict(),
        ))

    def _result(
        self,
        turn: _Turn,
        reason: TerminationReason,
        error: Optional[KeelError] = None,
    ) -> AgentRunResult:
        return AgentRunResult(
            response=turn.final_text or (DEFAULT_RESPONSE if error is None else ""),
            reason=reason,
            iterations=turn.iterations,
            tool_calls=list(turn.tool_calls),
            tool_results=list(turn.tool_results),
            usage=turn.usage,
            error=error,
        )


__all__ = [
    "AgentLoop",
    "AgentRequest",
    "AgentRunResult",
    "LoopConfig",
    "LoopState",
    "TerminationReason",
    "DEFAULT_RESPONSE",
    "DEFAULT_SYSTEM_PROMPT",
]
