"""
AGENTIC_LOOP
============

Core execution engine for taskloop.

This is the innermost loop that drives one conversation turn with an LLM.
The TaskScheduler (and any host process handling chat messages) ultimately
calls into this.

Execution Cycle
---------------
::

    1. Append the user message to the ConversationHistory

    2. Call the LLM provider with the full history plus board/worker context
       (gated by ResourceMonitor.track_llm_call_start())

    3. If the LLM returns tool calls:
       → Check for a stuck loop (identical ``name:arguments`` signatures)
       → Append the assistant message, execute tools via ToolExecutor
       → Append tool messages, continue to next iteration

    4. If the LLM returns text (no tool calls):
       → Final answer, run completes

    5. Repeat until: final answer, stuck loop, fatal error, cancellation,
       or max_iterations

Iteration Outcomes
------------------
Each iteration produces an ``IterationOutcome``. ``_emit_outcome`` is the one
place that translates a terminal outcome into LoopEvents callbacks and a
LoopResult, so callers can use either the observer style or the returned
result.

Error Policy
------------
- Transient errors (timeouts, network, 429, 502/503) are retried within the
  same iteration number: 1 s, 2 s, 4 s, at most 3 times per iteration.
- Everything else becomes a user-facing message via ``on_final_message``.
- ``ResourceLimitExceeded`` is the only exception that leaves ``run()``.

Usage::

    loop = AgenticLoop(provider, tool_registry=registry, resource_monitor=monitor,
                       events=LoopEvents(on_final_message=print))
    result = loop.run("Summarize my overdue tasks", LoopContext(model="gpt-4o-mini"))
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from .config.loader import LoopConfig
from .conversation import ConversationHistory, ToolCall, ToolMessage
from .errors import MaxIterationsError, ResourceLimitExceeded, StuckLoopError
from .monitor import ResourceMonitor
from .observability import (
    correlated_logger,
    reset_current_correlation_id,
    set_current_correlation_id,
)
from .providers.base import BoardContext, LLMCallOptions, LLMProvider, LLMResponse, WorkerContext
from .tools.base import ToolRegistry
from .tools.executor import ToolExecutionHooks, ToolExecutor

logger = logging.getLogger(__name__)


# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================

_TIMEOUT_MARKERS = ("timeout", "timed out")
_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests")
_NETWORK_MARKERS = ("network", "econnrefused", "connection reset", "socket hang up")
_SERVER_MARKERS = ("503", "service unavailable", "502", "bad gateway")
_AUTH_MARKERS = ("unauthorized", "401", "403")

USER_MESSAGES = {
    "timeout": "The request took too long to complete. Please try again.",
    "rate_limit": "The service is receiving too many requests right now. Please wait a moment and try again.",
    "network": "The service is temporarily unavailable. Please try again later.",
    "unauthorized": "Authentication failed. Please contact support.",
    "stuck_loop": "The assistant got stuck in a loop. Please try rephrasing your request.",
    "generic": (
        "An error occurred while processing your request. "
        "Please try again or contact support if the issue persists."
    ),
}


@dataclass
class ClassifiedError:
    type: str  # stuck_loop | auth_error | max_iterations | transient | persistent_failure | unknown
    category: str  # timeout | rate_limit | network | unauthorized | stuck_loop | max_iterations | generic
    error: Exception
    user_message: str

    @property
    def is_transient(self) -> bool:
        return self.type == "transient"


def classify_error(error: Exception, after_retries: bool = False) -> ClassifiedError:
    """
    Classify an iteration failure by case-insensitive substring match.

    Args:
        error: The exception raised during the iteration
        after_retries: True once the retry budget is spent; transient
            errors then become ``persistent_failure``

    Returns:
        ClassifiedError with the user-facing replacement text
    """
    text = str(error).lower()

    if "stuck loop" in text:
        return ClassifiedError("stuck_loop", "stuck_loop", error, USER_MESSAGES["stuck_loop"])

    if any(m in text for m in _AUTH_MARKERS):
        return ClassifiedError("auth_error", "unauthorized", error, USER_MESSAGES["unauthorized"])

    if "maximum iterations" in text:
        return ClassifiedError("max_iterations", "max_iterations", error, str(error))

    category = None
    if any(m in text for m in _TIMEOUT_MARKERS):
        category = "timeout"
    elif any(m in text for m in _RATE_LIMIT_MARKERS):
        category = "rate_limit"
    elif any(m in text for m in _NETWORK_MARKERS) or any(m in text for m in _SERVER_MARKERS):
        category = "network"

    if category:
        error_type = "persistent_failure" if after_retries else "transient"
        return ClassifiedError(error_type, category, error, USER_MESSAGES[category])

    return ClassifiedError("unknown", "generic", error, USER_MESSAGES["generic"])


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class LoopContext:
    """Per-run inputs passed through to the provider unmodified."""
    model: Optional[str] = None
    max_iterations: Optional[int] = None
    board_context: Optional[BoardContext] = None
    worker_context: Optional[WorkerContext] = None
    navigation_context: Optional[Dict] = None
    worker_id: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    store_id: Optional[str] = None
    cancel_check: Optional[Callable[[], bool]] = None


@dataclass
class LoopEvents:
    """Observer callbacks. Exceptions raised by a callback are logged and ignored."""
    on_iteration_start: Optional[Callable[[int], None]] = None
    on_iteration_complete: Optional[Callable[[int, LLMResponse], None]] = None
    on_tools_executing: Optional[Callable[[List[ToolCall]], None]] = None
    on_tools_complete: Optional[Callable[[List[ToolMessage]], None]] = None
    on_final_message: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[Exception, int], None]] = None
    on_complete: Optional[Callable[[int], None]] = None
    on_retry: Optional[Callable[[int, int, int, Exception], None]] = None


class IterationOutcome(Enum):
    CONTINUING = "continuing"
    FINAL_MESSAGE = "final_message"
    STUCK_LOOP = "stuck_loop"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FATAL_ERROR = "fatal_error"
    CANCELLED = "cancelled"


@dataclass
class IterationStep:
    outcome: IterationOutcome
    iteration: int
    message: Optional[str] = None
    error: Optional[Exception] = None
    classified: Optional[ClassifiedError] = None


@dataclass
class LoopResult:
    """Result of an agentic loop run."""
    status: Literal["completed", "loop_detected", "error", "max_turns", "cancelled"]
    iterations: int
    final_response: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    tools_called: List[str] = field(default_factory=list)
    retries: int = 0
    total_duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "iterations": self.iterations,
            "final_response": self.final_response,
            "error": self.error,
            "error_type": self.error_type,
            "tools_called": self.tools_called,
            "retries": self.retries,
            "total_duration_ms": self.total_duration_ms,
        }


# ============================================================================
# LOOP DETECTOR
# ============================================================================

class LoopDetector:
    """
    Detects an agent repeating the same tool call.

    A call's signature (``name:arguments``) is a repeat when it appears among
    the last ``window`` recorded calls. Repeats extend that signature's
    occurrence count; anything else restarts it at 1. The run is stuck when a
    count reaches ``repeat_threshold``.
    """

    DEFAULT_WINDOW = 3
    DEFAULT_REPEAT_THRESHOLD = 3
    MAX_HISTORY = 50

    def __init__(self, window: int = None, repeat_threshold: int = None):
        self.window = window or self.DEFAULT_WINDOW
        self.repeat_threshold = repeat_threshold or self.DEFAULT_REPEAT_THRESHOLD
        self._call_history: List[str] = []
        self._counts: Dict[str, int] = {}

    def reset(self) -> None:
        self._call_history = []
        self._counts = {}

    def check(self, tool_calls: List[ToolCall]) -> Optional[ToolCall]:
        """
        Record a batch of tool calls.

        Returns:
            The call that tripped detection, or None
        """
        for tool_call in tool_calls:
            signature = tool_call.signature
            if signature in self._call_history[-self.window:]:
                count = self._counts.get(signature, 1) + 1
                self._counts[signature] = count
                logger.warning(f"Detected repeated tool call {tool_call.name} (occurrence {count})")
                if count >= self.repeat_threshold:
                    return tool_call
            else:
                self._counts[signature] = 1

            self._call_history.append(signature)
            if len(self._call_history) > self.MAX_HISTORY:
                self._call_history = self._call_history[-self.MAX_HISTORY:]
        return None

    def recent_calls(self, count: int = 5) -> List[str]:
        return self._call_history[-count:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_calls": len(self._call_history),
            "max_occurrences": max(self._counts.values(), default=0),
        }


@dataclass
class _RunState:
    started: float
    detector: LoopDetector
    warning_threshold: int
    tools_called: List[str] = field(default_factory=list)
    retries: int = 0


# ============================================================================
# AGENTIC LOOP
# ============================================================================

class AgenticLoop:
    """
    Bounded, retrying, loop-detecting LLM/tool conversation.

    One instance owns one ConversationHistory. Iterations are strictly
    sequential; run() may be called again to continue the same conversation.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        tool_executor: Optional[ToolExecutor] = None,
        tool_registry: Optional[ToolRegistry] = None,
        events: Optional[LoopEvents] = None,
        initial_history: Optional[List] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        config: Optional[LoopConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the agentic loop.

        Args:
            llm_provider: Provider used for every completion
            tool_executor: Executor for tool calls (built from tool_registry if None)
            tool_registry: Registry used when no executor is given
            events: Observer callbacks
            initial_history: Messages to resume from (LLMMessage or dicts)
            resource_monitor: Shared admission control; None disables gating
            config: Loop settings (defaults to LoopConfig())
            sleep: Backoff sleep function, seconds (injectable for tests)
        """
        self.llm_provider = llm_provider
        self.events = events or LoopEvents()
        self.resource_monitor = resource_monitor
        self.config = config or LoopConfig()
        self._sleep = sleep
        self.history = ConversationHistory(initial_history)

        if tool_executor is None:
            tool_executor = ToolExecutor(
                tool_registry or ToolRegistry(),
                hooks=ToolExecutionHooks(
                    on_tool_start=lambda tc: logger.debug(f"Executing tool {tc.name}"),
                    on_tool_complete=lambda tc, result: logger.debug(f"Tool {tc.name} completed"),
                    on_tool_error=lambda tc, error: logger.error(f"Tool {tc.name} error: {error}"),
                ),
            )
        self.tool_executor = tool_executor

    # ====================================================================
    # PUBLIC API
    # ====================================================================

    def run(self, user_message: str, context: Optional[LoopContext] = None) -> LoopResult:
        """
        Run the loop for one user message.

        Returns:
            LoopResult describing how the run ended

        Raises:
            ResourceLimitExceeded: If the resource monitor rejects an LLM call
        """
        context = context or LoopContext()
        token = set_current_correlation_id(context.correlation_id)
        try:
            return self._run(user_message, context)
        finally:
            reset_current_correlation_id(token)

    def get_history(self) -> ConversationHistory:
        return self.history

    def clear_history(self) -> None:
        self.history.clear()

    def set_history(self, history: ConversationHistory) -> None:
        """Replace the conversation history (for resuming)."""
        self.history = history

    def get_llm_provider(self) -> LLMProvider:
        return self.llm_provider

    # ====================================================================
    # ITERATION
    # ====================================================================

    def _run(self, user_message: str, context: LoopContext) -> LoopResult:
        max_iterations = self.config.resolve_max_iterations(context.max_iterations)
        log = correlated_logger(logger, context.correlation_id, context.message_id, context.store_id)
        state = _RunState(
            started=time.time(),
            detector=LoopDetector(self.config.stuck_window, self.config.stuck_threshold),
            warning_threshold=int(max_iterations * self.config.warning_ratio),
        )

        self.tool_executor.set_worker_id(context.worker_id)
        self.history.add_user_message(user_message)
        log.info(f"Starting agentic loop (max_iterations={max_iterations}): {user_message[:100]}")

        for iteration in range(1, max_iterations + 1):
            step = self._run_iteration(iteration, max_iterations, context, state, log)
            if step.outcome is not IterationOutcome.CONTINUING:
                return self._emit_outcome(step, max_iterations, state, log)

        step = IterationStep(
            outcome=IterationOutcome.MAX_ITERATIONS_REACHED,
            iteration=max_iterations,
            error=MaxIterationsError(max_iterations),
        )
        return self._emit_outcome(step, max_iterations, state, log)

    def _run_iteration(self, iteration: int, max_iterations: int, context: LoopContext,
                       state: _RunState, log) -> IterationStep:
        """Run one iteration number, retrying transient failures in place."""
        retry_attempts = 0
        max_retries = self.config.max_retries

        while True:
            if self._is_cancelled(context):
                return IterationStep(IterationOutcome.CANCELLED, iteration)

            self._emit("on_iteration_start", iteration)
            try:
                return self._iterate(iteration, max_iterations, context, state, log)
            except ResourceLimitExceeded:
                raise
            except Exception as e:
                classified = classify_error(e, after_retries=retry_attempts >= max_retries)
                log.error(
                    f"Error in iteration {iteration} ({classified.type}, retries={retry_attempts}): {e}"
                )
                if self.resource_monitor is not None:
                    self.resource_monitor.track_error(f"agentic loop {classified.type}")

                if classified.is_transient and iteration < max_iterations and retry_attempts < max_retries:
                    retry_attempts += 1
                    state.retries += 1
                    delay_ms = self.config.base_retry_delay_ms * 2 ** (retry_attempts - 1)
                    log.info(f"Retrying iteration {iteration} in {delay_ms}ms (attempt {retry_attempts}/{max_retries})")
                    self._emit("on_retry", retry_attempts, max_retries, delay_ms, e)
                    if self._is_cancelled(context):
                        return IterationStep(IterationOutcome.CANCELLED, iteration)
                    self._sleep(delay_ms / 1000.0)
                    continue

                return IterationStep(IterationOutcome.FATAL_ERROR, iteration, error=e, classified=classified)

    def _iterate(self, iteration: int, max_iterations: int, context: LoopContext,
                 state: _RunState, log) -> IterationStep:
        log.info(f"Agentic loop iteration {iteration}/{max_iterations}")
        started = time.monotonic()

        response = self._call_provider(context)

        duration_ms = int((time.monotonic() - started) * 1000)
        tool_names = [tc.name for tc in response.tool_calls]
        log.info(
            f"Iteration {iteration} response in {duration_ms}ms"
            + (f", tools={tool_names}" if tool_names else "")
        )
        self._emit("on_iteration_complete", iteration, response)

        if response.tool_calls:
            stuck_call = state.detector.check(response.tool_calls)
            if stuck_call is not None:
                log.error(
                    f"Detected stuck loop on {stuck_call.name}; recent calls: {state.detector.recent_calls()}"
                )
                return IterationStep(
                    IterationOutcome.STUCK_LOOP, iteration, error=StuckLoopError(stuck_call.name)
                )

            if iteration == state.warning_threshold:
                log.warning(f"Approaching iteration limit ({iteration}/{max_iterations})")

            if self._is_cancelled(context):
                return IterationStep(IterationOutcome.CANCELLED, iteration)

            self.history.add_assistant_message(response.message or "", response.tool_calls)
            self._emit("on_tools_executing", response.tool_calls)
            tool_messages = self.tool_executor.execute_tools(response.tool_calls)
            state.tools_called.extend(tool_names)
            self.history.add_tool_messages(tool_messages)
            self._emit("on_tools_complete", tool_messages)
            return IterationStep(IterationOutcome.CONTINUING, iteration)

        final = response.message if response.message and response.message.strip() else None
        if final:
            log.info(f"Final LLM message: {final[:100]}")
            self.history.add_assistant_message(final)
        return IterationStep(IterationOutcome.FINAL_MESSAGE, iteration, message=final)

    def _call_provider(self, context: LoopContext) -> LLMResponse:
        options = LLMCallOptions(
            on_retry=lambda *args: self._emit("on_retry", *args),
            navigation_context=context.navigation_context,
            tools=self.tool_executor.registry.get_schemas() or None,
        )

        call_id = None
        if self.resource_monitor is not None:
            call_id = self.resource_monitor.track_llm_call_start()

        started = time.monotonic()
        try:
            return self.llm_provider.call(
                self.history.get_messages(),
                context.board_context,
                context.model or self.config.default_model,
                context.worker_context,
                options,
            )
        finally:
            if call_id is not None:
                self.resource_monitor.track_llm_call_complete(
                    call_id, response_time_ms=int((time.monotonic() - started) * 1000)
                )

    # ====================================================================
    # OUTCOME → EVENTS
    # ====================================================================

    def _emit_outcome(self, step: IterationStep, max_iterations: int, state: _RunState, log) -> LoopResult:
        """Translate a terminal iteration outcome into callbacks and a LoopResult."""
        outcome = step.outcome
        final_response = None
        error = str(step.error) if step.error else None
        error_type = None

        if outcome is IterationOutcome.FINAL_MESSAGE:
            status = "completed"
            final_response = step.message
            if step.message:
                self._emit("on_final_message", step.message)
            log.info(f"Agentic loop completed after {step.iteration} iterations")

        elif outcome is IterationOutcome.STUCK_LOOP:
            status = "loop_detected"
            error_type = "stuck_loop"
            self._emit("on_error", step.error, step.iteration)

        elif outcome is IterationOutcome.FATAL_ERROR:
            status = "error"
            error_type = step.classified.type
            final_response = step.classified.user_message
            log.error(f"Fatal error ({error_type}), aborting loop: {step.error}")
            self._emit("on_error", step.error, step.iteration)
            self._emit("on_final_message", step.classified.user_message)

        elif outcome is IterationOutcome.MAX_ITERATIONS_REACHED:
            status = "max_turns"
            error_type = "max_iterations"
            log.warning(
                f"Hit max iterations ({max_iterations}); recent calls: {state.detector.recent_calls()}"
            )
            self._emit("on_error", step.error, max_iterations)

        else:
            status = "cancelled"
            error = "Execution cancelled"
            log.info(f"Agentic loop cancelled at iteration {step.iteration}")

        self._emit("on_complete", step.iteration)

        return LoopResult(
            status=status,
            iterations=step.iteration,
            final_response=final_response,
            error=error,
            error_type=error_type,
            tools_called=list(state.tools_called),
            retries=state.retries,
            total_duration_ms=int((time.time() - state.started) * 1000),
        )

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.events, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Loop event callback {name} failed: {e}", exc_info=True)

    @staticmethod
    def _is_cancelled(context: LoopContext) -> bool:
        return bool(context.cancel_check and context.cancel_check())
