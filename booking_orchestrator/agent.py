"""LangGraph tool-calling loop for the hospital booking assistant.

Architecture:
  One StateGraph per intent, two nodes:

    1. **model** -- Claude with the intent's tool subset bound.  Counts its
                    own invocations and refuses to run past the cap.
    2. **tools** -- dispatches each requested tool call through the
                    ``ToolName`` table on a worker pool with a timeout.

  Routing:
    model -> (tool calls?)  -> tools -> model (loop)
          -> (no tool calls?) -> END
          -> (cap reached?)   -> END

  ``run`` turns the final graph state into one of three results:
  ``Answer`` (the model replied), ``ToolError`` (the turn ended on a tool
  error without any reply text) or ``LoopExceeded``.

  The loop never inspects authentication: user-scoped tools get the
  session id injected and decide for themselves.
"""

from __future__ import annotations

import json
import logging
import operator
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as ToolTimeout
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, SystemMessage, ToolMessage
from langchain_core.tools import BaseTool
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from booking_orchestrator.config import (
    ANTHROPIC_API_KEY,
    MAX_AGENT_ITERATIONS,
    MODEL_NAME,
    TOOL_TIMEOUT_SECONDS,
)
from booking_orchestrator.services.intent_router import Intent
from booking_orchestrator.services.metrics import metrics
from booking_orchestrator.tools.registry import (
    PROMPT_SCOPED,
    SESSION_SCOPED,
    ToolName,
    tools_for_intent,
)

logger = logging.getLogger(__name__)

LOOP_EXCEEDED_MESSAGE = (
    "Xin lỗi, tôi chưa thể hoàn tất yêu cầu của bạn lúc này. "
    "Bạn vui lòng thử lại hoặc diễn đạt yêu cầu theo cách khác nhé."
)


# ── Results ──────────────────────────────────────────────────────────


@dataclass
class ToolCallRecord:
    name: str
    args: dict[str, Any]
    result: Any
    is_error: bool = False


@dataclass
class Answer:
    text: str
    used_tool: bool
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


@dataclass
class ToolError:
    error: dict[str, Any]
    used_tool: bool = True
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


@dataclass
class LoopExceeded:
    iterations: int
    used_tool: bool
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


AgentResult = Answer | ToolError | LoopExceeded


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """State flowing through the graph.

    ``messages`` uses the ``add_messages`` reducer and ``tool_calls`` is
    append-only, so nodes return only what they add.  ``system``,
    ``session_id`` and ``user_prompt`` are set once per run.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    system: str
    session_id: str
    user_prompt: str
    iterations: int
    exceeded: bool
    tool_calls: Annotated[list[ToolCallRecord], operator.add]


# ── Helpers ──────────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=1024,
    )


def message_text(message: AnyMessage | None) -> str:
    """Plain text of a message whose content may be a list of blocks."""
    if message is None:
        return ""
    content = message.content
    if isinstance(content, list):
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return (content or "").strip()


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def is_error_result(result: Any) -> bool:
    return isinstance(result, dict) and "error" in result


# ── Agent ────────────────────────────────────────────────────────────


class BookingAgent:
    """Bounded tool-calling loop over a ``ToolName -> BaseTool`` table."""

    def __init__(
        self,
        tool_table: dict[ToolName, BaseTool],
        llm: BaseChatModel | None = None,
        *,
        max_iterations: int = MAX_AGENT_ITERATIONS,
        tool_timeout: float = TOOL_TIMEOUT_SECONDS,
        max_workers: int = 8,
    ) -> None:
        self._table = tool_table
        self._llm = llm if llm is not None else _build_llm()
        self._max_iterations = max_iterations
        self._tool_timeout = tool_timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool")
        self._graphs: dict[Intent, Any] = {}

    def run(
        self,
        messages: list[AnyMessage],
        *,
        intent: Intent,
        session_id: str,
        user_prompt: str,
        system_prompt: str,
    ) -> AgentResult:
        """Drive the loop to completion.  LLM errors propagate."""
        graph = self._graph_for(intent)
        final = graph.invoke(
            {
                "messages": messages,
                "system": system_prompt,
                "session_id": session_id,
                "user_prompt": user_prompt,
                "iterations": 0,
                "exceeded": False,
                "tool_calls": [],
            },
            config={"recursion_limit": 2 * self._max_iterations + 5},
        )

        calls: list[ToolCallRecord] = final.get("tool_calls", [])
        used_tool = bool(calls)

        if final.get("exceeded"):
            logger.error(
                "Agent loop exceeded %d iterations (session %s, tools: %s)",
                self._max_iterations, session_id[:8], [c.name for c in calls],
            )
            metrics.record_outcome("Agent", "loop_exceeded")
            return LoopExceeded(final["iterations"], used_tool, calls)

        last = final["messages"][-1] if final["messages"] else None
        text = message_text(last) if isinstance(last, AIMessage) else ""
        if not text and calls and calls[-1].is_error:
            metrics.record_outcome("Agent", "tool_error")
            return ToolError(calls[-1].result, used_tool, calls)

        metrics.record_outcome("Agent", "answer")
        return Answer(text, used_tool, calls)

    @property
    def tool_table(self) -> dict[ToolName, BaseTool]:
        return self._table

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ── Graph assembly ───────────────────────────────────────────────

    def _graph_for(self, intent: Intent):
        if intent not in self._graphs:
            self._graphs[intent] = self._compile(tools_for_intent(self._table, intent))
            logger.debug("Agent graph compiled for %s", intent)
        return self._graphs[intent]

    def _compile(self, tools: dict[ToolName, BaseTool]):
        graph = StateGraph(AgentState)
        graph.add_node("model", self._make_model_node(tools))
        graph.add_node("tools", self._make_tools_node(tools))
        graph.set_entry_point("model")
        graph.add_conditional_edges("model", should_use_tools, {"tools": "tools", END: END})
        graph.add_edge("tools", "model")
        return graph.compile()

    def _make_model_node(self, tools: dict[ToolName, BaseTool]):
        llm_with_tools = self._llm.bind_tools(list(tools.values()))
        max_iterations = self._max_iterations

        def model_node(state: AgentState) -> dict:
            if state["iterations"] >= max_iterations:
                return {"exceeded": True}

            t0 = time.perf_counter()
            try:
                response = llm_with_tools.invoke(
                    [SystemMessage(content=state["system"])] + state["messages"]
                )
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise

            logger.debug(
                "model iteration %d responded in %.0fms (%d tool calls)",
                state["iterations"] + 1, elapsed, len(getattr(response, "tool_calls", []) or []),
            )
            return {"messages": [response], "iterations": state["iterations"] + 1}

        return model_node

    def _make_tools_node(self, tools: dict[ToolName, BaseTool]):
        def tools_node(state: AgentState) -> dict:
            last = state["messages"][-1]
            replies: list[ToolMessage] = []
            records: list[ToolCallRecord] = []
            for call in last.tool_calls:
                args = dict(call.get("args") or {})
                result = self.execute_tool(
                    tools, call["name"], args, state["session_id"], state["user_prompt"],
                )
                is_error = is_error_result(result)
                records.append(ToolCallRecord(call["name"], args, result, is_error))
                replies.append(ToolMessage(
                    content=_dumps(result),
                    tool_call_id=call["id"],
                    name=call["name"],
                    status="error" if is_error else "success",
                ))
            return {"messages": replies, "tool_calls": records}

        return tools_node

    # ── Dispatch ─────────────────────────────────────────────────────

    def execute_tool(
        self,
        tools: dict[ToolName, BaseTool],
        raw_name: str,
        args: dict[str, Any],
        session_id: str,
        user_prompt: str = "",
    ) -> Any:
        """Run one tool call and return its result or a structured error.

        Never raises: unknown tools, malformed arguments, timeouts and
        handler crashes all become ``{"error": ...}`` payloads for the model.
        """
        name = ToolName.parse(raw_name)
        if name is None or name not in tools:
            logger.warning("Model called unknown tool %r", raw_name)
            return {
                "error": "UNKNOWN_TOOL",
                "message": f"Tool '{raw_name}' không tồn tại. Các tool hợp lệ: {sorted(str(t) for t in tools)}.",
            }

        call_args = dict(args)
        if name in SESSION_SCOPED:
            call_args["session_id"] = session_id
        if name in PROMPT_SCOPED:
            call_args["user_prompt"] = user_prompt

        t0 = time.perf_counter()
        future = self._pool.submit(tools[name].invoke, call_args)
        try:
            result = future.result(timeout=self._tool_timeout)
        except ToolTimeout:
            future.cancel()
            logger.warning("Tool %s timed out after %.1fs", name, self._tool_timeout)
            metrics.record_failure("tool", name, error_type="Timeout")
            return {
                "error": "TOOL_TIMEOUT",
                "message": "Hệ thống phản hồi chậm, vui lòng thử lại.",
                "retryable": True,
            }
        except ValueError as exc:
            # pydantic's ValidationError is a ValueError
            logger.warning("Tool %s rejected arguments %r: %s", name, args, exc)
            metrics.record_failure("tool", name, error_type="InvalidArguments")
            return {"error": "INVALID_ARGUMENTS", "message": str(exc)}
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            metrics.record_failure("tool", name, error_type=type(exc).__name__)
            return {"error": "TOOL_FAILED", "message": "Có lỗi xảy ra khi xử lý yêu cầu."}

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("tool", name, latency_ms=elapsed)
        logger.debug("Tool %s finished in %.0fms", name, elapsed)
        return result


# ── Conditional edges ────────────────────────────────────────────────


def should_use_tools(state: AgentState) -> str:
    if state.get("exceeded"):
        return END
    last_message = state["messages"][-1]
    if getattr(last_message, "tool_calls", None):
        return "tools"
    return END
