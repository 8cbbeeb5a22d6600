"""LangGraph wrapper for the task loop - trace harness only.

Each iteration of a LoopRun becomes a visit to the `iterate` node so the loop
shows up step by step in LangGraph Studio.

NO new orchestration logic. NO retries beyond what execution_loop already does.
Same semantics, just structured visibility.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from agentic_task_loop.execution_loop import LoopConfig, LoopController, LoopRun, LoopSummary

# Unbounded loops still need a finite LangGraph recursion limit
UNBOUNDED_RECURSION_LIMIT = 2**31 - 1


class LoopGraphState(TypedDict):
    """State for the loop graph."""
    task_id: str
    status: str  # PENDING | RUNNING | SUCCESS | EXHAUSTED
    iterations: int
    summary: Optional[LoopSummary]
    # LoopRun reference (passed through state)
    loop: Any


# --- Graph Nodes ---

def node_start(state: LoopGraphState) -> LoopGraphState:
    """Short-circuit when the task was already verified."""
    loop: LoopRun = state["loop"]
    if loop.early_summary is not None:
        return {**state, "status": "SUCCESS", "summary": loop.early_summary}
    return {**state, "status": "RUNNING"}


def node_iterate(state: LoopGraphState) -> LoopGraphState:
    """One worker invocation plus its verdict."""
    loop: LoopRun = state["loop"]
    summary = loop.step()
    return {
        **state,
        "iterations": loop.invocations,
        "status": "SUCCESS" if summary is not None else "RUNNING",
        "summary": summary,
    }


def node_exhausted(state: LoopGraphState) -> LoopGraphState:
    """Budget spent without a pass; raises IterationBudgetExhausted."""
    loop: LoopRun = state["loop"]
    loop.fail_exhausted()
    return {**state, "status": "EXHAUSTED"}


# --- Conditional Edges ---

def next_step(state: LoopGraphState) -> str:
    if state["status"] == "SUCCESS":
        return "end"
    if state["loop"].has_budget:
        return "iterate"
    return "exhausted"


# --- Graph Builder ---

def build_loop_graph() -> StateGraph:
    """
    Build the loop graph.

    Flow:
        start -> (already verified?) -> end
              -> iterate -> (passed?) -> end
                         -> (budget left?) -> iterate
                         -> exhausted -> end
    """
    graph = StateGraph(LoopGraphState)

    graph.add_node("start", node_start)
    graph.add_node("iterate", node_iterate)
    graph.add_node("exhausted", node_exhausted)

    graph.set_entry_point("start")

    route = {"end": END, "iterate": "iterate", "exhausted": "exhausted"}
    graph.add_conditional_edges("start", next_step, route)
    graph.add_conditional_edges("iterate", next_step, route)
    graph.add_edge("exhausted", END)

    return graph


def recursion_limit_for(max_iterations: Optional[int]) -> int:
    # start + one visit per iteration + exhausted, with headroom
    if max_iterations is None:
        return UNBOUNDED_RECURSION_LIMIT
    return max_iterations + 5


def run_loop_graph(controller: LoopController, task_id: str, config: LoopConfig) -> LoopSummary:
    """
    Run a task's loop through the graph and return the summary.

    This is the traced equivalent of LoopController.run().
    """
    loop = controller.start(task_id, config)
    compiled = build_loop_graph().compile()

    initial_state: LoopGraphState = {
        "task_id": task_id,
        "status": "PENDING",
        "iterations": 0,
        "summary": None,
        "loop": loop,
    }

    final_state = compiled.invoke(
        initial_state,
        config={"recursion_limit": recursion_limit_for(config.max_iterations)},
    )
    return final_state["summary"]


# Pre-compiled graph for Studio discovery
loop_graph = build_loop_graph().compile()
