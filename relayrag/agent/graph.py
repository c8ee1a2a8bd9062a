from __future__ import annotations

import time

from langgraph.graph import END, StateGraph

from relayrag.agent.prompts import build_system_prompt
from relayrag.domain.state import ConversationState
from relayrag.services.conversations import ConversationStore
from relayrag.services.quota import QuotaIdentity, QuotaService, estimate_request_cost
from relayrag.services.retrieval import RetrievalEngine


def _timed(state: ConversationState, key: str, started: float) -> dict[str, float]:
    timings = dict(state.get("timings_ms") or {})
    timings[key] = (time.monotonic() - started) * 1000.0
    return timings


def build_graph(
    *,
    store: ConversationStore,
    quota: QuotaService,
    identity: QuotaIdentity,
    history_limit: int,
    retrieval: RetrievalEngine | None = None,
    top_k: int | None = None,
):
    """Prepare a conversation turn up to quota admission.

    Generation is streamed by the orchestrator afterwards; this graph only
    moves the turn through context building and the quota check.
    """
    graph = StateGraph(ConversationState)

    async def load_history(state: ConversationState) -> dict:
        started = time.monotonic()
        history = await store.recent_turns(state["session_id"], history_limit)
        return {"history": history, "timings_ms": _timed(state, "history_load", started)}

    async def retrieve(state: ConversationState) -> dict:
        started = time.monotonic()
        if retrieval is None:
            return {"retrieved": []}
        # Best-effort: search() degrades to an empty list on failure.
        retrieved = await retrieval.search(
            state["user_message"],
            top_k=top_k,
            company_id=state["company_id"],
        )
        return {"retrieved": retrieved, "timings_ms": _timed(state, "retrieval", started)}

    async def build_context(state: ConversationState) -> dict:
        system_prompt = build_system_prompt(
            state["session_type"],
            state["session_context"],
            state["retrieved"],
        )
        return {"system_prompt": system_prompt}

    async def check_quota(state: ConversationState) -> dict:
        started = time.monotonic()
        estimated = estimate_request_cost(
            state["system_prompt"],
            *(turn.content for turn in state["history"]),
            state["user_message"],
        )
        decision = await quota.check_and_admit(identity, estimated)
        return {
            "estimated_cost": estimated,
            "quota_decision": decision,
            "timings_ms": _timed(state, "quota_check", started),
        }

    graph.add_node("load_history", load_history)
    graph.add_node("retrieve", retrieve)
    graph.add_node("build_context", build_context)
    graph.add_node("check_quota", check_quota)

    graph.set_entry_point("load_history")
    graph.add_edge("load_history", "retrieve")
    graph.add_edge("retrieve", "build_context")
    graph.add_edge("build_context", "check_quota")
    graph.add_edge("check_quota", END)

    return graph.compile()


async def run_graph(
    *,
    store: ConversationStore,
    quota: QuotaService,
    identity: QuotaIdentity,
    state: ConversationState,
    history_limit: int,
    retrieval: RetrievalEngine | None = None,
    top_k: int | None = None,
) -> ConversationState:
    graph = build_graph(
        store=store,
        quota=quota,
        identity=identity,
        history_limit=history_limit,
        retrieval=retrieval,
        top_k=top_k,
    )
    return await graph.ainvoke(state)
