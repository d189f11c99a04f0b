import asyncio

import pytest
from langchain_core.language_models import FakeListChatModel
from pydantic import BaseModel, TypeAdapter, ValidationError

from crag_chat.agent import planning
from crag_chat.agent.planning import (
    ContinueWithPlan,
    FinishWithResult,
    Plan,
    PlanEvaluator,
    PlanExecutor,
    PlanGenerator,
    PlanOrResult,
    PlanStep,
    StepExecutionResult,
    _extract_graph_answer,
)
from crag_chat.agent.registry import ToolRegistry, ToolSpec
from crag_chat.agent.relevance import ContextRelevanceEvaluator
from crag_chat.config import AgentConfig
from crag_chat.llm.structured import StructuredChatClient, StructuredOutputError


class LookupInput(BaseModel):
    query: str


class MockLLM:
    pass


class _RecordingRunner:
    def __init__(self, registry: ToolRegistry, output: str) -> None:
        self.registry = registry
        self.output = output
        self.requests: list[str] = []

    async def ainvoke(self, payload: dict) -> dict:
        self.requests.append(str(payload["input"]))
        await self.registry.execute("lookup", {"query": "descaling"})
        return {"output": self.output}


class _DelayedRunner:
    def __init__(self, registry: ToolRegistry, query: str, delay: float) -> None:
        self.registry = registry
        self.query = query
        self.delay = delay

    async def ainvoke(self, payload: dict) -> dict:
        await asyncio.sleep(self.delay)
        await self.registry.execute("lookup", {"query": self.query})
        return {"output": f"looked up {self.query}"}


class _CapturingAgentExecutor:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs


class _CapturingGraph:
    def __init__(self) -> None:
        self.configs: list[dict | None] = []

    async def ainvoke(self, payload: dict, config: dict | None = None) -> dict:
        self.configs.append(config)
        return {"messages": [{"role": "assistant", "content": "done"}]}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def _lookup(data: LookupInput) -> str:
        return f"found {data.query}"

    registry.register(
        ToolSpec(name="lookup", description="lookup", args_schema=LookupInput, handler=_lookup)
    )
    return registry


def _plan(*descriptions: str) -> Plan:
    return Plan(steps=[PlanStep(description=d) for d in descriptions])


def test_plan_or_result_is_exactly_one_variant() -> None:
    adapter = TypeAdapter(PlanOrResult)

    continued = adapter.validate_python({"kind": "plan", "plan": {"steps": [{"description": "a"}]}})
    finished = adapter.validate_python({"kind": "result", "result": {"outcome": "done"}})

    assert isinstance(continued, ContinueWithPlan)
    assert isinstance(finished, FinishWithResult)
    assert not hasattr(continued, "result")
    assert not hasattr(finished, "plan")
    with pytest.raises(ValidationError):
        adapter.validate_python({"kind": "result", "plan": {"steps": [{"description": "a"}]}})


def test_plan_requires_at_least_one_step() -> None:
    with pytest.raises(ValidationError):
        Plan(steps=[])


def test_generate_plan_parses_structured_plan() -> None:
    llm = FakeListChatModel(
        responses=['{"steps": [{"description": "Search the web", "tool": "web_search"}]}']
    )
    generator = PlanGenerator(StructuredChatClient(llm), tool_names=["web_search"])

    plan = asyncio.run(generator.generate_plan("find descaling instructions"))

    assert plan.steps == [PlanStep(description="Search the web", tool="web_search")]


def test_generate_plan_parse_failure_is_fatal() -> None:
    llm = FakeListChatModel(responses=["Step one: panic."])
    generator = PlanGenerator(StructuredChatClient(llm), tool_names=[])

    with pytest.raises(StructuredOutputError):
        asyncio.run(generator.generate_plan("task"))


def test_execute_step_runs_only_first_step_and_captures_tools() -> None:
    registry = _registry()
    runner = _RecordingRunner(registry, "Descale monthly.")
    executor = PlanExecutor(llm=MockLLM(), tool_registry=registry, executor=runner)

    result = asyncio.run(executor.execute_step(_plan("Find descaling", "Summarise")))

    assert result.step.description == "Find descaling"
    assert result.outcome == "Descale monthly."
    assert result.status == "completed"
    assert [trace.name for trace in result.tool_traces] == ["lookup"]
    assert len(runner.requests) == 1
    assert "Execute ONLY step 1: Find descaling" in runner.requests[0]


def test_execute_step_request_carries_the_task() -> None:
    registry = _registry()
    runner = _RecordingRunner(registry, "Descale monthly.")
    executor = PlanExecutor(llm=MockLLM(), tool_registry=registry, executor=runner)

    asyncio.run(
        executor.execute_step(_plan("Find descaling"), task="How often should I descale?")
    )

    assert "<task>\nHow often should I descale?\n</task>" in runner.requests[0]
    assert runner.requests[0].index("<task>") < runner.requests[0].index("Execute ONLY step 1")


def test_concurrent_steps_sharing_a_registry_keep_their_own_tool_traces() -> None:
    registry = _registry()
    slow = PlanExecutor(
        llm=MockLLM(), tool_registry=registry, executor=_DelayedRunner(registry, "slow", 0.05)
    )
    fast = PlanExecutor(
        llm=MockLLM(), tool_registry=registry, executor=_DelayedRunner(registry, "fast", 0.01)
    )

    async def _run_both() -> list[StepExecutionResult]:
        return await asyncio.gather(
            slow.execute_step(_plan("Slow lookup")), fast.execute_step(_plan("Fast lookup"))
        )

    slow_result, fast_result = asyncio.run(_run_both())

    assert [trace.input_payload for trace in slow_result.tool_traces] == [{"query": "slow"}]
    assert [trace.input_payload for trace in fast_result.tool_traces] == [{"query": "fast"}]


def test_legacy_runtime_bounds_tool_calls_separately_from_loop(monkeypatch) -> None:
    monkeypatch.setattr(planning, "_AGENT_RUNTIME", "legacy")
    monkeypatch.setattr(planning, "create_tool_calling_agent", lambda llm, tools, prompt: "agent")
    monkeypatch.setattr(planning, "AgentExecutor", _CapturingAgentExecutor)
    config = AgentConfig(max_iterations=6, max_tool_calls_per_step=3)

    executor = PlanExecutor(llm=MockLLM(), tool_registry=_registry(), config=config)

    assert executor.executor.kwargs["max_iterations"] == 3


def test_graph_runtime_bounds_tool_calls_with_recursion_limit(monkeypatch) -> None:
    graph = _CapturingGraph()
    monkeypatch.setattr(planning, "_AGENT_RUNTIME", "graph")
    monkeypatch.setattr(planning, "create_agent", lambda **kwargs: graph)
    config = AgentConfig(max_iterations=6, max_tool_calls_per_step=3)
    executor = PlanExecutor(llm=MockLLM(), tool_registry=_registry(), config=config)

    result = asyncio.run(executor.execute_step(_plan("Find descaling")))

    assert result.outcome == "done"
    assert graph.configs == [{"recursion_limit": 7}]


def test_max_tool_calls_per_step_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        AgentConfig(max_tool_calls_per_step=0)


def test_execute_step_marks_empty_outcome() -> None:
    registry = _registry()
    executor = PlanExecutor(
        llm=MockLLM(), tool_registry=registry, executor=_RecordingRunner(registry, "  ")
    )

    result = asyncio.run(executor.execute_step(_plan("Find descaling")))

    assert result.status == "empty"


def test_evaluate_returns_result_variant() -> None:
    llm = FakeListChatModel(
        responses=['{"value": {"kind": "result", "result": {"outcome": "Use citric acid."}}}']
    )
    evaluator = PlanEvaluator(StructuredChatClient(llm))
    past = [
        StepExecutionResult(
            step=PlanStep(description="Find descaling"), outcome="citric acid", status="completed"
        )
    ]

    decision = asyncio.run(evaluator.evaluate("task", _plan("Find descaling"), past))

    assert isinstance(decision, FinishWithResult)
    assert decision.result.outcome == "Use citric acid."


def test_evaluate_returns_plan_variant() -> None:
    llm = FakeListChatModel(
        responses=['{"value": {"kind": "plan", "plan": {"steps": [{"description": "Check the FAQ"}]}}}']
    )
    evaluator = PlanEvaluator(StructuredChatClient(llm))

    decision = asyncio.run(evaluator.evaluate("task", _plan("Find descaling", "Check the FAQ"), []))

    assert isinstance(decision, ContinueWithPlan)
    assert decision.plan.steps == [PlanStep(description="Check the FAQ")]


def test_evaluate_parse_failure_is_fatal() -> None:
    llm = FakeListChatModel(responses=['{"value": {"kind": "maybe"}}'])
    evaluator = PlanEvaluator(StructuredChatClient(llm))

    with pytest.raises(StructuredOutputError):
        asyncio.run(evaluator.evaluate("task", _plan("a"), []))


def test_extract_graph_answer_reads_last_message() -> None:
    result = {"messages": [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]}

    assert _extract_graph_answer(result) == "a"
    assert _extract_graph_answer({"messages": [], "output": "x"}) == "x"


def test_relevance_evaluator_returns_score() -> None:
    llm = FakeListChatModel(responses=['{"reasoning": "on topic", "score": 0.8}'])
    evaluator = ContextRelevanceEvaluator(StructuredChatClient(llm))

    assert asyncio.run(evaluator.evaluate("how to descale?", "Descale monthly.")) == 0.8


def test_relevance_parse_failure_scores_zero() -> None:
    llm = FakeListChatModel(responses=["very relevant!"])
    evaluator = ContextRelevanceEvaluator(StructuredChatClient(llm))

    assert asyncio.run(evaluator.evaluate("how to descale?", "Descale monthly.")) == 0.0
