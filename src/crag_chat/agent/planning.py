"""Plan-and-execute components: plan generation, step execution, evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from importlib import import_module
from typing import Annotated, Any, Literal

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from pydantic import BaseModel, Field

_agents_module = import_module("langchain.agents")
create_agent = getattr(_agents_module, "create_agent", None)
AgentExecutor = getattr(_agents_module, "AgentExecutor", None)
create_tool_calling_agent = getattr(_agents_module, "create_tool_calling_agent", None)
_AGENT_RUNTIME = (
    "legacy"
    if callable(AgentExecutor) and callable(create_tool_calling_agent)
    else "graph"
)

from crag_chat.agent.registry import ToolRegistry
from crag_chat.config import AgentConfig
from crag_chat.llm.structured import StructuredChatClient, message_text
from crag_chat.types import ToolTrace

logger = logging.getLogger(__name__)


class PlanStep(BaseModel):
    description: str = Field(min_length=1, description="What this step must achieve.")
    tool: str | None = Field(
        default=None,
        description="Name of the tool expected to carry out the step, if any.",
    )


class Plan(BaseModel):
    """Ordered steps still to be executed."""

    steps: list[PlanStep] = Field(min_length=1)


class PlanResult(BaseModel):
    outcome: str = Field(description="Final outcome that addresses the task.")


class ContinueWithPlan(BaseModel):
    kind: Literal["plan"] = "plan"
    plan: Plan = Field(description="The remaining steps; completed steps are omitted.")


class FinishWithResult(BaseModel):
    kind: Literal["result"] = "result"
    result: PlanResult


PlanOrResult = Annotated[
    ContinueWithPlan | FinishWithResult, Field(discriminator="kind")
]


@dataclass(slots=True)
class StepExecutionResult:
    step: PlanStep
    outcome: str
    status: Literal["completed", "empty"]
    tool_traces: list[ToolTrace] = field(default_factory=list)


_GENERATOR_PROMPT = """
You are a planner. Break the user's task into a short ordered list of concrete
steps (at most 5). Each step must be independently executable by an assistant
that can call these tools: {tools}.
Name the tool a step relies on when there is one.
""".strip()

_EXECUTOR_PROMPT = """
You are executing one step of a plan on behalf of customer service staff.
Use the available tools to gather facts; do not invent information.
Report what you found for the step, including sources when a tool provides them.
""".strip()

_EVALUATOR_PROMPT = """
You review the progress of a plan.

Given the task, the current plan and the results of the steps executed so far,
decide:
- If the step results contain enough information to address the task, return a
  result whose outcome is the complete answer, grounded in the step results.
- Otherwise return a plan with ONLY the steps that still need to be done.
""".strip()


class PlanGenerator:
    def __init__(self, chat_client: StructuredChatClient, *, tool_names: list[str]) -> None:
        self.chat_client = chat_client
        self.tool_names = tool_names

    async def generate_plan(self, task: str) -> Plan:
        messages = [
            SystemMessage(
                content=_GENERATOR_PROMPT.format(tools=", ".join(self.tool_names) or "none")
            ),
            HumanMessage(content=task),
        ]
        completion = await self.chat_client.predict(messages, Plan)
        plan = completion.require()
        logger.info("Generated plan with %d steps", len(plan.steps))
        return plan


class PlanExecutor:
    """Executes the next pending step of a plan with a tool-calling agent."""

    def __init__(
        self,
        *,
        llm: Any,
        tool_registry: ToolRegistry,
        config: AgentConfig | None = None,
        executor: Any | None = None,
    ) -> None:
        self.llm = llm
        self.tool_registry = tool_registry
        self.config = config or AgentConfig()

        self.tools = self.tool_registry.as_langchain_tools()
        self._runtime = "custom" if executor is not None else _AGENT_RUNTIME
        if executor is not None:
            self.executor = executor
        elif _AGENT_RUNTIME == "legacy":
            if not callable(create_tool_calling_agent) or not callable(AgentExecutor):
                raise RuntimeError("Legacy LangChain agent runtime is unavailable.")
            prompt = ChatPromptTemplate.from_messages(
                [
                    ("system", _EXECUTOR_PROMPT),
                    MessagesPlaceholder(variable_name="chat_history", optional=True),
                    ("human", "{input}"),
                    MessagesPlaceholder(variable_name="agent_scratchpad"),
                ]
            )
            agent = create_tool_calling_agent(self.llm, self.tools, prompt)
            self.executor = AgentExecutor(
                agent=agent,
                tools=self.tools,
                max_iterations=self.config.max_tool_calls_per_step,
                verbose=False,
                handle_parsing_errors=True,
            )
        else:
            if not callable(create_agent):
                raise RuntimeError("LangChain create_agent is unavailable.")
            self.executor = create_agent(
                model=self.llm,
                tools=self.tools,
                system_prompt=_EXECUTOR_PROMPT,
            )

    @property
    def tool_names(self) -> list[str]:
        return [spec.name for spec in self.tool_registry.specs()]

    async def execute_step(self, plan: Plan, *, task: str | None = None) -> StepExecutionResult:
        """Execute `plan.steps[0]`; the caller drives iteration.

        `task` gives the agent the overall goal the plan serves.
        """

        step = plan.steps[0]
        request = _render_step_request(plan, step, task)
        observed_tools: list[ToolTrace] = []
        with self.tool_registry.observing(observed_tools.append):
            if self._runtime == "graph":
                # Each tool call costs a model node and a tool node.
                result = await self.executor.ainvoke(
                    {"messages": [{"role": "user", "content": request}]},
                    config={"recursion_limit": 2 * self.config.max_tool_calls_per_step + 1},
                )
            else:
                result = await self.executor.ainvoke({"input": request, "chat_history": []})

        if self._runtime == "graph":
            outcome = _extract_graph_answer(result)
        else:
            outcome = str(result.get("output", ""))

        logger.info(
            "Executed step %r with %d tool calls", step.description, len(observed_tools)
        )
        return StepExecutionResult(
            step=step,
            outcome=outcome,
            status="completed" if outcome.strip() else "empty",
            tool_traces=observed_tools,
        )


class PlanEvaluator:
    def __init__(self, chat_client: StructuredChatClient) -> None:
        self.chat_client = chat_client

    async def evaluate(
        self,
        task: str,
        plan: Plan,
        past_steps: list[StepExecutionResult],
    ) -> ContinueWithPlan | FinishWithResult:
        messages = [
            SystemMessage(content=_EVALUATOR_PROMPT),
            HumanMessage(
                content=(
                    f"<task>\n{task}\n</task>\n\n"
                    f"<plan>\n{_render_steps(plan)}\n</plan>\n\n"
                    f"<past_steps>\n{_render_past_steps(past_steps)}\n</past_steps>"
                )
            ),
        ]
        completion = await self.chat_client.predict_one_of(
            messages, [ContinueWithPlan, FinishWithResult]
        )
        return completion.require()


def _render_steps(plan: Plan) -> str:
    lines = []
    for idx, step in enumerate(plan.steps, start=1):
        suffix = f" (tool: {step.tool})" if step.tool else ""
        lines.append(f"{idx}. {step.description}{suffix}")
    return "\n".join(lines)


def _render_past_steps(past_steps: list[StepExecutionResult]) -> str:
    if not past_steps:
        return "none"
    return "\n\n".join(
        f"<step status='{result.status}'>\n{result.step.description}\n"
        f"<outcome>{result.outcome}</outcome>\n</step>"
        for result in past_steps
    )


def _render_step_request(plan: Plan, step: PlanStep, task: str | None = None) -> str:
    hint = f"\nSuggested tool: {step.tool}" if step.tool else ""
    goal = f"<task>\n{task}\n</task>\n\n" if task else ""
    return (
        f"{goal}"
        f"The plan is:\n{_render_steps(plan)}\n\n"
        f"Execute ONLY step 1: {step.description}{hint}"
    )


def _extract_graph_answer(result: Any) -> str:
    if not isinstance(result, dict):
        return str(result)
    messages = result.get("messages", [])
    if not isinstance(messages, list) or not messages:
        return str(result.get("output", ""))
    return message_text(messages[-1])
