"""
Agent classes.

BaseAgent is the capability every runnable agent implements:
`execute(input, context) -> Any`. BaseLlmAgent adds instructions, tools,
sub-agent delegation, MCP tools, structured output and lifecycle hooks.

Agents get their collaborators (provider, registry, MCP discovery,
interrupts, tracer) from the runtime they are attached to. A detached agent
falls back to the provider chosen by `build_provider()`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .context import AgentContext
from .exceptions import (
    AgentConfigurationException,
    AgentError,
    InterruptException,
    PlanExecutionException,
    ToolExecutionException,
)
from .media import ImageResponse
from .planning import Plan, PlanningResponse, PlanStep, Reflection
from .providers import BaseProvider, CompletionResult, build_provider
from .state_manager import MEMORY_CONTEXT_KEY
from .structured_output.retry import RetryHandler
from .structured_output.schema import Schema, from_json_schema
from .tools.base import BaseTool
from .tools.delegate import DelegateToSubAgentTool

logger = logging.getLogger("agent-adk")

# State keys the executors write and agents read.
PARAMETERS_STATE_KEY = "agent_parameters"
STRUCTURED_OUTPUT_STATE_KEY = "structured_output"


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


class BaseAgent:
    name: str = ""
    description: str = ""

    def __init__(self) -> None:
        self.runtime: Any = None
        self._provider: Optional[BaseProvider] = None

    def attach(self, runtime: Any) -> "BaseAgent":
        self.runtime = runtime
        return self

    def use_provider(self, provider: BaseProvider) -> "BaseAgent":
        self._provider = provider
        return self

    @property
    def provider(self) -> BaseProvider:
        if self._provider is None:
            if self.runtime is not None:
                return self.runtime.provider
            self._provider = build_provider()
        return self._provider

    @property
    def tracer(self) -> Any:
        return getattr(self.runtime, "tracer", None)

    def execute(self, input: Any, context: AgentContext) -> Any:  # pragma: no cover - interface only
        raise NotImplementedError

    @classmethod
    def run(cls, input: Any = None, runtime: Any = None) -> Any:
        """Fluent entry point: `MyAgent.run("hi").for_user("u1").go()`."""
        from .execution.executor import AgentExecutor

        return AgentExecutor(cls, input, runtime=runtime)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class BaseLlmAgent(BaseAgent):
    instructions: str = ""
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None

    # Tool classes or instances, and sub-agent names / classes / instances.
    tools: List[Any] = []
    sub_agents: List[Any] = []

    # ObjectSchema (or a JSON Schema dict) to enforce on the final answer.
    output_schema: Any = None
    max_structured_retries: int = 2

    max_tool_steps: int = 5

    def __init__(self) -> None:
        super().__init__()
        self._loaded_sub_agents: Optional[Dict[str, BaseAgent]] = None

    def mcp_servers(self) -> List[str]:
        """Names of configured MCP servers whose tools this agent may use."""
        return []

    # -- hooks ----------------------------------------------------------------

    def before_llm_call(self, messages: List[Dict[str, Any]], context: AgentContext) -> List[Dict[str, Any]]:
        return messages

    def after_llm_response(self, response: CompletionResult, context: AgentContext) -> CompletionResult:
        return response

    def before_tool_call(self, tool_name: str, arguments: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        return arguments

    def after_tool_result(self, tool_name: str, result: str, context: AgentContext) -> str:
        return result

    def before_sub_agent_delegation(
        self,
        sub_agent_name: str,
        task_input: str,
        context_summary: str,
        context: AgentContext,
    ) -> Tuple[str, str, str]:
        return sub_agent_name, task_input, context_summary

    def after_sub_agent_delegation(
        self,
        sub_agent_name: str,
        task_input: str,
        result: Any,
        parent_context: AgentContext,
        sub_agent_context: AgentContext,
    ) -> Any:
        return result

    # -- sub-agents and tools -------------------------------------------------

    def _registry(self) -> Any:
        return getattr(self.runtime, "registry", None)

    def get_loaded_sub_agents(self) -> Dict[str, BaseAgent]:
        if self._loaded_sub_agents is None:
            loaded: Dict[str, BaseAgent] = {}
            registry = self._registry()
            for ref in self.sub_agents:
                if isinstance(ref, BaseAgent):
                    agent = ref
                elif registry is not None:
                    agent = registry.get_agent(registry.resolve_agent_name(ref))
                elif isinstance(ref, type) and issubclass(ref, BaseAgent):
                    agent = ref()
                else:
                    raise AgentConfigurationException(
                        f"Agent '{self.name}' cannot resolve sub-agent {ref!r} without a registry"
                    )
                loaded[agent.name] = agent
            self._loaded_sub_agents = loaded
        return dict(self._loaded_sub_agents)

    def get_sub_agent(self, name: str) -> Optional[BaseAgent]:
        return self.get_loaded_sub_agents().get(name)

    def _max_delegation_depth(self) -> Optional[int]:
        settings = getattr(self.runtime, "settings", None)
        return settings.max_delegation_depth if settings is not None else None

    def load_tools(self) -> Dict[str, BaseTool]:
        tools: Dict[str, BaseTool] = {}
        for ref in self.tools:
            tool = ref() if isinstance(ref, type) else ref
            tools[tool.definition()["name"]] = tool
        if self.sub_agents:
            delegate = DelegateToSubAgentTool(self, max_depth=self._max_delegation_depth())
            tools[delegate.name] = delegate
        discovery = getattr(self.runtime, "mcp_discovery", None)
        if discovery is not None and self.mcp_servers():
            for tool in discovery.discover_tools_for_agent(self):
                tools.setdefault(tool.name, tool)
        return tools

    # -- prompt assembly ------------------------------------------------------

    def get_instructions(self, context: Optional[AgentContext] = None) -> str:
        text = self.instructions
        sub_agents = self.get_loaded_sub_agents() if self.sub_agents else {}
        if sub_agents:
            lines = [
                "",
                "",
                "DELEGATION CAPABILITIES:",
                "You can delegate tasks to the following specialized sub-agents using the "
                "'delegate_to_sub_agent' tool:",
            ]
            for name, agent in sub_agents.items():
                lines.append(f"- {name}: {agent.description}" if agent.description else f"- {name}")
            text += "\n".join(lines)
        if context is not None:
            memory = context.get_state(MEMORY_CONTEXT_KEY)
            if memory:
                text += f"\n\nMEMORY CONTEXT:\n{memory}"
        return text

    def _build_messages(self, context: AgentContext) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self.get_instructions(context)}]
        for msg in context.get_conversation_history():
            messages.append(
                {"role": msg.get("role", "user"), "content": _as_text(msg.get("content")), "tool_name": msg.get("tool_name")}
            )
        return messages

    def _call_params(self, context: AgentContext) -> Dict[str, Any]:
        params = {
            "model": self.model or None,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        overrides = context.get_state(PARAMETERS_STATE_KEY) or {}
        for key in params:
            if overrides.get(key) is not None:
                params[key] = overrides[key]
        return params

    # -- execution ------------------------------------------------------------

    def execute(self, input: Any, context: AgentContext) -> Any:
        if input is not None:
            context.user_input = input
            context.add_message({"role": "user", "content": _as_text(input)})
        if self.get_output_schema() is not None:
            return self._execute_structured(context)
        return self._generate(context)

    def _call_llm(
        self,
        messages: List[Dict[str, Any]],
        definitions: List[Dict[str, Any]],
        params: Dict[str, Any],
        context: AgentContext,
    ) -> CompletionResult:
        messages = self.before_llm_call(messages, context)
        tracer = self.tracer
        span_id = tracer.start_span("llm_call", params.get("model") or "default", context=context) if tracer else None
        try:
            response = self.provider.complete(messages, tools=definitions or None, **params)
        except Exception as exc:
            if tracer:
                tracer.fail_span(exc, span_id)
            raise AgentError(f"LLM API call failed: {exc}") from exc
        if tracer:
            tracer.end_span(span_id, output={"text": response.text, "tool_calls": [c.name for c in response.tool_calls]})
        return self.after_llm_response(response, context)

    def _generate(
        self,
        context: AgentContext,
        extra_messages: Optional[List[Dict[str, Any]]] = None,
        record: bool = True,
    ) -> str:
        tools = self.load_tools()
        definitions = [t.definition() for t in tools.values()]
        messages = self._build_messages(context) + list(extra_messages or [])
        params = self._call_params(context)

        for _ in range(self.max_tool_steps):
            response = self._call_llm(messages, definitions, params, context)
            if not response.tool_calls:
                if record:
                    context.add_message({"role": "assistant", "content": response.text})
                return response.text
            for call in response.tool_calls:
                result = self._execute_tool(tools, call.name, call.arguments, context)
                messages.append({"role": "tool", "tool_name": call.name, "content": result})

        # Out of tool steps: ask for a final answer without tools.
        logger.info("Agent %s reached max tool steps (%d)", self.name, self.max_tool_steps)
        response = self._call_llm(messages, [], params, context)
        if record:
            context.add_message({"role": "assistant", "content": response.text})
        return response.text

    def _require_approval(self, tool_name: str, arguments: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        interrupts = getattr(self.runtime, "interrupts", None)
        if interrupts is None or not interrupts.tool_requires_approval(tool_name):
            return arguments
        approval = interrupts.approved_for_tool(context, self.name, tool_name)
        if approval is None:
            interrupts.interrupt(
                context,
                f"Tool '{tool_name}' requires approval",
                {"tool": tool_name, "arguments": arguments},
                agent_name=self.name,
            )
        modifications = approval.get("modifications") if approval else None
        if isinstance(modifications, dict):
            return {**arguments, **modifications}
        return arguments

    @staticmethod
    def _check_required(tool: BaseTool, arguments: Dict[str, Any]) -> None:
        for param in tool.definition().get("parameters", {}).get("required", []) or []:
            if arguments.get(param) is None:
                raise ToolExecutionException(f"Required parameter '{param}' is missing or null")

    def _execute_tool(
        self,
        tools: Dict[str, BaseTool],
        tool_name: str,
        arguments: Dict[str, Any],
        context: AgentContext,
    ) -> str:
        tool = tools.get(tool_name)
        if tool is None:
            result = json.dumps({"error": f"Tool '{tool_name}' not found", "available_tools": sorted(tools)})
            context.add_message({"role": "tool", "tool_name": tool_name, "content": result})
            return result

        arguments = self._require_approval(tool_name, dict(arguments or {}), context)
        arguments = self.before_tool_call(tool_name, arguments, context)

        tracer = self.tracer
        span_id = tracer.start_span("tool_call", tool_name, input=arguments, context=context) if tracer else None
        try:
            self._check_required(tool, arguments)
            result = tool.execute(arguments, context)
        except InterruptException:
            if tracer:
                tracer.end_span(span_id, status="interrupted")
            raise
        except Exception as exc:
            error = exc if isinstance(exc, ToolExecutionException) else ToolExecutionException(
                f"Error executing tool '{tool_name}': {exc}"
            )
            logger.warning("Tool failed agent=%s tool=%s: %s", self.name, tool_name, error)
            if tracer:
                tracer.fail_span(error, span_id)
            # The model sees the failure and can recover.
            result = str(error)
        else:
            if tracer:
                tracer.end_span(span_id, output=result)

        result = self.after_tool_result(tool_name, result, context)
        context.add_message({"role": "tool", "tool_name": tool_name, "content": result})
        return result

    # -- structured output ----------------------------------------------------

    def get_output_schema(self) -> Optional[Schema]:
        schema = self.output_schema
        if schema is None or isinstance(schema, Schema):
            return schema
        if isinstance(schema, dict):
            return from_json_schema(schema)
        raise AgentConfigurationException(f"Agent '{self.name}' has an unsupported output_schema")

    def _execute_structured(self, context: AgentContext) -> Any:
        schema = self.get_output_schema()
        assert schema is not None
        schema_text = json.dumps(schema.to_json_schema(), indent=2)

        def generator(repair_prompt: Optional[str]) -> str:
            extra = [
                {
                    "role": "system",
                    "content": f"Respond only with JSON that matches this JSON Schema:\n{schema_text}",
                }
            ]
            if repair_prompt:
                extra.append({"role": "user", "content": repair_prompt})
            return self._generate(context, extra_messages=extra, record=False)

        handler = RetryHandler(schema, max_retries=self.max_structured_retries)
        result = handler.execute(generator)
        context.set_state(
            STRUCTURED_OUTPUT_STATE_KEY,
            {
                "valid": result.valid,
                "retry_count": result.retry_count,
                "attempts": result.attempts,
                "errors": [e.to_dict() for e in result.errors],
            },
        )
        context.add_message({"role": "assistant", "content": _as_text(result.data)})
        return result.data


class GenericLlmAgent(BaseLlmAgent):
    """LLM agent defined by a plain config mapping instead of a subclass."""

    def __init__(self, name: str, config: Dict[str, Any]) -> None:
        super().__init__()
        if not config.get("instructions"):
            raise AgentConfigurationException(f"Agent '{name}' requires instructions")
        self.name = name
        self.description = str(config.get("description") or "")
        self.instructions = str(config["instructions"])
        self.model = str(config.get("model") or "")
        self.temperature = config.get("temperature")
        self.max_tokens = config.get("max_tokens")
        self.top_p = config.get("top_p")
        self.tools = list(config.get("tools") or [])
        self.sub_agents = list(config.get("sub_agents") or [])
        self.output_schema = config.get("output_schema")
        self._mcp_servers = [str(s) for s in config.get("mcp_servers") or []]

    def mcp_servers(self) -> List[str]:
        return list(self._mcp_servers)


class BaseMediaAgent(BaseAgent):
    """Agent that produces a media artefact instead of text."""

    default_options: Dict[str, Any] = {}

    @classmethod
    def run(cls, input: Any = None, runtime: Any = None) -> Any:
        from .execution.media import MediaAgentExecutor

        return MediaAgentExecutor(cls, input, runtime=runtime)

    def _options(self, context: AgentContext) -> Dict[str, Any]:
        options = dict(self.default_options)
        options.update(context.get_state("media_options") or {})
        return options

    def _storage_path(self) -> str:
        settings = getattr(self.runtime, "settings", None)
        return settings.media_storage_path if settings is not None else "./data/media"


class ImageAgent(BaseMediaAgent):
    name = "image_agent"
    description = "Generates images from text prompts"
    default_options = {"size": "1024x1024", "quality": "standard", "style": "vivid", "response_format": "url"}

    def execute(self, input: Any, context: AgentContext) -> ImageResponse:
        prompt = _as_text(input)
        options = self._options(context)
        provider_options = {
            key: options[key] for key in ("model", "size", "quality", "style", "response_format") if options.get(key)
        }
        raw = self.provider.generate_image(prompt, options=provider_options)
        response = ImageResponse(
            prompt=prompt,
            provider=self.provider.name,
            model=raw.get("model"),
            url=raw.get("url"),
            b64_data=raw.get("b64_json"),
            revised_prompt=raw.get("revised_prompt"),
            storage_path=self._storage_path(),
            metadata={k: provider_options.get(k) for k in ("size", "quality", "style")},
        )
        if options.get("auto_store"):
            filename = options.get("store_filename")
            if filename:
                response.store_as(filename)
            else:
                response.store()

        images = list(context.get_state("generated_images") or [])
        images.append(response.to_dict())
        context.set_state("generated_images", images)
        context.add_message({"role": "user", "content": prompt})
        context.add_message({"role": "assistant", "content": str(response)})
        return response


PLANNER_INSTRUCTIONS = """You are a planning assistant. Given a task, create a detailed step-by-step plan.

Output your plan as JSON with the following structure:
{
    "goal": "The main objective to achieve",
    "steps": [
        {"id": 1, "action": "Description of what to do", "dependencies": [], "tools": ["tool_name"]},
        {"id": 2, "action": "Next action", "dependencies": [1], "tools": []}
    ],
    "success_criteria": ["Criterion 1", "Criterion 2"]
}

Rules:
- Each step must have a unique numeric ID
- Dependencies are IDs of steps that must complete before this one
- Be specific and actionable in step descriptions"""

REFLECTION_INSTRUCTIONS = """Evaluate the result against the original goal and success criteria.

Output your evaluation as JSON with the following structure:
{
    "satisfactory": true/false,
    "score": 0.0-1.0,
    "strengths": ["What went well"],
    "weaknesses": ["What could be improved"],
    "suggestions": ["Specific improvements for next attempt"]
}"""


class BasePlanningAgent(BaseLlmAgent):
    """Plan, execute the steps, reflect on the result and replan until good enough."""

    max_replan_attempts: int = 3
    satisfaction_threshold: float = 0.8
    planner_instructions: str = PLANNER_INSTRUCTIONS
    reflection_instructions: str = REFLECTION_INSTRUCTIONS

    @classmethod
    def run(cls, input: Any = None, runtime: Any = None) -> Any:
        from .execution.planning import PlanningAgentExecutor

        return PlanningAgentExecutor(cls, input, runtime=runtime)

    plan = run

    # Executors pass per-run settings through context state so the cached
    # agent instance is never reconfigured.
    def _setting(self, context: AgentContext, key: str, default: Any) -> Any:
        value = context.get_state(key)
        return default if value is None else value

    def execute(self, input: Any, context: AgentContext) -> PlanningResponse:
        max_attempts = int(self._setting(context, "planning_max_attempts", self.max_replan_attempts))
        threshold = float(self._setting(context, "planning_threshold", self.satisfaction_threshold))
        if not 0 <= threshold <= 1:
            raise ValueError("Satisfaction threshold must be between 0 and 1")
        context.set_state("agent_name", self.name)

        plan = self.generate_plan(input, context)
        context.set_state("current_plan", plan.to_dict())
        logger.info("Plan generated agent=%s goal=%r steps=%d", self.name, plan.goal, len(plan.steps))

        result: Optional[str] = None
        reflection: Optional[Reflection] = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = self.execute_plan(plan, context)
                reflection = self.reflect(input, result, plan, context)
                logger.info(
                    "Reflection agent=%s attempt=%d score=%.2f satisfactory=%s",
                    self.name,
                    attempt,
                    reflection.score,
                    reflection.satisfactory,
                )
                if reflection.satisfactory or reflection.score >= threshold:
                    return PlanningResponse(result, plan, reflection, attempt, True, input)
                if attempt < max_attempts:
                    plan = self.replan(input, result, reflection, context)
            except PlanExecutionException as exc:
                logger.warning("Plan execution failed agent=%s attempt=%d: %s", self.name, attempt, exc)
                if attempt < max_attempts:
                    plan = self.replan(input, None, str(exc), context)
            context.set_state("current_plan", plan.to_dict())

        final = result if result is not None else f"Unable to complete task after {max_attempts} attempts."
        return PlanningResponse(final, plan, reflection, max_attempts, False, input)

    def _ask_json(self, system_prompt: str, user_prompt: str, context: AgentContext) -> str:
        messages = [
            {"role": "system", "content": system_prompt + "\n\nIMPORTANT: Respond only with valid JSON, no additional text."},
            {"role": "user", "content": user_prompt},
        ]
        response = self._call_llm(messages, [], self._call_params(context), context)
        return response.text

    def generate_plan(self, input: Any, context: AgentContext) -> Plan:
        instructions = self._setting(context, "planner_instructions", self.planner_instructions)
        return Plan.from_json(self._ask_json(instructions, f"Create a plan for: {_as_text(input)}", context))

    def execute_plan(self, plan: Plan, context: AgentContext) -> str:
        results: Dict[int, str] = {}
        for step in sorted(plan.steps, key=lambda s: s.id):
            completed = list(results)
            if not step.are_dependencies_satisfied(completed):
                missing = [d for d in step.dependencies if d not in completed]
                raise PlanExecutionException.unsatisfied_dependencies(step.id, missing)
            try:
                step_result = self.execute_step(step, results, context)
            except InterruptException:
                raise
            except Exception as exc:
                raise PlanExecutionException.for_step(step.id, str(exc)) from exc
            results[step.id] = step_result
            step.completed = True
            step.result = step_result
            context.set_state(f"step_{step.id}_result", step_result)
        return self.synthesize_results(plan, results, context)

    def execute_step(self, step: PlanStep, previous_results: Dict[int, str], context: AgentContext) -> str:
        """Run one step through the tool-calling loop. Override for custom step handling."""
        prior = "\n".join(f"Step {sid}: {res}" for sid, res in previous_results.items())
        prompt = f"Execute this step: {step.action}"
        if prior:
            prompt += f"\n\nResults of previous steps:\n{prior}"
        return self._generate(context, extra_messages=[{"role": "user", "content": prompt}], record=False)

    def synthesize_results(self, plan: Plan, results: Dict[int, str], context: AgentContext) -> str:
        if not results:
            return ""
        return results[max(results)]

    def reflect(self, input: Any, result: str, plan: Plan, context: AgentContext) -> Reflection:
        instructions = self._setting(context, "reflection_instructions", self.reflection_instructions)
        prompt = (
            f"Original Task: {_as_text(input)}\n\nPlan: {plan.to_json()}\n\nResult: {result}\n\n"
            "Evaluate the result against the goal and success criteria."
        )
        return Reflection.from_json(self._ask_json(instructions, prompt, context))

    def replan(self, input: Any, previous_result: Optional[str], feedback: Any, context: AgentContext) -> Plan:
        if isinstance(feedback, Reflection):
            feedback_text = (
                "Weaknesses: " + ", ".join(feedback.weaknesses) + "\nSuggestions: " + ", ".join(feedback.suggestions)
            )
        else:
            feedback_text = str(feedback)
        prompt = (
            f"Original Task: {_as_text(input)}\n\nPrevious Result: {previous_result or ''}\n\n"
            f"Feedback: {feedback_text}\n\nCreate an improved plan that addresses the feedback."
        )
        instructions = self._setting(context, "planner_instructions", self.planner_instructions)
        new_plan = Plan.from_json(self._ask_json(instructions, prompt, context))
        logger.info("Replanned agent=%s goal=%r steps=%d", self.name, new_plan.goal, len(new_plan.steps))
        return new_plan
