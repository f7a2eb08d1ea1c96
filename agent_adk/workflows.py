"""
Workflows: compose registered agents without writing a coordinating LLM agent.

    SequentialWorkflow(runtime).start("researcher").then("writer").execute("topic")

Each step runs through `runtime.manager.run(...)` with the workflow's session
id, so steps share conversation history and state. Step params may be a
callable `(input, results, context) -> params`; conditions are callables with
the same signature or plain truthy values.
"""

from __future__ import annotations

import concurrent.futures
import logging
import re
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from .agents import BaseAgent
from .context import AgentContext

logger = logging.getLogger("agent-adk")

Callback = Callable[..., Any]


def data_get(target: Any, key: str) -> Any:
    """Dotted lookup into nested mappings / attributes. `"."` returns the target itself."""
    if key == ".":
        return target
    current = target
    for part in key.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        elif current is not None and not isinstance(current, (str, int, float, bool)):
            current = getattr(current, part, None)
        else:
            return None
        if current is None:
            return None
    return current


class BaseWorkflow(BaseAgent):
    workflow_type = "workflow"

    def __init__(self, runtime: Any = None) -> None:
        super().__init__()
        if runtime is not None:
            self.attach(runtime)
        self.steps: List[Dict[str, Any]] = []
        self.results: Dict[str, Any] = {}
        self.retry_attempts = 0
        self.retry_delay_ms = 1000
        self._on_success: Optional[Callback] = None
        self._on_failure: Optional[Callback] = None
        self._on_complete: Optional[Callback] = None

    def _runtime(self) -> Any:
        if self.runtime is None:
            from .runtime import get_runtime

            self.attach(get_runtime())
        return self.runtime

    def add_agent(self, agent: Any, params: Any = None, **options: Any) -> "BaseWorkflow":
        self.steps.append(
            {
                "agent": agent,
                "params": params,
                "options": options,
                "retries": options.get("retries", self.retry_attempts),
                "condition": options.get("condition"),
            }
        )
        return self

    def on_success(self, callback: Callback) -> "BaseWorkflow":
        self._on_success = callback
        return self

    def on_failure(self, callback: Callback) -> "BaseWorkflow":
        self._on_failure = callback
        return self

    def on_complete(self, callback: Callback) -> "BaseWorkflow":
        self._on_complete = callback
        return self

    def retry_on_failure(self, attempts: int, delay_ms: int = 1000) -> "BaseWorkflow":
        self.retry_attempts = attempts
        self.retry_delay_ms = delay_ms
        for step in self.steps:
            if "retries" not in step["options"]:
                step["retries"] = attempts
        return self

    def get_results(self) -> Dict[str, Any]:
        return dict(self.results)

    def get_step_result(self, agent: Any) -> Any:
        return self.results.get(self._step_key(agent))

    def reset(self) -> "BaseWorkflow":
        self.steps = []
        self.results = {}
        return self

    # -- step execution -------------------------------------------------------

    def _step_key(self, agent: Any) -> str:
        return self._runtime().registry.resolve_agent_name(agent)

    def prepare_step_params(self, params: Any, input: Any, context: AgentContext) -> Any:
        if callable(params):
            return params(input, self.results, context)
        return input if params is None else params

    def evaluate_condition(self, condition: Any, input: Any, context: AgentContext) -> bool:
        if callable(condition):
            return bool(condition(input, self.results, context))
        return bool(condition)

    def execute_step(self, step: Dict[str, Any], input: Any, context: AgentContext) -> Any:
        """Run one step with retries. Returns None when the step's condition is false."""
        condition = step.get("condition")
        if condition is not None and not self.evaluate_condition(condition, input, context):
            return None

        runtime = self._runtime()
        agent_name = self._step_key(step["agent"])
        max_attempts = int(step.get("retries") or 0) + 1
        for attempt in range(1, max_attempts + 1):
            try:
                params = self.prepare_step_params(step.get("params"), input, context)
                result = runtime.manager.run(agent_name, params, context.session_id, context.get_state("user_id"))
            except Exception as exc:
                if attempt >= max_attempts:
                    raise
                logger.warning(
                    "Workflow step failed agent=%s attempt=%d/%d: %s", agent_name, attempt, max_attempts, exc
                )
                time.sleep(self.retry_delay_ms / 1000)
                continue
            self.results[agent_name] = result
            return result
        return None

    # -- run ------------------------------------------------------------------

    def execute_workflow(self, input: Any, context: AgentContext) -> Any:  # pragma: no cover - interface only
        raise NotImplementedError

    def _handle_completion(self, result: Any, success: bool, error: Optional[BaseException]) -> None:
        try:
            if success and self._on_success:
                self._on_success(result, self.results)
            if not success and self._on_failure:
                self._on_failure(error, self.results)
            if self._on_complete:
                self._on_complete(result, success, self.results)
        except Exception as exc:
            logger.error("Workflow callback error: %s", exc)

    def execute(self, input: Any, context: Optional[AgentContext] = None) -> Any:
        context = context or AgentContext(f"workflow_{uuid.uuid4().hex[:12]}", input)
        logger.info("Workflow started type=%s steps=%d session=%s", self.workflow_type, len(self.steps), context.session_id)
        try:
            result = self.execute_workflow(input, context)
        except Exception as exc:
            self._handle_completion(exc, False, exc)
            raise
        self._handle_completion(result, True, None)
        return result


class SequentialWorkflow(BaseWorkflow):
    """Each step's result becomes the next step's input. `finally_` steps always run last."""

    name = "sequential_workflow"
    description = "Executes agents sequentially, passing results between steps"
    workflow_type = "sequential"

    def start(self, agent: Any, params: Any = None, **options: Any) -> "SequentialWorkflow":
        self.add_agent(agent, params, **options)
        return self

    then = start

    def when(self, agent: Any, condition: Callback, params: Any = None, **options: Any) -> "SequentialWorkflow":
        options["condition"] = condition
        return self.start(agent, params, **options)

    def finally_(self, agent: Any, params: Any = None, **options: Any) -> "SequentialWorkflow":
        options["finally"] = True
        return self.start(agent, params, **options)

    @classmethod
    def create(cls, *agents: Any, runtime: Any = None) -> "SequentialWorkflow":
        workflow = cls(runtime)
        for agent in agents:
            workflow.then(agent)
        return workflow

    def _run_finally(self, steps: List[Dict[str, Any]], input: Any, context: AgentContext) -> None:
        for step in steps:
            try:
                self.execute_step(step, input, context)
            except Exception as exc:
                logger.warning("Finally step failed agent=%s: %s", step["agent"], exc)

    def execute_workflow(self, input: Any, context: AgentContext) -> Dict[str, Any]:
        current = input
        step_results: Dict[str, Any] = {}
        finally_steps = [s for s in self.steps if s["options"].get("finally")]
        try:
            for step in self.steps:
                if step["options"].get("finally"):
                    continue
                result = self.execute_step(step, current, context)
                if result is not None:
                    step_results[self._step_key(step["agent"])] = result
                    current = result
        finally:
            self._run_finally(finally_steps, current, context)
        return {"final_result": current, "step_results": step_results, "workflow_type": self.workflow_type}


class ParallelWorkflow(BaseWorkflow):
    """Run every step on the same input in a thread pool and collect the results."""

    name = "parallel_workflow"
    description = "Executes agents in parallel and collects results"
    workflow_type = "parallel"

    def __init__(self, runtime: Any = None, max_workers: int = 4) -> None:
        super().__init__(runtime)
        self.max_workers = max_workers
        self.wait_count: Optional[int] = None
        self.fail_fast_enabled = True

    def agents(self, agents: Any, params: Any = None, **options: Any) -> "ParallelWorkflow":
        if isinstance(agents, dict):
            for agent, agent_params in agents.items():
                self.add_agent(agent, agent_params, **options)
        elif isinstance(agents, (list, tuple)):
            for agent in agents:
                self.add_agent(agent, params, **options)
        else:
            self.add_agent(agents, params, **options)
        return self

    @classmethod
    def create(cls, agents: Iterable[Any], runtime: Any = None) -> "ParallelWorkflow":
        return cls(runtime).agents(list(agents))

    def wait_for_all(self) -> "ParallelWorkflow":
        self.wait_count = None
        return self

    def wait_for_any(self) -> "ParallelWorkflow":
        return self.wait_for(1)

    def wait_for(self, count: int) -> "ParallelWorkflow":
        self.wait_count = count
        return self

    def fail_fast(self, enabled: bool = True) -> "ParallelWorkflow":
        self.fail_fast_enabled = enabled
        return self

    def execute_workflow(self, input: Any, context: AgentContext) -> Dict[str, Any]:
        runtime = self._runtime()
        target = len(self.steps) if self.wait_count is None else self.wait_count
        # Resolve and instantiate up front so worker threads only read the registry cache.
        for step in self.steps:
            runtime.registry.get_agent(self._step_key(step["agent"]))

        results: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=max(1, self.max_workers))
        try:
            futures = {
                pool.submit(self.execute_step, step, input, context): self._step_key(step["agent"])
                for step in self.steps
            }
            for future in concurrent.futures.as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as exc:
                    errors[name] = str(exc)
                    if self.fail_fast_enabled:
                        raise
                    continue
                if len(results) >= target:
                    break
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        if len(results) < target:
            raise RuntimeError(
                f"Only {len(results)} of {target} required agents completed successfully. "
                f"Errors: {', '.join(errors.values())}"
            )
        return {
            "results": results,
            "errors": errors,
            "completed_count": len(results),
            "total_count": len(self.steps),
            "workflow_type": self.workflow_type,
        }


class ConditionalWorkflow(BaseWorkflow):
    """Route the input to the first agent whose condition holds, else the default."""

    name = "conditional_workflow"
    description = "Routes execution to different agents based on conditions"
    workflow_type = "conditional"

    def __init__(self, runtime: Any = None) -> None:
        super().__init__(runtime)
        self.conditions: List[Dict[str, Any]] = []
        self.default: Optional[Dict[str, Any]] = None

    def when(self, condition: Any, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        self.conditions.append({"condition": condition, "agent": agent, "params": params, "options": options})
        return self

    def when_equals(self, key: str, value: Any, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        return self.when(lambda input, *_: data_get(input, key) == value, agent, params, **options)

    def when_greater_than(self, key: str, value: Any, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        def check(input: Any, *_: Any) -> bool:
            found = data_get(input, key)
            return found is not None and found > value

        return self.when(check, agent, params, **options)

    def when_less_than(self, key: str, value: Any, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        def check(input: Any, *_: Any) -> bool:
            found = data_get(input, key)
            return found is not None and found < value

        return self.when(check, agent, params, **options)

    def when_exists(self, key: str, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        return self.when(lambda input, *_: data_get(input, key) is not None, agent, params, **options)

    def when_empty(self, key: str, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        return self.when(lambda input, *_: not data_get(input, key), agent, params, **options)

    def when_matches(self, key: str, pattern: str, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        compiled = re.compile(pattern)
        return self.when(
            lambda input, *_: compiled.search(str(data_get(input, key) or "")) is not None, agent, params, **options
        )

    def otherwise(self, agent: Any, params: Any = None, **options: Any) -> "ConditionalWorkflow":
        self.default = {"agent": agent, "params": params, "options": options}
        return self

    @classmethod
    def create(cls, condition: Any, then_agent: Any, else_agent: Any = None, runtime: Any = None) -> "ConditionalWorkflow":
        workflow = cls(runtime).when(condition, then_agent)
        if else_agent is not None:
            workflow.otherwise(else_agent)
        return workflow

    def _as_step(self, branch: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "agent": branch["agent"],
            "params": branch["params"],
            "options": branch["options"],
            "retries": branch["options"].get("retries", self.retry_attempts),
        }

    def execute_workflow(self, input: Any, context: AgentContext) -> Dict[str, Any]:
        for branch in self.conditions:
            if self.evaluate_condition(branch["condition"], input, context):
                result = self.execute_step(self._as_step(branch), input, context)
                return {
                    "result": result,
                    "matched_agent": self._step_key(branch["agent"]),
                    "workflow_type": self.workflow_type,
                }
        if self.default is not None:
            result = self.execute_step(self._as_step(self.default), input, context)
            return {
                "result": result,
                "matched_agent": self._step_key(self.default["agent"]),
                "was_default": True,
                "workflow_type": self.workflow_type,
            }
        raise RuntimeError("No conditions matched and no default agent specified")


class LoopWorkflow(BaseWorkflow):
    """Repeat one agent: while/until a condition, a fixed number of times, or for each item."""

    name = "loop_workflow"
    description = "Repeats agent execution based on conditions"
    workflow_type = "loop"

    def __init__(self, runtime: Any = None) -> None:
        super().__init__(runtime)
        self.loop_type = "while"
        self.condition: Any = None
        self.max_iterations = 100
        self.break_on_error_enabled = True
        self.collection: Optional[List[Any]] = None
        self.iteration_results: Dict[int, Dict[str, Any]] = {}

    def agent(self, agent: Any, params: Any = None, **options: Any) -> "LoopWorkflow":
        self.add_agent(agent, params, **options)
        return self

    def while_(self, condition: Any) -> "LoopWorkflow":
        self.loop_type = "while"
        self.condition = condition
        return self

    def until(self, condition: Any) -> "LoopWorkflow":
        self.loop_type = "until"
        self.condition = condition
        return self

    def times(self, count: int) -> "LoopWorkflow":
        self.loop_type = "times"
        self.max_iterations = count
        return self

    def for_each(self, collection: Iterable[Any]) -> "LoopWorkflow":
        self.loop_type = "for_each"
        self.collection = list(collection)
        self.max_iterations = len(self.collection)
        return self

    def set_max_iterations(self, count: int) -> "LoopWorkflow":
        self.max_iterations = count
        return self

    def break_on_error(self, enabled: bool = True) -> "LoopWorkflow":
        self.break_on_error_enabled = enabled
        return self

    def continue_on_error(self) -> "LoopWorkflow":
        return self.break_on_error(False)

    def _should_continue(self, iteration: int, input: Any, context: AgentContext) -> bool:
        if iteration >= self.max_iterations:
            return False
        if self.loop_type == "while":
            return self.evaluate_condition(self.condition, input, context)
        if self.loop_type == "until":
            return not self.evaluate_condition(self.condition, input, context)
        if self.loop_type == "for_each":
            return self.collection is not None and iteration < len(self.collection)
        return self.loop_type == "times"

    def _step_for(self, iteration: int, input: Any) -> Dict[str, Any]:
        if not self.steps:
            raise RuntimeError("No agent specified for loop execution. Use agent() to set one.")
        step = dict(self.steps[0])
        if self.loop_type == "for_each":
            assert self.collection is not None
            item = self.collection[iteration]
            original = step["params"]
            if callable(original):
                step["params"] = lambda inp, results, ctx: original(item, iteration, inp, results, ctx)
            else:
                step["params"] = {
                    "item": item,
                    "key": iteration,
                    "iteration": iteration + 1,
                    "original_input": input,
                    "original_params": original,
                }
        return step

    def execute_workflow(self, input: Any, context: AgentContext) -> Dict[str, Any]:
        self.iteration_results = {}
        current = input
        iteration = 0
        while self._should_continue(iteration, current, context):
            step = self._step_for(iteration, current)
            iteration += 1
            record: Dict[str, Any] = {"iteration": iteration, "input": current}
            try:
                result = self.execute_step(step, current, context)
            except Exception as exc:
                record.update(error=str(exc), success=False)
                self.iteration_results[iteration] = record
                if self.break_on_error_enabled:
                    raise
                continue
            record.update(result=result, success=True)
            self.iteration_results[iteration] = record
            current = result
        return {
            "iterations": iteration,
            "results": self.iteration_results,
            "loop_type": self.loop_type,
            "completed_normally": all(r["success"] for r in self.iteration_results.values()),
            "final_input": current,
        }

    def get_successful_results(self) -> Dict[int, Dict[str, Any]]:
        return {k: v for k, v in self.iteration_results.items() if v["success"]}

    def get_failed_results(self) -> Dict[int, Dict[str, Any]]:
        return {k: v for k, v in self.iteration_results.items() if not v["success"]}
