"""
Background execution of queued agent runs.

`AgentExecutor.go()` with `async_()` writes a row to agent_jobs; a `Worker`
(started by `agent-adk worker`) claims rows and replays them through the
matching executor.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from agent_adk.exceptions import InterruptException
from agent_adk.storage import job_store

from .executor import AgentExecutor
from .media import MediaAgentExecutor
from .planning import PlanningAgentExecutor

logger = logging.getLogger("agent-adk")

EXECUTORS = {
    AgentExecutor.mode: AgentExecutor,
    PlanningAgentExecutor.mode: PlanningAgentExecutor,
    MediaAgentExecutor.mode: MediaAgentExecutor,
}

RETRY_DELAY_SECONDS = 5


def _serializable(result: Any) -> Any:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, (str, int, float, bool, dict, list)) or result is None:
        return result
    return str(result)


class AgentJob:
    def __init__(self, job: Dict[str, Any], runtime: Any) -> None:
        self.job = job
        self.runtime = runtime

    def build_executor(self) -> AgentExecutor:
        payload = dict(self.job["payload"])
        mode = payload.get("mode") or AgentExecutor.mode
        executor_cls = EXECUTORS.get(mode)
        if executor_cls is None:
            raise ValueError(f"Unknown job mode '{mode}'")
        executor = executor_cls.from_payload(self.job["agent_name"], payload, self.runtime)
        executor.context["background_job"] = True
        executor.context["job_id"] = self.job["id"]
        if self.job.get("timeout"):
            executor.timeout(self.job["timeout"])
        return executor

    def handle(self) -> Any:
        executor = self.build_executor()
        logger.info(
            "Job started id=%s agent=%s mode=%s attempt=%s",
            self.job["id"],
            self.job["agent_name"],
            executor.mode,
            self.job["attempts"],
        )
        try:
            result = _serializable(executor.go())
        except InterruptException as exc:
            # A paused run is finished from the queue's point of view.
            result = {"interrupted": True, **exc.to_dict()}
            logger.info("Job interrupted id=%s interrupt=%s", self.job["id"], exc.interrupt_id)
        job_store.complete_job(self.job["id"], result)
        logger.info("Job completed id=%s agent=%s", self.job["id"], self.job["agent_name"])
        return result


class Worker:
    def __init__(self, runtime: Any, queue: Optional[str] = None, retry_delay: int = RETRY_DELAY_SECONDS) -> None:
        self.runtime = runtime
        self.queue = queue or runtime.settings.default_queue
        self.retry_delay = retry_delay

    def process_next(self) -> Optional[Dict[str, Any]]:
        """Claim and run one job. Returns the job record after processing, or None when idle."""
        job = job_store.claim_next_job(self.queue)
        if job is None:
            return None
        try:
            AgentJob(job, self.runtime).handle()
        except Exception as exc:
            if job["attempts"] < job["max_tries"]:
                logger.warning(
                    "Job failed id=%s attempt=%d/%d, retrying: %s", job["id"], job["attempts"], job["max_tries"], exc
                )
                job_store.fail_job(job["id"], str(exc), retry_delay_seconds=self.retry_delay)
            else:
                logger.error("Job failed id=%s after %d attempts: %s", job["id"], job["attempts"], exc)
                job_store.fail_job(job["id"], str(exc))
        return job_store.get_job(job["id"])

    def run(self, once: bool = False, sleep: float = 1.0) -> int:
        processed = 0
        logger.info("Worker started queue=%s", self.queue)
        while True:
            job = self.process_next()
            if job is not None:
                processed += 1
                continue
            if once:
                return processed
            time.sleep(sleep)
