"""Master feature-run workflow.

Graph structure (rebuilt on every replay, state carried only in memoized
steps):
START → analyze → propose → judge → implement → open_pr → END
           ↓          ↓         ↓          ↓
          END        END       END        END   (failed or suspended)

Each of the first four nodes:
1. creates a running PhaseResult and reads the accumulated memories
2. invokes the phase as a durable child workflow
3. on success passes the PhaseResult, advances ``current_phase`` and asks the
   operator at the phase checkpoint
4. on failure fails the PhaseResult and the run, notifies, stops the sandbox

The pr node pushes the branch, opens the pull request and completes the run.
The sandbox is stopped on every exit path.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, TypedDict

from langgraph.graph import END, StateGraph

from featureforge.agent.cta import request_cta
from featureforge.agent.loop import new_id
from featureforge.database.models import FeatureRun, SandboxRecord, utcnow
from featureforge.database.session import SessionFactory
from featureforge.durable.engine import WorkflowEngine
from featureforge.durable.step import StepContext, WorkflowSuspended
from featureforge.errors import OutputParseError, PhaseFailed
from featureforge.pipeline.analysis import analysis_phase
from featureforge.pipeline.approaches import approaches_phase
from featureforge.pipeline.implementation import implementation_phase
from featureforge.pipeline.judging import judging_phase
from featureforge.pipeline.pr import generate_pr_body, generate_pr_title, parse_repo_url, slugify_branch
from featureforge.runtime import PipelineDeps
from featureforge.schemas import (
    AnalysisOutput,
    ApprovalRequest,
    ApproachesOutput,
    ChoiceOption,
    ChoiceRequest,
    CtaOutcome,
    FeatureRequest,
    ImplementationOutput,
    JudgingOutput,
    Phase,
    PrOutput,
    SandboxStatus,
)
from featureforge.tools.git_ops import push_branch
from featureforge.tools.sandbox import SandboxHandle, SandboxSpec


logger = logging.getLogger(__name__)

FEATURE_RUN_WORKFLOW = "feature_run"

PhaseFn = Callable[[PipelineDeps, StepContext, dict[str, Any]], Awaitable[Any]]

# Phase that each phase advances the run to
NEXT_PHASE: dict[Phase, Phase] = {
    Phase.ANALYSIS: Phase.APPROACHES,
    Phase.APPROACHES: Phase.JUDGING,
    Phase.JUDGING: Phase.IMPLEMENTATION,
    Phase.IMPLEMENTATION: Phase.PR,
    Phase.PR: Phase.COMPLETED,
}

RUNNING = "running"
FAILED = "failed"
COMPLETED = "completed"
SUSPENDED = "suspended"


# =============================================================================
# State Definition
# =============================================================================

class FeatureRunState(TypedDict, total=False):
    """State passed between graph nodes within one replay.

    Attributes:
        run_id: Feature run id
        sandbox_id: Sandbox serving the run
        prompt: Feature request text
        repo_url: Repository locator
        branch: Base branch
        status: running, failed, completed or suspended
        analysis: AnalysisOutput JSON
        approaches: ApproachesOutput JSON
        approach: The selected Approach JSON
        judging: JudgingOutput JSON
        implementation: ImplementationOutput JSON
        pr: PrOutput JSON
        error: Failure message
        suspension: The WorkflowSuspended that stopped this replay
    """
    run_id: str
    sandbox_id: str
    prompt: str
    repo_url: str
    branch: str
    status: str
    analysis: dict[str, Any] | None
    approaches: dict[str, Any] | None
    approach: dict[str, Any] | None
    judging: dict[str, Any] | None
    implementation: dict[str, Any] | None
    pr: dict[str, Any] | None
    error: str | None
    suspension: Any


def failure_detail(exc: Exception) -> str:
    """Last captured gate or agent output behind a phase failure."""
    if isinstance(exc, PhaseFailed) and exc.output:
        failed_gates = [g for g in exc.output.get("gate_results", []) if g.get("status") == "failed"]
        if failed_gates:
            gate = failed_gates[-1]
            return f"{gate['gate']} gate output:\n{gate.get('output', '')}"
        if exc.output.get("rejection_reason"):
            return exc.output["rejection_reason"]
    if isinstance(exc, OutputParseError):
        return exc.raw_text[-4000:]
    return ""


# =============================================================================
# Pipeline
# =============================================================================

class FeatureRunPipeline:
    """Graph nodes for one execution of one feature run."""

    def __init__(self, deps: PipelineDeps, step: StepContext):
        self.deps = deps
        self.step = step
        self.store = deps.store

    # -------------------------------------------------------------------------
    # Shared node logic
    # -------------------------------------------------------------------------

    async def _run_phase(
        self,
        state: FeatureRunState,
        phase: Phase,
        fn: PhaseFn,
        extra: dict[str, Any],
    ) -> tuple[dict[str, Any], str] | None:
        """Run one phase; returns ``(output, phase_result_id)`` or None once failed."""
        step, run_id = self.step, state["run_id"]
        phase_result_id = await new_id(step, f"phase-result-id-{phase.value}")
        await step.run(f"create-phase-{phase.value}", lambda: self.store.create_phase_result(
            phase_result_id, run_id, phase
        ))
        memories = await step.run(f"read-memories-{phase.value}", lambda: self.store.get_memories(run_id))

        logger.info(f"[{run_id}] Starting {phase.value}")
        payload = {
            "run_id": run_id,
            "phase_result_id": phase_result_id,
            "sandbox_id": state["sandbox_id"],
            "prompt": state["prompt"],
            "repo_url": state["repo_url"],
            "branch": state["branch"],
            "memories": memories,
            **extra,
        }

        async def _attempt() -> dict[str, Any]:
            try:
                output = await step.invoke(f"phase-{phase.value}", partial(fn, self.deps), payload)
            except Exception as e:
                logger.error(f"[{run_id}] Phase {phase.value} failed: {e}")
                return {
                    "ok": False,
                    "error": str(e),
                    "output": e.output if isinstance(e, PhaseFailed) else None,
                    "detail": failure_detail(e),
                }
            return {"ok": True, "output": output}

        # A failure is recorded like a success so a replay never retries the phase
        outcome = await step.run(f"outcome-{phase.value}", _attempt, max_attempts=1)
        if not outcome["ok"]:
            await step.run(f"fail-phase-{phase.value}", lambda: self.store.fail_phase_result(
                phase_result_id, outcome["error"], outcome["output"]
            ))
            await self._fail_run(state, phase, outcome["error"], outcome["detail"])
            return None

        output = outcome["output"]
        await step.run(f"pass-phase-{phase.value}", lambda: self.store.pass_phase_result(phase_result_id, output))
        await step.run(f"advance-{NEXT_PHASE[phase].value}", lambda: self.store.advance_phase(
            run_id, NEXT_PHASE[phase]
        ))
        logger.info(f"[{run_id}] Phase {phase.value} passed")
        return output, phase_result_id

    async def _checkpoint(
        self,
        state: FeatureRunState,
        phase: Phase,
        phase_result_id: str,
        request: ApprovalRequest | ChoiceRequest,
    ) -> CtaOutcome | None:
        """Ask the operator after a phase; returns None once the run has failed.

        A timeout or an explicit rejection fails the run. The passed
        PhaseResult is left as it is.
        """
        run_id = state["run_id"]
        try:
            outcome = await request_cta(
                self.step,
                self.store,
                key=f"checkpoint-{phase.value}",
                run_id=run_id,
                phase_result_id=phase_result_id,
                request=request,
                timeout=self.deps.settings.cta_timeout,
            )
        except Exception as e:
            await self._fail_run(state, phase, f"Checkpoint after {phase.value} aborted: {e}")
            return None

        if outcome.timed_out:
            await self._fail_run(state, phase, f"No response to the {phase.value} checkpoint before the deadline")
            return None
        if request.kind == "approval" and not outcome.response.approved:
            reason = outcome.response.reason or "no reason given"
            await self._fail_run(state, phase, f"Operator rejected the {phase.value} checkpoint: {reason}")
            return None
        return outcome

    async def _approve(self, state: FeatureRunState, phase: Phase, phase_result_id: str, message: str) -> bool:
        outcome = await self._checkpoint(state, phase, phase_result_id, ApprovalRequest(message=message))
        return outcome is not None

    async def _fail_run(self, state: FeatureRunState, phase: Phase, message: str, detail: str = "") -> None:
        step, run_id = self.step, state["run_id"]
        await step.run("fail-run", lambda: self.store.fail_feature_run(run_id, message))
        await step.run("notify-failure", lambda: self.deps.notifier.phase_failed(run_id, phase.value, message, detail))
        await self._stop_sandbox(state["sandbox_id"])

    async def _stop_sandbox(self, sandbox_id: str, key: str = "stop-sandbox") -> None:
        await self.step.run(key, lambda: self.deps.sandboxes.stop(sandbox_id))
        await self.step.run(f"{key}-record", lambda: self.store.update_sandbox_status(
            sandbox_id, SandboxStatus.STOPPED
        ))

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def analysis_node(self, state: FeatureRunState) -> dict[str, Any]:
        done = await self._run_phase(state, Phase.ANALYSIS, analysis_phase, {})
        if done is None:
            return {"status": FAILED}
        output, phase_result_id = done

        message = "Analysis complete. Approve to proceed to approach generation?"
        if not await self._approve(state, Phase.ANALYSIS, phase_result_id, message):
            return {"status": FAILED}
        return {"analysis": output}

    async def approaches_node(self, state: FeatureRunState) -> dict[str, Any]:
        done = await self._run_phase(state, Phase.APPROACHES, approaches_phase, {"analysis": state["analysis"]})
        if done is None:
            return {"status": FAILED}
        output, phase_result_id = done
        approaches = ApproachesOutput.model_validate(output)

        if len(approaches.approaches) < 2:
            only = approaches.approaches[0]
            message = f"One approach was proposed: {only.title}. Proceed with it?"
            if not await self._approve(state, Phase.APPROACHES, phase_result_id, message):
                return {"status": FAILED}
            return {"approaches": output, "approach": only.model_dump(mode="json")}

        request = ChoiceRequest(
            prompt="Which approach should be pursued?",
            options=[ChoiceOption(id=a.id, label=a.title or a.id) for a in approaches.approaches],
        )
        outcome = await self._checkpoint(state, Phase.APPROACHES, phase_result_id, request)
        if outcome is None:
            return {"status": FAILED}
        # Membership was validated against the offered options
        selected = approaches.find(outcome.response.selected_id)
        logger.info(f"[{state['run_id']}] Operator selected approach {selected.id}")
        return {"approaches": output, "approach": selected.model_dump(mode="json")}

    async def judging_node(self, state: FeatureRunState) -> dict[str, Any]:
        done = await self._run_phase(state, Phase.JUDGING, judging_phase, {
            "analysis": state["analysis"],
            "approach": state["approach"],
        })
        if done is None:
            return {"status": FAILED}
        output, phase_result_id = done
        judging = JudgingOutput.model_validate(output)

        message = f"Judging verdict: {judging.overall_verdict.value}."
        if judging.conditions:
            message += " Conditions:\n" + "\n".join(f"- {c}" for c in judging.conditions)
        message += "\nApprove to proceed to implementation?"
        if not await self._approve(state, Phase.JUDGING, phase_result_id, message):
            return {"status": FAILED}
        return {"judging": output}

    async def implementation_node(self, state: FeatureRunState) -> dict[str, Any]:
        judging = JudgingOutput.model_validate(state["judging"])
        done = await self._run_phase(state, Phase.IMPLEMENTATION, implementation_phase, {
            "analysis": state["analysis"],
            "approach": state["approach"],
            "conditions": judging.conditions,
            "work_branch": slugify_branch(state["prompt"], state["run_id"][:8]),
        })
        if done is None:
            return {"status": FAILED}
        output, phase_result_id = done
        implementation = ImplementationOutput.model_validate(output)

        message = (
            f"Implementation passed all quality gates after {implementation.total_coder_attempts} "
            f"attempt(s), changing {len(implementation.files_changed)} file(s). "
            "Approve to open the pull request?"
        )
        if not await self._approve(state, Phase.IMPLEMENTATION, phase_result_id, message):
            return {"status": FAILED}
        return {"implementation": output}

    async def pr_node(self, state: FeatureRunState) -> dict[str, Any]:
        step, run_id = self.step, state["run_id"]
        phase_result_id = await new_id(step, "phase-result-id-pr")
        await step.run("create-phase-pr", lambda: self.store.create_phase_result(phase_result_id, run_id, Phase.PR))

        implementation = ImplementationOutput.model_validate(state["implementation"])
        title = generate_pr_title(state["prompt"])
        body = generate_pr_body(
            state["prompt"],
            AnalysisOutput.model_validate(state["analysis"]),
            ApproachesOutput.model_validate(state["approaches"]).find(state["approach"]["id"]),
            implementation,
        )
        try:
            owner, repo = parse_repo_url(state["repo_url"])
            sandbox = await self.deps.sandboxes.connect(state["sandbox_id"])
            await step.run("push-branch", lambda: push_branch(sandbox, implementation.branch))
            pr = await step.run("create-pr", lambda: self.deps.source_host.create_pull_request(
                owner, repo, implementation.branch, implementation.base_branch, title, body
            ))
        except Exception as e:
            logger.error(f"[{run_id}] Pull request creation failed: {e}")
            await step.run("fail-phase-pr", lambda: self.store.fail_phase_result(phase_result_id, str(e)))
            await self._fail_run(state, Phase.PR, str(e))
            return {"status": FAILED}

        output = PrOutput(url=pr["url"], number=pr["number"], title=title, branch=implementation.branch)
        await step.run("pass-phase-pr", lambda: self.store.pass_phase_result(
            phase_result_id, output.model_dump(mode="json")
        ))
        await step.run("advance-completed", lambda: self.store.advance_phase(run_id, Phase.COMPLETED))
        await step.run("notify-completed", lambda: self.deps.notifier.run_completed(run_id, output.url))
        await self._stop_sandbox(state["sandbox_id"])
        logger.info(f"[{run_id}] Run completed: {output.url}")
        return {"status": COMPLETED, "pr": output.model_dump(mode="json")}

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    @staticmethod
    def _guard(node: Callable[[FeatureRunState], Awaitable[dict[str, Any]]]):
        """Turn a suspension into graph state so it never crosses the graph runtime."""

        async def guarded(state: FeatureRunState) -> dict[str, Any]:
            try:
                return await node(state)
            except WorkflowSuspended as suspended:
                return {"status": SUSPENDED, "suspension": suspended}

        return guarded

    def build_graph(self) -> StateGraph:
        workflow = StateGraph(FeatureRunState)

        nodes = [
            ("analyze", self.analysis_node),
            ("propose", self.approaches_node),
            ("judge", self.judging_node),
            ("implement", self.implementation_node),
            ("open_pr", self.pr_node),
        ]
        for name, node in nodes:
            workflow.add_node(name, self._guard(node))

        workflow.set_entry_point("analyze")
        for (name, _), (next_name, _) in zip(nodes, nodes[1:]):
            workflow.add_conditional_edges(
                name,
                should_continue,
                {"continue": next_name, "stop": END},
            )
        workflow.add_edge("open_pr", END)
        return workflow


def should_continue(state: FeatureRunState) -> str:
    return "continue" if state.get("status") == RUNNING else "stop"


# =============================================================================
# Workflow Function
# =============================================================================

async def feature_run_workflow(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> dict[str, Any]:
    """Durable entry point of a feature run.

    Returns:
        ``{"run_id", "status"}`` plus ``pr_url`` on success or ``error`` on failure
    """
    request = FeatureRequest.model_validate(payload)
    settings = deps.settings
    store = deps.store
    run_id = payload.get("run_id") or await new_id(step, "run-id")

    await step.run("create-feature-run", lambda: store.create_feature_run(FeatureRun(
        id=run_id,
        prompt=request.prompt,
        repo_url=request.repo_url,
        branch=request.branch,
        current_phase=Phase.ANALYSIS.value,
    )))

    spec = SandboxSpec(
        repo_url=request.repo_url,
        branch=request.branch,
        memory_mb=settings.sandbox_memory_mb,
        vcpus=settings.sandbox_vcpus,
        region=settings.sandbox_region,
        timeout_seconds=settings.sandbox_timeout_seconds,
    )
    try:
        handle = SandboxHandle.model_validate(
            await step.run("create-sandbox", lambda: deps.sandboxes.create(spec))
        )
    except Exception as e:
        message = f"Sandbox provisioning failed: {e}"
        await step.run("fail-run", lambda: store.fail_feature_run(run_id, message))
        await step.run("notify-failure", lambda: deps.notifier.phase_failed(run_id, Phase.ANALYSIS.value, message))
        return {"run_id": run_id, "status": FAILED, "error": message}

    await step.run("persist-sandbox-record", lambda: store.create_sandbox_record(SandboxRecord(
        id=handle.sandbox_id,
        status=SandboxStatus.RUNNING.value,
        repo_url=request.repo_url,
        branch=request.branch,
        memory_mb=spec.memory_mb,
        vcpus=spec.vcpus,
        region=spec.region,
        cwd=handle.cwd,
        timeout_seconds=spec.timeout_seconds,
        started_at=utcnow(),
    )))
    await step.run("attach-sandbox", lambda: store.attach_sandbox(run_id, handle.sandbox_id))
    logger.info(f"[{run_id}] Sandbox {handle.sandbox_id} ready")

    pipeline = FeatureRunPipeline(deps, step)
    graph = pipeline.build_graph().compile()
    initial: FeatureRunState = {
        "run_id": run_id,
        "sandbox_id": handle.sandbox_id,
        "prompt": request.prompt,
        "repo_url": request.repo_url,
        "branch": request.branch,
        "status": RUNNING,
    }
    try:
        final = await graph.ainvoke(initial)
    except Exception as e:
        logger.exception(f"[{run_id}] Feature run aborted: {e}")
        await step.run("fail-run-abort", lambda: store.fail_feature_run(run_id, f"Feature run aborted: {e}"))
        await pipeline._stop_sandbox(handle.sandbox_id, key="stop-sandbox-abort")
        raise

    if final["status"] == SUSPENDED:
        raise final["suspension"]
    if final["status"] == COMPLETED:
        return {"run_id": run_id, "status": COMPLETED, "pr_url": final["pr"]["url"]}

    run = await store.get_feature_run(run_id)
    return {"run_id": run_id, "status": FAILED, "error": run.error_message if run else None}


# =============================================================================
# Wiring
# =============================================================================

def build_engine(
    deps: PipelineDeps,
    session_factory: SessionFactory,
    clock: Callable[[], datetime] | None = None,
) -> WorkflowEngine:
    """Engine with the feature-run workflow registered and notifications wired."""
    engine = WorkflowEngine(
        session_factory,
        clock=clock,
        max_step_attempts=deps.settings.step_max_attempts,
        step_backoff_seconds=deps.settings.step_retry_backoff_seconds,
        lease_seconds=deps.settings.workflow_lease_seconds,
    )
    engine.register(FEATURE_RUN_WORKFLOW, partial(feature_run_workflow, deps))
    engine.subscribe(deps.notifier.on_event)
    return engine


async def launch_feature_run(engine: WorkflowEngine, request: FeatureRequest, run_id: str) -> str:
    """Start a run; returns once it completes, fails or first suspends."""
    payload = {**request.model_dump(mode="json"), "run_id": run_id}
    run = await engine.start(FEATURE_RUN_WORKFLOW, payload, workflow_id=run_id)
    logger.info(f"[{run_id}] Workflow is {run.status}")
    return run.status
