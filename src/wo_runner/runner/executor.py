"""One trampoline step: start or resume a task, run the loop, persist the outcome."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from wo_runner.config import Settings
from wo_runner.runner.checkpoint import (
    CheckpointSnapshot,
    ResumeToken,
    build_continuation_prompt,
)
from wo_runner.runner.circuit_breaker import CircuitBreakerDecision, Verdict, evaluate
from wo_runner.runner.context import ContextBuilder
from wo_runner.runner.escalation import (
    attempt_escalation,
    create_remediation_task,
    resolve_model,
)
from wo_runner.runner.loop import LoopResult, LoopStatus, TurnLoop
from wo_runner.runner.models import MutationDigest, TaskStatus, TaskView
from wo_runner.runner.providers import Provider, build_provider
from wo_runner.runner.repository import CHECKPOINT_EVENT, TaskRepository
from wo_runner.runner.tools.base import ToolContext
from wo_runner.runner.tools.dispatcher import ToolDispatcher
from wo_runner.runner.tools.mutations import MutationRecorder
from wo_runner.runner.tools.proxy import ToolProxy
from wo_runner.runner.tools.registry import ToolRegistry, build_default_registry
from wo_runner.runner.tools.workspace_tools import list_workspace_files

logger = logging.getLogger(__name__)

RESOLVED_PARENT_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})

ProviderFactory = Callable[[str], Provider]


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    ESCALATED = "escalated"
    SKIPPED = "skipped"


@dataclass(slots=True)
class ExecutionOutcome:
    """Result of one executor invocation."""

    status: OutcomeStatus
    task_id: str
    summary: str
    turns: int = 0
    resume_token: ResumeToken | None = None

    @property
    def needs_redispatch(self) -> bool:
        return self.status in {OutcomeStatus.SUSPENDED, OutcomeStatus.ESCALATED}


class TaskExecutor:
    """Runs a single invocation of a work order."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        settings: Settings,
        registry: ToolRegistry | None = None,
        provider_factory: ProviderFactory | None = None,
        proxy: ToolProxy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.registry = registry or build_default_registry()
        self.provider_factory = provider_factory or self._default_provider
        self.proxy = proxy
        self.context_builder = ContextBuilder(repository)
        self._clock = clock
        self._sleep = sleep

    def execute(self, task_id: str, resume: ResumeToken | None = None) -> ExecutionOutcome:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            return ExecutionOutcome(OutcomeStatus.SKIPPED, task_id, f"Task not found: {task_id}")

        if task.status == TaskStatus.READY:
            if not self.repository.start_task(task_id=task_id):
                return ExecutionOutcome(
                    OutcomeStatus.SKIPPED,
                    task_id,
                    "Task was claimed by another runner",
                )
            task = self.repository.require_task(task_id=task_id)
        elif task.status != TaskStatus.IN_PROGRESS:
            return ExecutionOutcome(
                OutcomeStatus.SKIPPED,
                task_id,
                f"Task is not runnable from status={task.status.value}",
            )

        if resume is not None:
            logger.info(
                "Resuming %s (checkpoint=%s, tier=%s)",
                task.slug,
                resume.checkpoint_id,
                resume.escalation_tier,
            )

        moot = self._moot_remediation(task)
        if moot is not None:
            self.repository.complete_task(task_id=task_id, summary=moot)
            logger.info("%s: %s", task.slug, moot)
            return ExecutionOutcome(OutcomeStatus.COMPLETED, task_id, moot)

        checkpoint_count = self.repository.count_checkpoints(task_id=task_id)
        if checkpoint_count >= self.settings.circuit_breaker.stable_checkpoints:
            decision = self._circuit_breaker(task, checkpoint_count)
            if decision.verdict != Verdict.CONTINUE:
                return self._escalate_or_fail(task, decision)

        try:
            return self._run(task, checkpoint_count)
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor crashed on %s", task.slug)
            reason = f"Executor error: {error}"
            self.repository.fail_task(task_id=task_id, reason=reason)
            return ExecutionOutcome(OutcomeStatus.FAILED, task_id, reason)

    def _run(self, task: TaskView, checkpoint_count: int) -> ExecutionOutcome:
        role = task.assigned_to or self.settings.user_context.default_role
        allowed = self.settings.tool_access.allowed_for(role)
        definitions = self.registry.definitions_for(tags=task.tags, allowed=allowed)
        context = ToolContext(
            task=task,
            repository=self.repository,
            actor=self.settings.user_context.actor,
            role=role,
            workdir=self.settings.workdir_root / task.task_id,
        )
        model = resolve_model(task, self.settings)
        user_message = self._user_message(task, checkpoint_count, context=context, model=model)

        try:
            provider = self.provider_factory(model)
        except ValueError as error:
            reason = f"Provider configuration error: {error}"
            self.repository.fail_task(task_id=task.task_id, reason=reason)
            return ExecutionOutcome(OutcomeStatus.FAILED, task.task_id, reason)

        dispatcher = ToolDispatcher(
            self.registry,
            recorder=MutationRecorder(self.repository, sleep=self._sleep),
            proxy=self.proxy,
            allowed=allowed,
        )
        loop = TurnLoop(
            provider,
            dispatcher,
            self.repository,
            self.settings.loop,
            clock=self._clock,
            sleep=self._sleep,
        )
        try:
            result = loop.run(
                task=task,
                system_prompt=self.context_builder.build_system_prompt(role, definitions),
                user_message=user_message,
                tools=[definition.spec() for definition in definitions],
                context=context,
                model=model,
            )
        finally:
            provider.close()
        return self._persist(task, result)

    def _user_message(
        self,
        task: TaskView,
        checkpoint_count: int,
        *,
        context: ToolContext,
        model: str,
    ) -> str:
        latest = self.repository.latest_checkpoint(task_id=task.task_id)
        if checkpoint_count == 0 or latest is None:
            message = self.context_builder.build_user_message(task)
            escalation = self.context_builder.escalation_context(task, model=model)
            return message + escalation if escalation else message

        snapshot = CheckpointSnapshot.from_details(latest.details)
        self.repository.add_event(
            task_id=task.task_id,
            event_type="continuation_start",
            details={
                "checkpoint_count": checkpoint_count,
                "previous_turns": snapshot.turns_completed,
            },
        )
        logger.info("Continuing %s after checkpoint %d", task.slug, checkpoint_count)
        return build_continuation_prompt(
            task,
            snapshot,
            checkpoint_count=checkpoint_count,
            hard_cap=self.settings.circuit_breaker.hard_cap_checkpoints,
            workspace_files=list_workspace_files(context.workdir),
            children=self.repository.list_children(parent_id=task.task_id),
        )

    def _persist(self, task: TaskView, result: LoopResult) -> ExecutionOutcome:
        if result.status == LoopStatus.SUSPENDED:
            self.repository.checkpoint_continue(
                task_id=task.task_id,
                checkpoint_id=result.checkpoint_id,
            )
            return ExecutionOutcome(
                OutcomeStatus.SUSPENDED,
                task.task_id,
                result.summary,
                turns=result.turns,
                resume_token=ResumeToken(task_id=task.task_id, checkpoint_id=result.checkpoint_id),
            )

        if result.status == LoopStatus.COMPLETED:
            if not self.repository.complete_task(task_id=task.task_id, summary=result.summary):
                logger.warning("%s changed state before it could be completed", task.slug)
                return ExecutionOutcome(
                    OutcomeStatus.SKIPPED,
                    task.task_id,
                    result.summary,
                    turns=result.turns,
                )
            return ExecutionOutcome(
                OutcomeStatus.COMPLETED,
                task.task_id,
                result.summary,
                turns=result.turns,
            )

        self.repository.fail_task(
            task_id=task.task_id,
            reason=result.summary,
            details={
                "turns": result.turns,
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
            },
        )
        return ExecutionOutcome(
            OutcomeStatus.FAILED,
            task.task_id,
            result.summary,
            turns=result.turns,
        )

    def _circuit_breaker(self, task: TaskView, checkpoint_count: int) -> CircuitBreakerDecision:
        """Compare live successful mutations with the checkpoint before the latest one."""

        checkpoints = self.repository.list_events(
            task_id=task.task_id,
            event_type=CHECKPOINT_EVENT,
            limit=2,
        )
        previous_successful = 0
        if len(checkpoints) > 1:
            digest = MutationDigest.from_details(checkpoints[1].details.get("mutation_digest"))
            previous_successful = digest.successful if digest is not None else 0

        breaker = self.settings.circuit_breaker
        decision = evaluate(
            checkpoint_count=checkpoint_count,
            previous_successful=previous_successful,
            current_successful=self.repository.count_mutations(task_id=task.task_id, success=True),
            stable_threshold=breaker.stable_checkpoints,
            hard_cap=breaker.hard_cap_checkpoints,
        )
        self.repository.add_event(
            task_id=task.task_id,
            event_type="circuit_breaker_decision",
            details=decision.to_event_details(),
        )
        logger.info(
            "Circuit breaker for %s: %s (%s)",
            task.slug,
            decision.verdict.value,
            decision.reason,
        )
        return decision

    def _escalate_or_fail(
        self,
        task: TaskView,
        decision: CircuitBreakerDecision,
    ) -> ExecutionOutcome:
        step = attempt_escalation(
            self.repository,
            task,
            settings=self.settings,
            reason=decision.reason,
        )
        if step is not None:
            return ExecutionOutcome(
                OutcomeStatus.ESCALATED,
                task.task_id,
                f"Escalated: {decision.reason}",
                resume_token=ResumeToken(task_id=task.task_id, escalation_tier=step.tier),
            )

        reason = decision.reason
        if decision.verdict == Verdict.HARD_CAP:
            reason += " Marking failed."
        self.repository.fail_task(
            task_id=task.task_id,
            reason=reason,
            details=decision.to_event_details(),
        )
        create_remediation_task(
            self.repository,
            self.repository.require_task(task_id=task.task_id),
            reason=reason,
            max_depth=self.settings.circuit_breaker.max_remediation_depth,
        )
        return ExecutionOutcome(OutcomeStatus.FAILED, task.task_id, reason)

    def _moot_remediation(self, task: TaskView) -> str | None:
        if not task.is_remediation:
            return None
        parent = self.context_builder.parent_of(task)
        if parent is None or parent.status not in RESOLVED_PARENT_STATUSES:
            return None
        return (
            f"Parent {parent.slug} already resolved ({parent.status.value}), "
            "remediation unnecessary"
        )

    def _default_provider(self, model: str) -> Provider:
        return build_provider(model, self.settings.provider)
