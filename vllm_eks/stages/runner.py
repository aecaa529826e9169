"""Stage Runner: the per-stage state machine and the sequential plan loop.

Per stage::

    NotStarted ──(probe: ready)────────────────────────────→ Ready
        │ (probe: absent)            (probe: in progress)
        ↓                                    │
    Creating ──(accepted / AlreadyExists)──→ Polling ──(ready)──→ Ready
        │                                    │
        └──(rejected)──→ Failed ←──(provider failed / timeout)──┘

Stages run strictly in plan order, one describe call at a time.  The first
``Failed`` halts the plan.  Clock and sleep are injectable so tests can
drive a stage with a scripted sequence of probe results.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Container, Optional

from botocore.exceptions import BotoCoreError, ClientError

from vllm_eks.errors import (
    AlreadyExists,
    CommandError,
    CreationFailed,
    InvalidTemplate,
    MissingIdentifier,
    MissingTemplateFiles,
    PollTimeout,
    PreconditionFailed,
    ProbeError,
    ProvisionError,
)
from vllm_eks.probe.models import ManagedResource
from vllm_eks.stages.models import (
    DeploymentPlan,
    FailureReason,
    PlanReport,
    PollVerdict,
    Stage,
    StageContext,
    StageOutcome,
    StageState,
)

logger = logging.getLogger(__name__)

#: Consecutive transient probe failures tolerated before the stage fails.
MAX_CONSECUTIVE_PROBE_ERRORS: int = 5

TransitionListener = Callable[[Stage, StageState, Optional[ManagedResource]], None]


class _StageFailed(Exception):
    """Internal unwinding signal carrying the failure reason and error."""

    def __init__(self, reason: FailureReason, error: ProvisionError) -> None:
        super().__init__(error.message)
        self.reason = reason
        self.error = error


def _reason_for(exc: ProvisionError) -> FailureReason:
    if isinstance(exc, PollTimeout):
        return FailureReason.POLL_TIMEOUT
    if isinstance(exc, ProbeError):
        return FailureReason.PROBE_ERROR
    if isinstance(exc, PreconditionFailed):
        return FailureReason.PRECONDITION_FAILED
    if isinstance(exc, MissingIdentifier):
        return FailureReason.MISSING_IDENTIFIER
    if isinstance(exc, MissingTemplateFiles):
        return FailureReason.MISSING_TEMPLATE_FILES
    if isinstance(exc, InvalidTemplate):
        return FailureReason.INVALID_TEMPLATE
    return FailureReason.CREATION_FAILED


class StageRunner:
    """Drives stages through the state machine.

    Args:
        ctx: Shared context handed to every stage hook.
        clock: Monotonic seconds source.
        sleep: Called with the poll interval between describe calls.
        max_probe_errors: Consecutive :class:`ProbeError` budget per stage.
        listener: Optional callback invoked on every state transition.
    """

    def __init__(
        self,
        ctx: StageContext,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        max_probe_errors: int = MAX_CONSECUTIVE_PROBE_ERRORS,
        listener: Optional[TransitionListener] = None,
    ) -> None:
        self.ctx = ctx
        self.clock = clock
        self.sleep = sleep
        self.max_probe_errors = max_probe_errors
        self.listener = listener

    # -- helpers ------------------------------------------------------------

    def _enter(self, stage: Stage, outcome: StageOutcome, state: StageState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        logger.info("Stage %s → %s", stage.name, state.value)
        if self.listener is not None:
            self.listener(stage, state, outcome.resource)

    def _fail(self, stage: Stage, exc: ProvisionError, reason: Optional[FailureReason] = None) -> _StageFailed:
        exc.stage = exc.stage or stage.name
        exc.resource = exc.resource or f"{stage.kind.value}/{stage.selector}"
        exc.remediation = exc.remediation or stage.remediation
        return _StageFailed(reason or _reason_for(exc), exc)

    def _probe(self, stage: Stage, outcome: StageOutcome) -> ManagedResource:
        """Describe the stage's resource, retrying transient failures."""
        consecutive = 0
        while True:
            try:
                resource = stage.probe(self.ctx)
            except ProbeError as exc:
                consecutive += 1
                outcome.probe_errors += 1
                if consecutive >= self.max_probe_errors:
                    raise self._fail(stage, ProbeError(
                        f"Describe failed {consecutive} consecutive times: {exc.message}",
                        cause=exc,
                    )) from exc
                logger.warning(
                    "Transient probe failure for %s (%d/%d): %s",
                    stage.name, consecutive, self.max_probe_errors, exc.message,
                )
                self.sleep(stage.poll_interval)
                continue
            except (ClientError, BotoCoreError) as exc:
                raise self._fail(stage, ProbeError(
                    f"Describe failed: {exc}", cause=exc,
                )) from exc
            except ProvisionError as exc:
                raise self._fail(stage, exc) from exc
            outcome.resource = resource
            return resource

    def _provider_failed(self, stage: Stage, resource: ManagedResource) -> _StageFailed:
        return self._fail(stage, CreationFailed(
            f"{resource.label} is in failed state '{resource.status or resource.current_state.value}'",
        ))

    def _create(self, stage: Stage, outcome: StageOutcome) -> None:
        try:
            stage.action(self.ctx)
            outcome.created = True
        except AlreadyExists as exc:
            # A prior partial run got there first.
            outcome.already_existed = True
            logger.info("%s already exists; continuing to poll", exc.resource or stage.name)
        except CommandError as exc:
            raise self._fail(stage, CreationFailed(exc.message, cause=exc)) from exc
        except (ClientError, BotoCoreError) as exc:
            raise self._fail(stage, CreationFailed(str(exc), cause=exc)) from exc
        except ProvisionError as exc:
            raise self._fail(stage, exc) from exc

    def _poll(self, stage: Stage, outcome: StageOutcome) -> ManagedResource:
        started = self.clock()
        while True:
            resource = self._probe(stage, outcome)
            outcome.polls += 1
            verdict = stage.predicate(resource)
            if verdict == PollVerdict.READY:
                return resource
            if verdict == PollVerdict.FAILED:
                raise self._provider_failed(stage, resource)
            elapsed = self.clock() - started
            if elapsed >= stage.timeout:
                raise self._fail(stage, PollTimeout(
                    f"{resource.label} not ready after {int(elapsed)}s "
                    f"(last status: {resource.status or resource.current_state.value})",
                    elapsed=elapsed,
                ))
            logger.debug(
                "%s still %s (%.0fs elapsed)", resource.label,
                resource.status or resource.current_state.value, elapsed,
            )
            self.sleep(stage.poll_interval)

    def _finish_ready(self, stage: Stage, outcome: StageOutcome, resource: ManagedResource) -> None:
        if stage.on_ready is not None:
            try:
                stage.on_ready(self.ctx, resource)
            except CommandError as exc:
                raise self._fail(stage, CreationFailed(exc.message, cause=exc)) from exc
            except (ClientError, BotoCoreError) as exc:
                raise self._fail(stage, CreationFailed(str(exc), cause=exc)) from exc
            except ProvisionError as exc:
                raise self._fail(stage, exc) from exc
        self._enter(stage, outcome, StageState.READY)

    # -- public API ---------------------------------------------------------

    def run_stage(self, stage: Stage, *, verify_only: bool = False) -> StageOutcome:
        """Converge one stage; with *verify_only* never call its action."""
        outcome = StageOutcome(stage=stage.name, verify_only=verify_only)
        started = self.clock()
        try:
            resource = self._probe(stage, outcome)
            verdict = stage.predicate(resource)

            if verdict == PollVerdict.READY:
                outcome.skipped = True
                logger.info("%s already ready; skipping creation", resource.label)
                self._finish_ready(stage, outcome, resource)
            elif verdict == PollVerdict.FAILED:
                raise self._provider_failed(stage, resource)
            elif verify_only:
                raise self._fail(stage, PreconditionFailed(
                    f"{resource.label} is not ready "
                    f"({resource.status or resource.current_state.value})",
                    remediation=f"Run 'vllm-eks {stage.phase}' first.",
                ))
            else:
                if not resource.exists:
                    self._enter(stage, outcome, StageState.CREATING)
                    self._create(stage, outcome)
                else:
                    logger.info(
                        "%s is %s; resuming polling", resource.label,
                        resource.status or resource.current_state.value,
                    )
                self._enter(stage, outcome, StageState.POLLING)
                resource = self._poll(stage, outcome)
                self._finish_ready(stage, outcome, resource)
        except _StageFailed as failed:
            outcome.reason = failed.reason
            outcome.error = failed.error
            self._enter(stage, outcome, StageState.FAILED)
            logger.error("Stage %s failed (%s): %s", stage.name, failed.reason.value, failed.error.message)
        outcome.elapsed = self.clock() - started
        return outcome

    def run_plan(
        self,
        plan: DeploymentPlan,
        *,
        execute: Optional[Container[str]] = None,
    ) -> PlanReport:
        """Run *plan* in order, halting at the first failure.

        Args:
            execute: Names of stages to converge.  Every other stage runs
                verify-only.  ``None`` converges the whole plan.
        """
        report = PlanReport(target=plan.target.cluster_name, region=plan.target.region)
        ready: set[str] = set()
        for stage in plan.stages:
            unmet = [name for name in stage.precondition if name not in ready]
            if unmet:
                outcome = StageOutcome(stage=stage.name)
                err = self._fail(stage, PreconditionFailed(
                    f"Stage {stage.name} requires {', '.join(unmet)} to be ready",
                ))
                outcome.reason, outcome.error = err.reason, err.error
                self._enter(stage, outcome, StageState.FAILED)
                report.outcomes.append(outcome)
                break

            verify_only = execute is not None and stage.name not in execute
            outcome = self.run_stage(stage, verify_only=verify_only)
            report.outcomes.append(outcome)
            if not outcome.ready:
                break
            ready.add(stage.name)

        report.identifiers = dict(self.ctx.identifiers)
        report.notices = list(self.ctx.notices)
        report.endpoint = self.ctx.endpoint
        return report
