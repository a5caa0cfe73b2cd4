"""Plan executor with bounded parallelism and progress tracking."""

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from stackpilot.drivers.base import ProviderResult
from stackpilot.drivers.registry import DriverRegistry
from stackpilot.orchestrator.planner import Plan, PlanStep, StepAction, StepStatus
from stackpilot.orchestrator.references import iter_references, resolve_value, to_document
from stackpilot.state.manager import StateStore
from stackpilot.state.models import PendingOperation, StateRecord, utcnow
from stackpilot.utils.errors import (
    EngineError,
    ErrorContext,
    PermanentDriverError,
    ReferenceResolutionError,
    StateStoreError,
    error_handler,
)
from stackpilot.utils.logging import get_logger
from stackpilot.utils.retry import RetryStrategy

logger = get_logger(__name__)


class RunStatus(Enum):
    """Overall outcome of an apply."""
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    """Result of executing a single plan step."""

    identifier: str
    action: StepAction
    status: StepStatus
    outputs: Optional[ProviderResult] = None
    error: Optional[EngineError] = None
    attempts: int = 0
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if the step succeeded."""
        return self.status == StepStatus.SUCCEEDED

    def is_failed(self) -> bool:
        """Check if the step failed."""
        return self.status == StepStatus.FAILED


@dataclass
class ApplyResult:
    """Complete apply execution result."""

    status: RunStatus
    steps: Dict[str, StepResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if every step succeeded."""
        return self.status == RunStatus.SUCCEEDED

    def get_failed_resource_ids(self) -> List[str]:
        """Get list of failed resource IDs."""
        return [identifier for identifier, result in self.steps.items() if result.is_failed()]

    def get_skipped_resource_ids(self) -> List[str]:
        """Get list of resource IDs that were never attempted."""
        return [
            identifier for identifier, result in self.steps.items()
            if result.status == StepStatus.SKIPPED
        ]

    def get_summary(self) -> Dict[str, int]:
        """Count of steps by final status."""
        summary = {status.value: 0 for status in StepStatus if status.finished}
        for result in self.steps.values():
            summary[result.status.value] = summary.get(result.status.value, 0) + 1
        return summary


# Type alias for progress callback: (resource_id, status, message)
ProgressCallback = Callable[[str, StepStatus, Optional[str]], None]


class Executor:
    """Executes plans, running independent steps in parallel.

    The calling thread owns all scheduling: it submits a step to the worker
    pool once every step it depends on has succeeded, and it records
    outcomes as futures complete. Workers only resolve properties, call the
    driver and write the resource's state record.
    """

    def __init__(
        self,
        registry: DriverRegistry,
        state_store: StateStore,
        concurrency: int = 4,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize executor.

        Args:
            registry: Driver registry used to resolve each step's driver
            state_store: State store updated after every provider call
            concurrency: Maximum number of provider calls in flight
            retry_strategy: Retry policy for transient driver errors
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.registry = registry
        self.state_store = state_store
        self.concurrency = concurrency
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.logger = get_logger(__name__)

    def apply(
        self,
        plan: Plan,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Execute a plan.

        A failed step marks every step that transitively depends on it as
        skipped; independent steps keep running. Once ``cancel_event`` is set
        no further step starts and in-flight provider calls finish normally.

        Args:
            plan: Plan to execute
            cancel_event: Event that requests cancellation
            progress_callback: Optional callback for progress updates

        Returns:
            ApplyResult with per-step outcomes and resolved document outputs
        """
        cancel_event = cancel_event or threading.Event()
        start_time = utcnow()
        outputs: Dict[str, ProviderResult] = {}
        running: Dict[Future, PlanStep] = {}

        self.logger.info(f"Applying plan with {len(plan)} steps (concurrency={self.concurrency})")

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='stackpilot') as pool:
            while True:
                if cancel_event.is_set():
                    self._skip_pending(plan, "run cancelled", progress_callback)
                    progressed = False
                else:
                    progressed = self._schedule(plan, pool, running, outputs, cancel_event, progress_callback)

                if not running:
                    if progressed:
                        continue
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    step = running.pop(future)
                    result, error = future.result()
                    step.finished_at = utcnow()
                    if error is None:
                        step.outputs = result
                        step.status = StepStatus.SUCCEEDED
                    else:
                        step.error = error
                        step.status = StepStatus.FAILED
                    self._finish(plan, step, outputs, progress_callback)

        # Anything still pending never became ready
        self._skip_pending(plan, "dependencies did not succeed", progress_callback)

        end_time = utcnow()
        result = ApplyResult(
            status=self._overall_status(plan, cancel_event),
            steps={
                step.identifier: StepResult(
                    identifier=step.identifier,
                    action=step.action,
                    status=step.status,
                    outputs=step.outputs,
                    error=step.error,
                    attempts=step.attempts,
                    duration=step.duration
                )
                for step in plan.steps
            },
            outputs=self._resolve_outputs(plan, outputs),
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds()
        )

        summary = result.get_summary()
        message = (
            f"Apply {result.status.value}: {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed, {summary['skipped']} skipped in {result.duration:.1f}s"
        )
        if result.status == RunStatus.SUCCEEDED:
            self.logger.info(message)
        else:
            self.logger.error(message)
        return result

    def _schedule(
        self,
        plan: Plan,
        pool: ThreadPoolExecutor,
        running: Dict[Future, PlanStep],
        outputs: Dict[str, ProviderResult],
        cancel_event: threading.Event,
        progress_callback: Optional[ProgressCallback]
    ) -> bool:
        progressed = False
        for step in plan.steps:
            if step.status != StepStatus.PENDING:
                continue
            if not all(plan.step(dep).status == StepStatus.SUCCEEDED for dep in step.depends_on):
                continue
            # Never queue work behind busy workers
            if step.action != StepAction.NO_OP and len(running) >= self.concurrency:
                continue

            progressed = True
            step.status = StepStatus.IN_PROGRESS
            step.started_at = utcnow()
            self._notify(progress_callback, step)

            if step.action == StepAction.NO_OP:
                self._complete_no_op(step)
                self._finish(plan, step, outputs, progress_callback)
                continue

            inputs = {
                ref.target: outputs[ref.target]
                for ref in iter_references(step.properties)
                if ref.target in outputs
            }
            future = pool.submit(self._run_step, step, inputs, cancel_event)
            running[future] = step
        return progressed

    def _finish(
        self,
        plan: Plan,
        step: PlanStep,
        outputs: Dict[str, ProviderResult],
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        step.finished_at = step.finished_at or utcnow()
        self._notify(progress_callback, step)

        if step.status == StepStatus.SUCCEEDED:
            if step.outputs is not None:
                outputs[step.identifier] = step.outputs
            return

        self.logger.error(
            f"{step.action.value} of {step.identifier} failed: {step.error}",
            extra={'resource_id': step.identifier, 'operation': step.action.value}
        )
        self._skip_dependents(plan, step, progress_callback)

    def _skip_dependents(
        self,
        plan: Plan,
        failed: PlanStep,
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        queue = plan.get_dependents(failed.identifier)
        while queue:
            identifier = queue.pop(0)
            step = plan.step(identifier)
            if step.status != StepStatus.PENDING:
                continue
            step.status = StepStatus.SKIPPED
            self.logger.warning(
                f"Skipping {identifier}: depends on {failed.identifier}, which did not succeed",
                extra={'resource_id': identifier, 'operation': step.action.value}
            )
            self._notify(progress_callback, step, f"dependency {failed.identifier} failed")
            queue.extend(plan.get_dependents(identifier))

    def _skip_pending(self, plan: Plan, reason: str, progress_callback: Optional[ProgressCallback]) -> None:
        for step in plan.steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED
                self.logger.warning(
                    f"Skipping {step.identifier}: {reason}",
                    extra={'resource_id': step.identifier, 'operation': step.action.value}
                )
                self._notify(progress_callback, step, reason)

    def _complete_no_op(self, step: PlanStep) -> None:
        """Publish recorded outputs, rewriting the record if its dependencies changed."""
        record = step.prior
        step.outputs = record.to_provider_result()
        step.resolved_properties = dict(record.resolved_properties)

        if sorted(record.dependencies) != sorted(step.graph_dependencies):
            try:
                self.state_store.put(
                    record.model_copy(update={'dependencies': list(step.graph_dependencies)})
                )
            except StateStoreError as e:
                step.error = e
                step.status = StepStatus.FAILED
                step.finished_at = utcnow()
                return

        step.status = StepStatus.SUCCEEDED
        step.finished_at = utcnow()

    def _run_step(
        self,
        step: PlanStep,
        inputs: Dict[str, ProviderResult],
        cancel_event: threading.Event
    ) -> Tuple[Optional[ProviderResult], Optional[EngineError]]:
        """Resolve, call the driver and record state for one step (worker thread).

        The step's status is left to the scheduling thread, which publishes
        outputs and marks the step succeeded in one place.

        Returns:
            Tuple of (provider result, error); error is None on success
        """
        context = ErrorContext(
            resource_id=step.identifier,
            resource_type=step.type,
            operation=step.action.value
        )
        extra = {'resource_id': step.identifier, 'operation': step.action.value}
        journaled = False

        try:
            driver = self.registry.resolve(step.type)

            if step.action == StepAction.DELETE:
                resolved = dict(step.properties)
            else:
                resolved = resolve_value(step.properties, inputs, step.identifier)
            step.resolved_properties = resolved

            self.state_store.begin_operation(PendingOperation(
                identifier=step.identifier,
                type=step.type,
                action=step.action.value,
                external_id=step.prior.external_id if step.prior else None,
                properties=to_document(step.properties) if step.action != StepAction.DELETE else {},
                resolved_properties=resolved,
                dependencies=list(step.graph_dependencies)
            ))
            journaled = True

            self.logger.info(f"Starting {step.action.value}", extra=extra)

            def on_attempt(attempt: int) -> None:
                step.attempts = attempt

            result = self.retry_strategy.execute_with_retry(
                lambda: self._invoke(driver, step, resolved, context),
                cancel_event=cancel_event,
                on_attempt=on_attempt
            )
            journaled = False
            self._record(step, result, resolved)

            self.logger.info(
                f"Completed {step.action.value} in {step.attempts} attempt(s)",
                extra={**extra, 'attempt': step.attempts}
            )
            return result, None
        except EngineError as e:
            error = e
        except Exception as e:
            error = error_handler.classify(e, context)

        if journaled:
            # The provider call completed with a known failure; nothing to reconcile
            try:
                self.state_store.clear_operation(step.identifier)
            except StateStoreError as e:
                self.logger.warning(f"Could not clear journal entry: {e}", extra=extra)
        return None, error

    def _invoke(
        self,
        driver: Any,
        step: PlanStep,
        resolved: Dict[str, Any],
        context: ErrorContext
    ) -> Optional[ProviderResult]:
        try:
            if step.action == StepAction.CREATE:
                result = driver.create(resolved)
            elif step.action == StepAction.UPDATE:
                result = driver.update(step.prior.external_id, resolved, dict(step.prior.resolved_properties))
            else:
                driver.delete(step.prior.external_id, resolved)
                return None
        except EngineError:
            raise
        except Exception as e:
            raise error_handler.classify(e, context) from e

        if not isinstance(result, ProviderResult):
            raise PermanentDriverError(
                f"Driver for {step.type} returned {type(result).__name__} instead of a ProviderResult",
                context=context
            )
        return result

    def _record(self, step: PlanStep, result: Optional[ProviderResult], resolved: Dict[str, Any]) -> None:
        """Write the step's outcome to state. Raises StateStoreError on failure."""
        try:
            if step.action == StepAction.DELETE:
                self.state_store.delete(step.identifier)
            else:
                self.state_store.put(StateRecord(
                    identifier=step.identifier,
                    type=step.type,
                    external_id=result.external_id,
                    properties=to_document(step.properties),
                    resolved_properties=resolved,
                    attributes=dict(result.attributes),
                    dependencies=list(step.graph_dependencies),
                    last_status=StepStatus.SUCCEEDED.value
                ))
        except StateStoreError as e:
            e.suggestions.append(
                f"The provider {step.action.value} of {step.identifier} completed but was not "
                "recorded; the next plan will reconcile it"
            )
            raise

    @staticmethod
    def _overall_status(plan: Plan, cancel_event: threading.Event) -> RunStatus:
        unsuccessful = [step for step in plan.steps if step.status != StepStatus.SUCCEEDED]
        if not unsuccessful:
            return RunStatus.SUCCEEDED
        if cancel_event.is_set():
            return RunStatus.CANCELLED
        changed = any(
            step.status == StepStatus.SUCCEEDED and step.action != StepAction.NO_OP
            for step in plan.steps
        )
        return RunStatus.PARTIAL_FAILURE if changed else RunStatus.FAILED

    def _resolve_outputs(self, plan: Plan, outputs: Dict[str, ProviderResult]) -> Dict[str, Any]:
        resolved = {}
        for name, value in plan.outputs.items():
            try:
                resolved[name] = resolve_value(value, outputs, f"outputs.{name}")
            except ReferenceResolutionError as e:
                self.logger.debug(f"Output {name} unavailable: {e}")
        return resolved

    @staticmethod
    def _notify(
        progress_callback: Optional[ProgressCallback],
        step: PlanStep,
        message: Optional[str] = None
    ) -> None:
        if progress_callback is None:
            return
        if message is None and step.error is not None:
            message = str(step.error)
        progress_callback(step.identifier, step.status, message)
