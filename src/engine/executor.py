"""Plan executor.

Applies a Plan through provider types in two phases:

1. Deletions (resources no longer declared, and the delete half of
   replacements), dependents before dependencies.
2. Reads, creates and updates, dependencies before dependents.

Independent nodes run concurrently on a thread pool bounded by
parallelism. State is saved after every successful operation so an
interrupted run leaves state matching what actually exists.

When an operation fails its transitive dependents are skipped; with
on_error 'stop' no new operation is scheduled at all.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from config import ConfigError
from engine.planner import CREATE, DELETE, NOOP, READ, REPLACE, UPDATE, Change, Plan
from engine.state import ResourceState, State, StateStore
from providers.base import ProviderContext, ProviderError, ProviderRegistry
from references import make_lookup, resolve

logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
UNCHANGED = 'unchanged'

_DONE_OK = (SUCCEEDED, UNCHANGED)


@dataclass
class ResourceOutcome:
    """What happened to one address during a run.

    Attributes:
        address: Block address
        action: Planned action
        status: succeeded, failed, skipped or unchanged
        message: Error message, or the reason a node was skipped
        cause: For skipped nodes, the address whose failure caused it
        duration: Seconds spent in provider calls
    """
    address: str
    action: str
    status: str
    message: str = ''
    cause: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
            'duration': round(self.duration, 3),
        }
        if self.message:
            d['message'] = self.message
        if self.cause:
            d['cause'] = self.cause
        return d


@dataclass
class ApplyResult:
    """Partial-failure report for an apply or destroy run."""
    document_name: str
    operation: str = 'apply'
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    missing_outputs: list[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def success(self) -> bool:
        return not any(o.status in (FAILED, SKIPPED) for o in self.outcomes)

    def _with_status(self, status: str) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ResourceOutcome]:
        return self._with_status(SUCCEEDED)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return self._with_status(FAILED)

    @property
    def skipped(self) -> list[ResourceOutcome]:
        return self._with_status(SKIPPED)

    @property
    def unchanged(self) -> list[ResourceOutcome]:
        return self._with_status(UNCHANGED)

    @property
    def duration(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def get(self, address: str) -> ResourceOutcome:
        for outcome in self.outcomes:
            if outcome.address == address:
                return outcome
        raise KeyError(address)

    def summary(self) -> str:
        verb = 'Destroy' if self.operation == 'destroy' else 'Apply'
        status = 'complete' if self.success else 'incomplete'
        return (
            f"{verb} {status}: {len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped, {len(self.unchanged)} unchanged."
        )

    def to_dict(self) -> dict:
        return {
            'document': self.document_name,
            'operation': self.operation,
            'success': self.success,
            'duration': round(self.duration, 3),
            'resources': [o.to_dict() for o in self.outcomes],
            'outputs': self.outputs,
            'missing_outputs': self.missing_outputs,
        }


@dataclass
class _Task:
    key: str
    change: Change
    prerequisites: list[str]
    run: Callable[[], str]


class Executor:
    """Runs Plans against providers and records results in state.

    Attributes:
        registry: Provider registry
        state: State loaded for the document (mutated in place)
        store: Where state is persisted after each operation
        parallelism: Maximum concurrent provider operations
        on_error: 'continue' or 'stop'
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state: State,
        store: StateStore,
        parallelism: int = 4,
        on_error: str = 'continue',
    ):
        if parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {parallelism}")
        self.registry = registry
        self.state = state
        self.store = store
        self.parallelism = parallelism
        self.on_error = on_error
        self._lock = threading.Lock()
        self._values: dict[str, dict] = {}
        self._halted_by: Optional[str] = None

    def apply(self, plan: Plan) -> ApplyResult:
        """Converge actual state to the plan.

        Returns:
            ApplyResult naming which addresses succeeded, failed and were skipped
        """
        return self._execute(plan, operation='apply')

    def destroy(self, plan: Plan) -> ApplyResult:
        """Run a plan built by Planner.plan_destroy()."""
        return self._execute(plan, operation='destroy')

    def _execute(self, plan: Plan, operation: str) -> ApplyResult:
        result = ApplyResult(document_name=plan.document.name, operation=operation)
        result.started_at = time.time()
        self._values = dict(plan.data_values)
        for change in plan.changes:
            prior = self.state.get(change.address)
            if change.action == NOOP and not change.is_data and prior is not None:
                # Unchanged resources keep their values even if their task is skipped
                self._values[change.address] = prior.values
        self._halted_by = None
        outcomes: dict[str, ResourceOutcome] = {}

        logger.info(f"[{operation}] {plan.document.name}: {plan.summary()}")

        self._run(self._delete_tasks(plan), outcomes)
        self._run(self._forward_tasks(plan), outcomes)

        result.outcomes = self._merge(plan, outcomes)

        if operation == 'destroy':
            self.state.outputs = {}
        else:
            result.outputs, result.missing_outputs = self._evaluate_outputs(plan)
            self.state.outputs = result.outputs
        with self._lock:
            self.store.save(self.state)

        result.finished_at = time.time()
        logger.info(result.summary())
        return result

    # ------------------------------------------------------------------
    # Task construction
    # ------------------------------------------------------------------

    def _delete_tasks(self, plan: Plan) -> list[_Task]:
        doomed = [c for c in plan.changes if c.action in (DELETE, REPLACE)]
        addresses = {c.address for c in doomed}

        # A delete waits for the deletion of everything that depended on it
        waits_for: dict[str, list[str]] = {a: [] for a in addresses}
        for change in doomed:
            prior = self.state.get(change.address)
            deps = prior.dependencies if prior else change.dependencies
            for dep in deps:
                if dep in waits_for:
                    waits_for[dep].append(f'delete:{change.address}')

        return [
            _Task(
                key=f'delete:{c.address}',
                change=c,
                prerequisites=sorted(waits_for[c.address]),
                run=self._bind(self._delete, plan, c),
            )
            for c in doomed
        ]

    def _forward_tasks(self, plan: Plan) -> list[_Task]:
        tasks = []
        for change in plan.changes:
            if change.action == DELETE:
                continue
            prerequisites = list(change.dependencies)
            if change.action == REPLACE:
                prerequisites.append(f'delete:{change.address}')
            tasks.append(_Task(
                key=change.address,
                change=change,
                prerequisites=prerequisites,
                run=self._bind(self._converge, plan, change),
            ))
        return tasks

    @staticmethod
    def _bind(fn: Callable[[Plan, Change], str], plan: Plan, change: Change) -> Callable[[], str]:
        return lambda: fn(plan, change)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _blocker(self, task: _Task, outcomes: dict[str, ResourceOutcome]) -> Optional[ResourceOutcome]:
        for key in task.prerequisites:
            outcome = outcomes.get(key)
            if outcome is not None and outcome.status in (FAILED, SKIPPED):
                return outcome
        return None

    def _run(self, tasks: list[_Task], outcomes: dict[str, ResourceOutcome]) -> None:
        """Run tasks as their prerequisites complete, up to parallelism at once."""
        pending = {t.key: t for t in tasks}
        order = [t.key for t in tasks]
        running: dict[Future, _Task] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            while pending or running:
                for key in [k for k in order if k in pending]:
                    task = pending[key]
                    if self._halted_by is not None:
                        outcomes[key] = self._skip(task, self._halted_by,
                                                   f"run stopped after '{self._halted_by}' failed")
                        del pending[key]
                        continue
                    blocker = self._blocker(task, outcomes)
                    if blocker is not None:
                        cause = blocker.cause or blocker.address
                        outcomes[key] = self._skip(task, cause, f"dependency '{cause}' failed")
                        del pending[key]
                        continue
                    ready = all(p in outcomes and outcomes[p].status in _DONE_OK
                                for p in task.prerequisites)
                    if ready and len(running) < self.parallelism:
                        running[pool.submit(self._timed, task)] = task
                        del pending[key]

                if not running:
                    for key in list(pending):
                        outcomes[key] = self._skip(pending.pop(key), None, 'prerequisites never completed')
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    task = running.pop(future)
                    outcome = future.result()
                    outcomes[task.key] = outcome
                    if outcome.status == FAILED and self.on_error == 'stop' and self._halted_by is None:
                        self._halted_by = task.change.address

    def _skip(self, task: _Task, cause: Optional[str], message: str) -> ResourceOutcome:
        logger.warning(f"[skip] {task.change.address}: {message}")
        return ResourceOutcome(
            address=task.change.address,
            action=task.change.action,
            status=SKIPPED,
            message=message,
            cause=cause,
        )

    def _timed(self, task: _Task) -> ResourceOutcome:
        start = time.time()
        try:
            status = task.run()
        except (ProviderError, ConfigError, OSError) as e:
            logger.error(f"[{task.change.action}] {task.change.address} failed: {e}")
            return self._failed(task, str(e), start)
        except Exception as e:
            logger.exception(f"[{task.change.action}] {task.change.address} raised unexpectedly")
            return self._failed(task, f"{type(e).__name__}: {e}", start)
        return ResourceOutcome(
            address=task.change.address,
            action=task.change.action,
            status=status,
            duration=time.time() - start,
        )

    @staticmethod
    def _failed(task: _Task, message: str, start: float) -> ResourceOutcome:
        return ResourceOutcome(
            address=task.change.address,
            action=task.change.action,
            status=FAILED,
            message=message,
            duration=time.time() - start,
        )

    def _merge(self, plan: Plan, outcomes: dict[str, ResourceOutcome]) -> list[ResourceOutcome]:
        """One outcome per address; a failed delete half decides a replacement."""
        merged = []
        for change in plan.changes:
            forward = outcomes.get(change.address)
            delete = outcomes.get(f'delete:{change.address}')
            if change.action == REPLACE and delete is not None and delete.status != SUCCEEDED:
                merged.append(delete)
            elif forward is not None:
                if delete is not None:
                    forward.duration += delete.duration
                merged.append(forward)
            elif delete is not None:
                merged.append(delete)
        return merged

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _context(self, plan: Plan, kind: str, is_data: bool = False) -> ProviderContext:
        provider = self.registry.provider_for(kind, is_data)
        ctx = plan.contexts.get(provider.name)
        if ctx is None:
            raise ProviderError(f"No configuration for provider '{provider.name}'")
        return ctx

    def _resolved(self, plan: Plan, change: Change) -> dict:
        block = plan.document.get_block(change.address)
        with self._lock:
            lookup = make_lookup(plan.variables, dict(self._values), strict=True)
        return resolve(block.attributes, lookup)

    def _record(self, change: Change, rs: ResourceState) -> None:
        with self._lock:
            self.state.set(rs)
            self._values[change.address] = rs.values
            self.store.save(self.state)

    def _delete(self, plan: Plan, change: Change) -> str:
        prior = self.state.get(change.address)
        if prior is None:
            return SUCCEEDED
        rtype = self.registry.resource_type(prior.type)
        logger.info(f"[delete] {change.address} ({prior.id})")
        rtype.delete(prior.id, self._context(plan, prior.type))
        with self._lock:
            self.state.remove(change.address)
            self._values.pop(change.address, None)
            self.store.save(self.state)
        return SUCCEEDED

    def _converge(self, plan: Plan, change: Change) -> str:
        if change.is_data:
            return self._read_data(plan, change)

        prior = self.state.get(change.address)
        if change.action == NOOP:
            if prior is not None:
                with self._lock:
                    self._values[change.address] = prior.values
            return UNCHANGED

        rtype = self.registry.resource_type(change.type)
        ctx = self._context(plan, change.type)
        attributes = self._resolved(plan, change)
        attributes.update(rtype.derive(attributes, ctx))

        if change.action in (CREATE, REPLACE):
            logger.info(f"[create] {change.address}")
            resource_id, computed = rtype.create(attributes, ctx)
        elif change.action == UPDATE:
            if prior is None:
                raise ProviderError(f"'{change.address}' is not in state; cannot update")
            logger.info(f"[update] {change.address} ({', '.join(change.changed)})")
            resource_id = prior.id
            computed = rtype.update(prior.id, attributes, prior.values, ctx)
        else:
            raise ProviderError(f"Unexpected action '{change.action}' for {change.address}")

        block = plan.document.get_block(change.address)
        self._record(change, ResourceState(
            address=change.address,
            type=change.type,
            name=block.name,
            provider=self.registry.provider_for(change.type, False).name,
            id=resource_id,
            attributes=attributes,
            computed=computed,
            dependencies=list(change.dependencies),
        ))
        logger.info(f"[{change.action}] {change.address} done (id={resource_id})")
        return SUCCEEDED

    def _read_data(self, plan: Plan, change: Change) -> str:
        if change.action != READ and change.address in self._values:
            return UNCHANGED
        dtype = self.registry.data_source_type(change.type)
        attributes = self._resolved(plan, change)
        logger.info(f"[read] {change.address}")
        computed = dtype.read(attributes, self._context(plan, change.type, is_data=True))
        with self._lock:
            self._values[change.address] = {**attributes, **computed}
        return SUCCEEDED

    def _evaluate_outputs(self, plan: Plan) -> tuple[dict[str, Any], list[str]]:
        """Resolve outputs against applied values; unavailable ones are omitted."""
        outputs: dict[str, Any] = {}
        missing: list[str] = []
        lookup = make_lookup(plan.variables, self._values, strict=True)
        for output in plan.document.outputs:
            try:
                outputs[output.name] = resolve(output.value, lookup)
            except ConfigError as e:
                logger.warning(f"Output '{output.name}' unavailable: {e}")
                missing.append(output.name)
        return outputs, missing

