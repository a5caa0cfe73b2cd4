"""Tests for plan execution."""

import logging
import threading
import time

import pytest

from stackpilot.drivers import InMemoryDriver
from stackpilot.orchestrator import Executor, GraphBuilder, PlanCompiler, RunStatus, StepStatus
from stackpilot.state import StateRecord
from stackpilot.utils.errors import (
    ErrorContext,
    PermanentDriverError,
    StateStoreError,
    TransientDriverError,
)


class ScriptedDriver(InMemoryDriver):
    """In-memory driver whose create fails with a scripted list of errors first."""

    def __init__(self, type_tag, failures=(), on_create=None):
        super().__init__(type_tag)
        self.failures = list(failures)
        self.on_create = on_create
        self.attempts = 0

    def create(self, properties):
        self.attempts += 1
        if self.on_create:
            self.on_create(properties)
        if self.failures:
            raise self.failures.pop(0)
        return super().create(properties)


class SlowDriver(InMemoryDriver):
    """Tracks how many creates run at the same time."""

    def __init__(self, type_tag, delay=0.05):
        super().__init__(type_tag)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = threading.Lock()

    def create(self, properties):
        with self._counter:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay)
            return super().create(properties)
        finally:
            with self._counter:
                self.in_flight -= 1


WEB_STACK = {
    'resources': {
        'Network': {'type': 'Test::Network', 'properties': {'Cidr': '10.0.0.0/16'}},
        'Logs': {'type': 'Test::Bucket', 'properties': {'Name': 'logs'}},
        'Server': {
            'type': 'Test::Server',
            'properties': {
                'NetworkId': {'Ref': 'Network'},
                'Endpoint': {'Fn::Sub': 'https://${Network}/${Logs.Name}'},
            },
        },
    },
    'outputs': {
        'ServerId': {'Ref': 'Server'},
        'LogsArn': {'Fn::GetAtt': ['Logs', 'Arn']},
    },
}


@pytest.fixture
def run(registry, state_store, fast_retry):
    """Compile a document against current state and apply it."""

    def _run(document, concurrency=2, **kwargs):
        graph = GraphBuilder(registry).build(document)
        plan = PlanCompiler().compile(graph, state_store.snapshot())
        executor = Executor(registry, state_store, concurrency=concurrency, retry_strategy=fast_retry)
        return plan, executor.apply(plan, **kwargs)

    return _run


class TestApply:
    """Test successful runs."""

    def test_creates_resources_and_records_state(self, run, drivers, state_store):
        """Test a full create run."""
        plan, result = run(WEB_STACK)

        assert result.status == RunStatus.SUCCEEDED
        assert result.is_success()
        assert result.get_summary() == {'succeeded': 3, 'failed': 0, 'skipped': 0}
        assert sorted(state_store.snapshot()) == ['Logs', 'Network', 'Server']
        assert state_store.pending_operations() == {}

        network = state_store.get('Network')
        server = state_store.get('Server')
        assert network.external_id in drivers['Test::Network'].resources
        assert server.dependencies == ['Network', 'Logs']
        assert server.properties['NetworkId'] == {'Ref': 'Network'}
        assert server.resolved_properties == {
            'NetworkId': network.external_id,
            'Endpoint': f"https://{network.external_id}/logs",
        }

    def test_document_outputs_are_resolved(self, run, state_store):
        """Test output resolution after the run."""
        _, result = run(WEB_STACK)

        assert result.outputs == {
            'ServerId': state_store.get('Server').external_id,
            'LogsArn': state_store.get('Logs').attributes['Arn'],
        }

    def test_second_apply_makes_no_provider_calls(self, run, drivers):
        """Test that an unchanged document only publishes recorded outputs."""
        run(WEB_STACK)
        calls_before = {type_tag: list(driver.calls) for type_tag, driver in drivers.items()}

        plan, result = run(WEB_STACK)

        assert not plan.has_changes()
        assert result.status == RunStatus.SUCCEEDED
        assert {type_tag: driver.calls for type_tag, driver in drivers.items()} == calls_before
        assert set(result.outputs) == {'ServerId', 'LogsArn'}

    def test_no_op_publishes_recorded_outputs_to_dependents(self, run, drivers, state_store):
        """Test that a changed dependent sees an unchanged dependency's recorded outputs."""
        state_store.put(StateRecord(
            identifier='Network',
            type='Test::Network',
            external_id='net-existing',
            properties={'Cidr': '10.0.0.0/16'},
            resolved_properties={'Cidr': '10.0.0.0/16'},
            attributes={'Cidr': '10.0.0.0/16'},
        ))
        document = {'resources': {
            'Network': WEB_STACK['resources']['Network'],
            'Server': {'type': 'Test::Server', 'properties': {'NetworkId': {'Ref': 'Network'}}},
        }}

        plan, result = run(document)

        assert plan.step('Network').action.value == 'no-op'
        assert drivers['Test::Network'].calls == []
        assert state_store.get('Server').resolved_properties == {'NetworkId': 'net-existing'}
        assert result.steps['Network'].outputs.external_id == 'net-existing'

    def test_update_passes_previous_properties(self, run, drivers, state_store):
        """Test update calls use the recorded external id."""
        run(WEB_STACK)
        logs_id = state_store.get('Logs').external_id
        changed = {
            **WEB_STACK,
            'resources': {**WEB_STACK['resources'], 'Logs': {'type': 'Test::Bucket', 'properties': {'Name': 'audit'}}},
        }

        plan, result = run(changed)

        assert result.status == RunStatus.SUCCEEDED
        assert plan.step('Logs').action.value == 'update'
        # The server interpolates Logs.Name, but its declared properties did not change
        assert plan.step('Server').action.value == 'no-op'
        assert drivers['Test::Bucket'].operations('update') == [logs_id]
        assert state_store.get('Logs').resolved_properties == {'Name': 'audit'}

    def test_removed_resources_are_deleted(self, run, drivers, state_store):
        """Test delete steps remove resources and records."""
        run(WEB_STACK)
        network_id = state_store.get('Network').external_id

        plan, result = run({'resources': {}})

        assert plan.order() == ['Server', 'Logs', 'Network']
        assert result.status == RunStatus.SUCCEEDED
        assert state_store.snapshot() == {}
        assert drivers['Test::Network'].operations('delete') == [network_id]
        assert all(driver.resources == {} for driver in drivers.values())

    def test_dependencies_finish_before_dependents_start(self, run, registry, state_store):
        """Test ordering under parallelism."""
        events = []
        lock = threading.Lock()

        class Recording(InMemoryDriver):
            def create(self, properties):
                with lock:
                    events.append(('start', self.type_tag))
                time.sleep(0.02)
                result = super().create(properties)
                with lock:
                    events.append(('end', self.type_tag))
                return result

        for type_tag in ('Test::Network', 'Test::Bucket', 'Test::Server'):
            registry.register(type_tag, Recording(type_tag), replace=True)

        _, result = run(WEB_STACK, concurrency=4)

        assert result.status == RunStatus.SUCCEEDED
        server_start = events.index(('start', 'Test::Server'))
        assert events.index(('end', 'Test::Network')) < server_start
        assert events.index(('end', 'Test::Bucket')) < server_start

    def test_dependent_waits_for_published_outputs(self, run, registry, state_store):
        """Test that a dependent never starts before its dependency's outputs are published.

        The worker finishing D is held up in its completion log until an
        unrelated step has finished, so the scheduler wakes up while D's
        provider call is done but its result has not been collected yet.
        """
        other_done = threading.Event()

        class Signalling(InMemoryDriver):
            def create(self, properties):
                time.sleep(0.05)
                result = super().create(properties)
                other_done.set()
                return result

        class StallAfterCompletion(logging.Handler):
            def emit(self, record):
                if getattr(record, 'resource_id', None) == 'D' and record.getMessage().startswith('Completed'):
                    other_done.wait(1)
                    time.sleep(0.1)

        registry.register('Test::Network', Signalling('Test::Network'), replace=True)
        document = {
            'resources': {
                'D': {'type': 'Test::Bucket', 'properties': {'Name': 'd'}},
                'E': {'type': 'Test::Server', 'properties': {'Target': {'Fn::GetAtt': ['D', 'Arn']}}},
                'X': {'type': 'Test::Network'},
            }
        }

        executor_logger = logging.getLogger('stackpilot.orchestrator.executor')
        handler = StallAfterCompletion()
        previous_level = executor_logger.level
        executor_logger.setLevel(logging.INFO)
        executor_logger.addHandler(handler)
        try:
            _, result = run(document, concurrency=4)
        finally:
            executor_logger.removeHandler(handler)
            executor_logger.setLevel(previous_level)

        assert result.status == RunStatus.SUCCEEDED, result.steps['E'].error
        assert state_store.get('E').resolved_properties == {'Target': state_store.get('D').attributes['Arn']}

    def test_concurrency_bound(self, run, registry):
        """Test that no more than the configured number of calls overlap."""
        slow = SlowDriver('Test::Bucket')
        registry.register('Test::Bucket', slow, replace=True)
        document = {'resources': {f"Bucket{i}": {'type': 'Test::Bucket'} for i in range(6)}}

        _, result = run(document, concurrency=2)

        assert result.status == RunStatus.SUCCEEDED
        assert slow.max_in_flight == 2

    def test_progress_callback(self, run):
        """Test progress notifications."""
        updates = []

        run(WEB_STACK, progress_callback=lambda rid, status, message: updates.append((rid, status)))

        for identifier in ('Network', 'Logs', 'Server'):
            assert (identifier, StepStatus.IN_PROGRESS) in updates
            assert (identifier, StepStatus.SUCCEEDED) in updates

    def test_concurrency_must_be_positive(self, registry, state_store):
        with pytest.raises(ValueError):
            Executor(registry, state_store, concurrency=0)


class TestFailures:
    """Test failure isolation, retries and state write failures."""

    def test_failure_skips_dependents_only(self, run, registry, state_store):
        """Test that independent branches keep going."""
        registry.register(
            'Test::Network',
            ScriptedDriver('Test::Network', failures=[PermanentDriverError("quota exceeded")]),
            replace=True
        )

        _, result = run(WEB_STACK)

        assert result.status == RunStatus.PARTIAL_FAILURE
        assert result.get_failed_resource_ids() == ['Network']
        assert result.get_skipped_resource_ids() == ['Server']
        assert result.steps['Logs'].is_success()
        assert sorted(state_store.snapshot()) == ['Logs']
        assert state_store.pending_operations() == {}
        # Outputs that need the failed branch are omitted
        assert set(result.outputs) == {'LogsArn'}

    def test_everything_failing_is_failed(self, run, registry):
        """Test overall status when nothing changed."""
        registry.register(
            'Test::Bucket',
            ScriptedDriver('Test::Bucket', failures=[PermanentDriverError("denied")]),
            replace=True
        )

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        assert result.status == RunStatus.FAILED
        assert not result.is_success()

    def test_transient_errors_are_retried(self, run, registry, state_store):
        """Test retry of transient failures."""
        driver = ScriptedDriver(
            'Test::Bucket',
            failures=[TransientDriverError("throttled"), ConnectionError("reset")]
        )
        registry.register('Test::Bucket', driver, replace=True)

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        assert result.status == RunStatus.SUCCEEDED
        assert result.steps['Logs'].attempts == 3
        assert driver.attempts == 3
        assert state_store.get('Logs') is not None

    def test_retries_are_bounded(self, run, registry):
        """Test the attempt budget."""
        driver = ScriptedDriver('Test::Bucket', failures=[TransientDriverError("throttled")] * 5)
        registry.register('Test::Bucket', driver, replace=True)

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        assert result.steps['Logs'].is_failed()
        assert result.steps['Logs'].attempts == 3
        assert isinstance(result.steps['Logs'].error, TransientDriverError)

    def test_permanent_errors_are_not_retried(self, run, registry):
        """Test that permanent failures stop immediately."""
        driver = ScriptedDriver('Test::Bucket', failures=[ValueError("bad input")])
        registry.register('Test::Bucket', driver, replace=True)

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        error = result.steps['Logs'].error
        assert driver.attempts == 1
        assert isinstance(error, PermanentDriverError)
        assert error.resource_id == 'Logs'
        assert isinstance(error.__cause__, ValueError)

    def test_non_result_return_is_a_failure(self, run, registry):
        """Test driver contract enforcement."""
        class Broken(InMemoryDriver):
            def create(self, properties):
                return {'id': 'oops'}

        registry.register('Test::Bucket', Broken('Test::Bucket'), replace=True)

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        assert isinstance(result.steps['Logs'].error, PermanentDriverError)

    def test_missing_attribute_fails_the_dependent(self, run, state_store):
        """Test resolution failures surface on the referencing step."""
        document = {'resources': {
            'Logs': {'type': 'Test::Bucket'},
            'Server': {'type': 'Test::Server', 'properties': {'Host': {'Fn::GetAtt': ['Logs', 'DomainName']}}},
        }}

        _, result = run(document)

        assert result.status == RunStatus.PARTIAL_FAILURE
        assert result.get_failed_resource_ids() == ['Server']
        assert 'DomainName' in result.steps['Server'].error.message
        assert state_store.pending_operations() == {}

    def test_state_write_failure_keeps_journal_entry(self, run, drivers, state_store, monkeypatch):
        """Test that an unrecorded provider success is left for reconciliation."""
        original_put = state_store.put

        def failing_put(record):
            if record.identifier == 'Logs':
                raise StateStoreError(
                    "disk full", context=ErrorContext(resource_id='Logs', operation='put')
                )
            original_put(record)

        monkeypatch.setattr(state_store, 'put', failing_put)

        _, result = run({'resources': {'Logs': {'type': 'Test::Bucket'}}})

        error = result.steps['Logs'].error
        assert result.status == RunStatus.FAILED
        assert isinstance(error, StateStoreError)
        assert any('reconcile' in suggestion for suggestion in error.suggestions)
        assert state_store.get('Logs') is None
        assert len(drivers['Test::Bucket'].resources) == 1
        assert list(state_store.pending_operations()) == ['Logs']


class TestCancellation:
    """Test cooperative cancellation."""

    def test_cancelled_before_start(self, run, drivers, state_store):
        """Test that nothing runs once cancelled."""
        cancel = threading.Event()
        cancel.set()

        _, result = run(WEB_STACK, cancel_event=cancel)

        assert result.status == RunStatus.CANCELLED
        assert result.get_skipped_resource_ids() == ['Network', 'Logs', 'Server']
        assert all(driver.calls == [] for driver in drivers.values())
        assert state_store.snapshot() == {}

    def test_in_flight_step_completes(self, run, registry, state_store):
        """Test that cancelling mid-run lets the running call finish and records it."""
        cancel = threading.Event()
        registry.register(
            'Test::Network',
            ScriptedDriver('Test::Network', on_create=lambda properties: cancel.set()),
            replace=True
        )

        _, result = run(WEB_STACK, concurrency=1, cancel_event=cancel)

        assert result.status == RunStatus.CANCELLED
        assert result.steps['Network'].is_success()
        assert sorted(result.get_skipped_resource_ids()) == ['Logs', 'Server']
        assert list(state_store.snapshot()) == ['Network']
