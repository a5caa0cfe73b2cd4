"""Main orchestrator that coordinates planning and execution."""

import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stackpilot.config.models import EngineSettings
from stackpilot.drivers.registry import DriverRegistry
from stackpilot.orchestrator.dependency_graph import GraphBuilder, ResourceGraph
from stackpilot.orchestrator.executor import ApplyResult, Executor, ProgressCallback
from stackpilot.orchestrator.planner import Plan, PlanCompiler
from stackpilot.state.manager import StateStore
from stackpilot.state.models import StateRecord
from stackpilot.utils.errors import DriverNotFoundError, EngineError, error_handler, ErrorContext
from stackpilot.utils.logging import get_logger
from stackpilot.utils.retry import RetryStrategy

logger = get_logger(__name__)

DEFAULT_REGION = 'us-east-1'
# Account id reported for runs that never talk to AWS
LOCAL_ACCOUNT_ID = '000000000000'


def pseudo_parameters(region: Optional[str] = None, account_id: Optional[str] = None) -> Dict[str, str]:
    """CloudFormation pseudo parameters such as ``AWS::Region``.

    Args:
        region: Target region; ``us-east-1`` when unknown
        account_id: Target account; a placeholder for local runs

    Returns:
        Variables keyed by pseudo parameter name
    """
    region = region or DEFAULT_REGION
    if region.startswith('cn-'):
        partition, url_suffix = 'aws-cn', 'amazonaws.com.cn'
    elif region.startswith('us-gov-'):
        partition, url_suffix = 'aws-us-gov', 'amazonaws.com'
    else:
        partition, url_suffix = 'aws', 'amazonaws.com'

    return {
        'AWS::Region': region,
        'AWS::AccountId': account_id or LOCAL_ACCOUNT_ID,
        'AWS::Partition': partition,
        'AWS::URLSuffix': url_suffix,
    }


class ProvisioningOrchestrator:
    """Coordinates graph building, planning, reconciliation and execution."""

    def __init__(
        self,
        registry: DriverRegistry,
        state_store: StateStore,
        settings: Optional[EngineSettings] = None,
        pseudo_params: Optional[Mapping[str, Any]] = None
    ):
        """Initialize provisioning orchestrator.

        Args:
            registry: Drivers by resource type
            state_store: Loaded state store
            settings: Engine settings; defaults when None
            pseudo_params: Values for ``AWS::Region`` and friends; derived
                from the configured region with a placeholder account when None
        """
        self.registry = registry
        self.state_store = state_store
        self.settings = settings or EngineSettings()
        if pseudo_params is None:
            pseudo_params = pseudo_parameters(self.settings.aws.region)
        self.pseudo_params = dict(pseudo_params)

        self.builder = GraphBuilder(registry)
        self.compiler = PlanCompiler()
        self.executor = Executor(
            registry=registry,
            state_store=state_store,
            concurrency=self.settings.concurrency,
            retry_strategy=RetryStrategy(**self.settings.retry.model_dump())
        )

        self.logger = get_logger(__name__)

    def build_graph(self, document: Mapping[str, Any]) -> ResourceGraph:
        """Validate a document and build its graph.

        Pseudo parameters, then variables from settings, act as defaults for
        the document's own variables.
        """
        document = dict(document)
        document['variables'] = {
            **self.pseudo_params,
            **self.settings.variables,
            **(document.get('variables') or {})
        }
        return self.builder.build(document)

    def plan(self, document: Mapping[str, Any], refresh: Optional[bool] = None) -> Plan:
        """Create a plan for a document against recorded state.

        Args:
            document: Normalized resource document
            refresh: Read every recorded resource from its driver first;
                defaults to the ``refresh`` setting

        Returns:
            Plan

        Raises:
            ValidationError: If the document is invalid
            PlanError: If the graph has a cycle or a resource changed type
        """
        self.logger.info("Planning...")
        graph = self.build_graph(document)
        return self._compile(graph, refresh)

    def plan_destroy(self, refresh: Optional[bool] = None) -> Plan:
        """Create a plan that deletes every recorded resource."""
        self.logger.info("Planning destruction...")
        return self._compile(self.builder.build({'resources': {}}), refresh)

    def apply(
        self,
        plan: Plan,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Execute a plan."""
        return self.executor.apply(plan, cancel_event=cancel_event, progress_callback=progress_callback)

    def deploy(
        self,
        document: Mapping[str, Any],
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, ApplyResult]:
        """Plan and apply a document in one go."""
        plan = self.plan(document)
        return plan, self.apply(plan, cancel_event, progress_callback)

    def destroy(
        self,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, ApplyResult]:
        """Delete every recorded resource, dependents first."""
        plan = self.plan_destroy()
        return plan, self.apply(plan, cancel_event, progress_callback)

    def _compile(self, graph: ResourceGraph, refresh: Optional[bool]) -> Plan:
        self.reconcile_pending()

        prior = self.state_store.snapshot()
        if self.settings.refresh if refresh is None else refresh:
            prior = self.refresh(prior)

        return self.compiler.compile(graph, prior)

    def reconcile_pending(self) -> List[str]:
        """Resolve provider calls whose outcome was never recorded.

        Each journaled call is checked with the driver's ``read``. A resource
        that exists is adopted into state; otherwise the journal entry is
        dropped and the next plan repeats the action.

        Returns:
            Identifiers that were reconciled
        """
        pending = self.state_store.pending_operations()
        reconciled = []

        for identifier, operation in pending.items():
            extra = {'resource_id': identifier, 'operation': 'reconcile'}
            try:
                driver = self.registry.resolve(operation.type)
            except DriverNotFoundError:
                self.logger.warning(
                    f"Dropping interrupted {operation.action}: no driver for {operation.type}", extra=extra
                )
                self.state_store.clear_operation(identifier)
                continue

            try:
                found = driver.read(operation.external_id, operation.resolved_properties)
            except Exception as e:
                error = error_handler.classify(
                    e, ErrorContext(resource_id=identifier, resource_type=operation.type, operation='read')
                )
                self.logger.warning(f"Could not reconcile interrupted {operation.action}: {error}", extra=extra)
                continue

            if operation.action == 'delete':
                if found is None:
                    self.logger.warning("Interrupted delete completed; removing record", extra=extra)
                    self.state_store.delete(identifier)
                else:
                    self.logger.warning("Interrupted delete did not complete; it will be planned again", extra=extra)
                    self.state_store.clear_operation(identifier)
            elif found is not None:
                self.logger.warning(f"Adopting resource from interrupted {operation.action}", extra=extra)
                self.state_store.put(StateRecord(
                    identifier=identifier,
                    type=operation.type,
                    external_id=found.external_id,
                    properties=operation.properties,
                    resolved_properties=operation.resolved_properties,
                    attributes=dict(found.attributes),
                    dependencies=list(operation.dependencies),
                    last_status='reconciled'
                ))
            else:
                self.logger.warning(
                    f"Interrupted {operation.action} left no readable resource; it will be planned again",
                    extra=extra
                )
                self.state_store.clear_operation(identifier)
            reconciled.append(identifier)

        return reconciled

    def refresh(self, prior: Dict[str, StateRecord]) -> Dict[str, StateRecord]:
        """Read recorded resources back from their drivers.

        Resources that no longer exist are dropped from state so the plan
        creates them again; changed attributes are written back.

        Returns:
            Refreshed copy of ``prior``
        """
        refreshed = dict(prior)
        for identifier, record in prior.items():
            extra = {'resource_id': identifier, 'operation': 'refresh'}
            try:
                driver = self.registry.resolve(record.type)
                found = driver.read(record.external_id, record.resolved_properties)
            except EngineError as e:
                self.logger.warning(f"Refresh skipped: {e}", extra=extra)
                continue
            except Exception as e:
                error = error_handler.classify(
                    e, ErrorContext(resource_id=identifier, resource_type=record.type, operation='read')
                )
                self.logger.warning(f"Refresh skipped: {error}", extra=extra)
                continue

            if found is None:
                self.logger.warning(f"{record.external_id} no longer exists; it will be re-created", extra=extra)
                self.state_store.delete(identifier)
                del refreshed[identifier]
            elif found.external_id != record.external_id or found.attributes != record.attributes:
                updated = record.model_copy(
                    update={'external_id': found.external_id, 'attributes': dict(found.attributes)}
                )
                self.state_store.put(updated)
                refreshed[identifier] = updated
                self.logger.info("Refreshed attributes", extra=extra)

        return refreshed
