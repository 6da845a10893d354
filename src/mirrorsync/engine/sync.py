"""
Main sync engine that orchestrates synchronization runs between services.
"""

import copy
import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Any, Optional, Set

from ..connectors import BaseConnector, CONNECTOR_REGISTRY
from ..core.config import (
    get_contract_log_retention_days, get_log_retention_days, get_rate_limit_backoff_seconds
)
from ..exceptions import (
    ConfigurationError, ConnectorError, ContractConflictError, FingerprintError,
    MirrorSyncException, NotFoundError, ObjectProcessingError, RateLimitedError,
    TransformError
)
from ..models.config import DeletePolicy, Synchronization
from ..models.mapping import Mapping
from ..models.sync import (
    LogLevel, RunResult, SyncAction, SyncCounts, SynchronizationContract,
    SynchronizationContractLog, SynchronizationLog, utc_now
)
from ..services.store import SynchronizationStore
from ..utils import dot
from .conditions import ConditionEvaluator, JsonLogicEvaluator
from .fingerprint import fingerprint, is_sortable
from .transforms import FieldTransformer

logger = logging.getLogger(__name__)

# Keys probed, in order, when no results position is configured
RESULT_KEYS = ("results", "items", "result", "data")

# Called as hook(stage, synchronization, result); stage is "before" or "after"
ActionHook = Callable[[str, Synchronization, Optional[RunResult]], None]


def extract_objects(body: Any, results_position: Optional[str] = None) -> List[Any]:
    """
    Pull the list of objects out of a page body.

    Args:
        body: Decoded page body
        results_position: Dot-path of the list inside the body

    Returns:
        The objects on the page; a dictionary of objects yields its values
    """
    if results_position:
        found = dot.get(body, results_position)
        if found is dot.MISSING:
            logger.warning(f"Results position '{results_position}' not found in page body")
            return []
    elif isinstance(body, list):
        found = body
    elif isinstance(body, dict):
        found = next((body[key] for key in RESULT_KEYS if isinstance(body.get(key), (list, dict))), body)
        if found is body:
            # A bare object is a page of one
            return [body]
    else:
        return []

    if isinstance(found, dict):
        return list(found.values())
    if isinstance(found, list):
        return found
    logger.warning(f"Expected a list of objects, got {type(found).__name__}")
    return []


def get_next_link(body: Any, next_position: Optional[str] = None) -> Optional[str]:
    """Find the next-page link in a page body; None ends pagination."""
    if not isinstance(body, dict):
        return None

    candidates = [next_position] if next_position else ["next", "_links.next.href", "links.next"]
    for path in candidates:
        value = dot.get(body, path)
        if isinstance(value, dict):
            value = value.get("href", dot.MISSING)
        if value is not dot.MISSING and value not in (None, ""):
            return str(value)
    return None


def decide_action(
    contract: Optional[SynchronizationContract],
    origin_hash: str,
    force: bool = False
) -> SyncAction:
    """Decide what to do with one source object given its contract."""
    if contract is None:
        return SyncAction.CREATE
    if contract.target_last_action == SyncAction.DELETE:
        # The object came back after the deletion pass handled it
        return SyncAction.UPDATE if contract.target_id else SyncAction.CREATE
    if force or contract.origin_hash != origin_hash:
        return SyncAction.UPDATE
    return SyncAction.SKIP


@dataclass
class _RunContext:
    """Everything one run needs, resolved once before the first fetch."""
    synchronization: Synchronization
    log: SynchronizationLog
    source: BaseConnector
    target: BaseConnector
    target_mapping: Optional[Mapping]
    hash_mapping: Optional[Mapping]
    test: bool
    force: bool
    cancel_event: threading.Event
    counts: SyncCounts = field(default_factory=SyncCounts)
    seen: Set[str] = field(default_factory=set)
    stack_trace: List[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def trace(self, line: str) -> None:
        self.stack_trace.append(line)


class SyncEngine:
    """
    Main engine for executing synchronization runs.

    A run pages through the source in order, decides per object whether the
    target needs a create, update or nothing, writes, and records the outcome on
    the object's contract. Only ``NotFoundError`` escapes ``run``; every other
    failure ends up in the returned ``RunResult``.
    """

    def __init__(
        self,
        store: SynchronizationStore,
        connectors: Optional[Dict[str, BaseConnector]] = None,
        transformer: Optional[FieldTransformer] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        hooks: Optional[Dict[str, ActionHook]] = None
    ):
        """
        Initialize the sync engine.

        Args:
            store: Where synchronizations, contracts and logs live
            connectors: Connector instances by service type; missing types are
                created from the connector registry on first use
            transformer: Mapping engine
            evaluator: Condition evaluator
            hooks: Action hooks by name, referenced from ``Synchronization.actions``
        """
        self.store = store
        self.connectors: Dict[str, BaseConnector] = dict(connectors or {})
        self.transformer = transformer or FieldTransformer()
        self.evaluator = evaluator or JsonLogicEvaluator()
        self.hooks: Dict[str, ActionHook] = dict(hooks or {})

    def get_connector(self, service_type: str) -> BaseConnector:
        """Get (or create) the connector for a service type."""
        if service_type not in self.connectors:
            if service_type not in CONNECTOR_REGISTRY:
                raise ConfigurationError(f"Unknown service type: {service_type}")
            self.connectors[service_type] = CONNECTOR_REGISTRY[service_type]()
        return self.connectors[service_type]

    def run(
        self,
        synchronization_id: str,
        test: bool = False,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None,
        _chain: Optional[Set[str]] = None
    ) -> RunResult:
        """
        Execute one synchronization run.

        Args:
            synchronization_id: Synchronization to run
            test: Dry run; nothing is written to the target or to contracts
            force: Ignore stored fingerprints and update every object seen
            cancel_event: Set it to stop the run between pages or objects

        Returns:
            Counts, level, message and, when throttled, the reschedule time

        Raises:
            NotFoundError: If the synchronization does not exist
        """
        synchronization = self.store.get_synchronization(synchronization_id)
        if synchronization is None:
            raise NotFoundError("Synchronization", synchronization_id)

        if not synchronization.active:
            logger.warning(f"Synchronization {synchronization_id} is inactive, not running")
            return RunResult(
                synchronization_id=synchronization_id,
                level=LogLevel.WARNING,
                message=f"Synchronization {synchronization_id} is inactive",
                test=test,
                force=force
            )

        log = SynchronizationLog(synchronization_id=synchronization_id, test=test, force=force)
        self.store.add_log(log)
        logger.info(f"Starting run {log.id} of synchronization {synchronization_id} (test={test}, force={force})")

        result = RunResult(synchronization_id=synchronization_id, log_id=log.id, test=test, force=force)
        ctx: Optional[_RunContext] = None
        completed = False

        try:
            ctx = self._prepare(synchronization, log, test, force, cancel_event or threading.Event())
            self._invoke_hooks(ctx, "before", None)

            completed = self._fetch_all(ctx, result)

            if completed and not ctx.cancelled:
                self._deletion_pass(ctx)

            self._conclude(ctx, result, completed)

        except Exception as e:
            logger.error(f"Run {log.id} of synchronization {synchronization_id} failed: {e}")
            result.level = LogLevel.ERROR
            result.message = f"Failed to synchronize: {e}"
            result.stack_trace = (ctx.stack_trace if ctx else []) + traceback.format_exc().splitlines()
            completed = False

        if ctx is not None:
            result.counts = ctx.counts
        log.counts = result.counts
        log.stack_trace = result.stack_trace
        log.mark_completed(result.level, result.message, get_log_retention_days())
        self.store.update_log(log)

        if not test:
            synchronization.last_run_at = log.completed_at
            self.store.save_synchronization(synchronization)

        logger.info(f"Run {log.id} finished with {result.level.value}: {result.message}")

        if ctx is not None:
            self._invoke_hooks(ctx, "after", result)
            if completed and not ctx.cancelled and result.level != LogLevel.ERROR:
                self._run_follow_ups(ctx, result, _chain)

        return result

    # Run phases

    def _prepare(
        self,
        synchronization: Synchronization,
        log: SynchronizationLog,
        test: bool,
        force: bool,
        cancel_event: threading.Event
    ) -> _RunContext:
        # The target-to-source mapping is only stored for conflict resolution; still reject a dangling id
        self._load_mapping(synchronization.target_source_mapping)
        return _RunContext(
            synchronization=synchronization,
            log=log,
            source=self.get_connector(synchronization.source.service_type),
            target=self.get_connector(synchronization.target.service_type),
            target_mapping=self._load_mapping(synchronization.source_target_mapping),
            hash_mapping=self._load_mapping(synchronization.source_hash_mapping),
            test=test,
            force=force,
            cancel_event=cancel_event
        )

    def _load_mapping(self, mapping_id: Optional[str]) -> Optional[Mapping]:
        if not mapping_id:
            return None
        mapping = self.store.get_mapping(mapping_id)
        if mapping is None:
            raise ConfigurationError(f"Mapping not found: {mapping_id}")
        return mapping

    def _fetch_all(self, ctx: _RunContext, result: RunResult) -> bool:
        """
        Page through the source and process every object.

        Returns:
            True when pagination ran to the end; False when it was aborted
        """
        source_config = ctx.synchronization.source
        cursor: Optional[str] = None
        visited: Set[str] = set()
        page_number = 0

        while True:
            if ctx.cancelled:
                ctx.trace(f"Cancelled before page {page_number + 1}")
                return True

            page_number += 1
            try:
                page = ctx.source.fetch(source_config, cursor)
            except RateLimitedError as e:
                logger.warning(f"Source rate limited on page {page_number}, reset at {e.reset_at}")
                ctx.trace(f"Stopped synchronization: {e}")
                result.level = LogLevel.WARNING
                result.message = f"Stopped synchronization: {e}"
                result.reschedule_at = e.reset_at or utc_now() + timedelta(seconds=get_rate_limit_backoff_seconds())
                return False
            except (ConnectorError, NotImplementedError) as e:
                logger.error(f"Failed to fetch page {page_number}: {e}")
                ctx.trace(f"Failed to fetch page {page_number}: {e}")
                result.level = LogLevel.ERROR
                result.message = f"Failed to synchronize: {e}"
                return False

            objects = extract_objects(page.body, source_config.results_position)
            ctx.counts.found += len(objects)
            ctx.trace(f"Fetched page {page_number} with {len(objects)} objects")
            logger.info(f"Page {page_number}: {len(objects)} objects")

            for obj in objects:
                if ctx.cancelled:
                    break
                self._process_object(ctx, obj)

            cursor = get_next_link(page.body, source_config.next_position)
            if cursor is None:
                return True
            if cursor in visited:
                logger.warning(f"Next link {cursor} was already fetched, stopping pagination")
                return True
            visited.add(cursor)

    def _process_object(self, ctx: _RunContext, obj: Any) -> None:
        id_position = ctx.synchronization.source.id_position
        raw_id = dot.get(obj, id_position) if isinstance(obj, (dict, list)) else dot.MISSING
        if raw_id is dot.MISSING or raw_id is None:
            ctx.counts.errored += 1
            message = f"Object has no identifier at '{id_position}'"
            logger.error(message)
            self._log_contract(ctx, None, None, source=obj, message=message, error=True)
            return
        origin_id = str(raw_id)

        try:
            if not self.evaluator.evaluate(ctx.synchronization.conditions, obj):
                ctx.counts.excluded += 1
                logger.debug(f"Object {origin_id} excluded by conditions")
                return

            ctx.seen.add(origin_id)
            self._synchronize_object(ctx, origin_id, obj)

        except (ObjectProcessingError, ConfigurationError) as e:
            ctx.counts.errored += 1
            logger.error(f"Failed to synchronize object {origin_id}: {e}")
            self._log_contract(ctx, None, None, origin_id=origin_id, source=obj, message=str(e), error=True)
        except Exception as e:
            # Whatever one object breaks stays with that object
            ctx.counts.errored += 1
            logger.exception(f"Unexpected error while synchronizing object {origin_id}")
            self._log_contract(
                ctx, None, None, origin_id=origin_id, source=obj,
                message=f"Unexpected error: {type(e).__name__}: {e}", error=True
            )

    def _synchronize_object(self, ctx: _RunContext, origin_id: str, obj: Any) -> None:
        """
        Bring one object's target counterpart up to date.

        Raises:
            ObjectProcessingError: If anything scoped to this object fails
        """
        try:
            hash_input = self.transformer.transform(ctx.hash_mapping, obj) if ctx.hash_mapping else obj
            origin_hash = fingerprint(hash_input)
        except (TransformError, FingerprintError) as e:
            raise ObjectProcessingError(origin_id, f"Cannot fingerprint object {origin_id}: {e}", e)

        contract = self.store.get_contract(ctx.synchronization.id, origin_id)
        expected_hash = contract.origin_hash if contract else None
        action = decide_action(contract, origin_hash, ctx.force)

        payload = None
        target_id = contract.target_id if contract else None
        target_hash = contract.target_hash if contract else None
        if action != SyncAction.SKIP:
            try:
                payload = (
                    self.transformer.transform(ctx.target_mapping, obj)
                    if ctx.target_mapping else copy.deepcopy(obj)
                )
                if not ctx.test:
                    written = ctx.target.write(ctx.synchronization.target, action, payload, target_id)
                    target_id = written.target_id
                    target_hash = fingerprint(written.stored) if is_sortable(written.stored) else None
            except (TransformError, ConnectorError, NotImplementedError) as e:
                raise ObjectProcessingError(origin_id, f"Cannot {action.value} object {origin_id}: {e}", e)

        stored = contract
        if not ctx.test:
            now = utc_now()
            updated = (
                contract.model_copy(deep=True) if contract
                else SynchronizationContract(synchronization_id=ctx.synchronization.id, origin_id=origin_id)
            )
            updated.source_last_checked = now
            updated.target_last_action = action
            if action != SyncAction.SKIP:
                updated.origin_hash = origin_hash
                updated.source_last_changed = now
                updated.source_last_synced = now
                updated.target_id = target_id
                updated.target_hash = target_hash
                updated.target_last_changed = now
                updated.target_last_synced = now
            try:
                stored = self.store.upsert_contract(updated, expected_hash)
            except ContractConflictError as e:
                raise ObjectProcessingError(origin_id, str(e), e)

        ctx.counts.record(action)
        self._log_contract(
            ctx,
            stored,
            action,
            origin_id=origin_id,
            origin_hash_before=expected_hash,
            origin_hash_after=origin_hash,
            target_hash=target_hash,
            source=obj,
            target=payload
        )

    def _deletion_pass(self, ctx: _RunContext) -> None:
        """Apply the delete policy to contracts whose origin was not seen in this run."""
        policy = ctx.synchronization.delete_policy
        stale = self.store.list_stale(ctx.synchronization.id, ctx.seen)
        if not stale:
            return
        if policy == DeletePolicy.KEEP:
            logger.debug(f"Keeping {len(stale)} contracts whose origin was not seen")
            return

        ctx.trace(f"Applying delete policy '{policy.value}' to {len(stale)} contracts")
        for contract in stale:
            if ctx.cancelled:
                break
            try:
                if not ctx.test:
                    self._apply_delete_policy(ctx, contract, policy)
                ctx.counts.deleted += 1
                self._log_contract(
                    ctx, contract, SyncAction.DELETE,
                    origin_id=contract.origin_id,
                    origin_hash_before=contract.origin_hash,
                    target_hash=contract.target_hash,
                    message=f"Origin not seen, delete policy '{policy.value}'"
                )
            except (ConnectorError, ContractConflictError, NotImplementedError) as e:
                ctx.counts.errored += 1
                logger.error(f"Failed to delete object {contract.origin_id}: {e}")
                self._log_contract(ctx, contract, SyncAction.DELETE, origin_id=contract.origin_id, message=str(e), error=True)

    def _apply_delete_policy(self, ctx: _RunContext, contract: SynchronizationContract, policy: DeletePolicy) -> None:
        if policy == DeletePolicy.DELETE:
            if contract.target_id:
                ctx.target.write(ctx.synchronization.target, SyncAction.DELETE, None, contract.target_id)
            self.store.delete_contract(contract.synchronization_id, contract.origin_id)
            return

        now = utc_now()
        marked = contract.model_copy(deep=True)
        marked.target_last_action = SyncAction.DELETE
        marked.source_last_checked = now
        marked.target_last_changed = now
        self.store.upsert_contract(marked, contract.origin_hash)

    def _conclude(self, ctx: _RunContext, result: RunResult, completed: bool) -> None:
        counts = ctx.counts
        summary = (
            f"{counts.found} found, {counts.created} created, {counts.updated} updated, "
            f"{counts.skipped} skipped, {counts.deleted} deleted, {counts.errored} errored, "
            f"{counts.excluded} excluded"
        )

        if not completed:
            # Level and message were set where pagination stopped
            result.message = f"{result.message} ({summary})"
        elif ctx.cancelled:
            result.level = LogLevel.WARNING
            result.message = f"Synchronization cancelled ({summary})"
        elif counts.errored:
            result.level = LogLevel.WARNING
            result.message = f"Synchronized with errors ({summary})"
        else:
            result.level = LogLevel.INFO
            result.message = f"Synchronized {counts.found} objects ({summary})"

        ctx.trace(result.message)
        result.stack_trace = ctx.stack_trace

    def _invoke_hooks(self, ctx: _RunContext, stage: str, result: Optional[RunResult]) -> None:
        for name in ctx.synchronization.actions:
            hook = self.hooks.get(name)
            if hook is None:
                logger.warning(f"No hook registered for action '{name}'")
                continue
            try:
                hook(stage, ctx.synchronization, result)
            except Exception as e:
                logger.error(f"Action '{name}' failed {stage} run {ctx.log.id}: {e}")
                ctx.trace(f"Action '{name}' failed {stage} run: {e}")

    def _run_follow_ups(self, ctx: _RunContext, result: RunResult, chain: Optional[Set[str]]) -> None:
        chain = set(chain or set()) | {ctx.synchronization.id}
        for follow_up_id in ctx.synchronization.follow_ups:
            if follow_up_id in chain:
                logger.warning(f"Skipping follow-up {follow_up_id}: it is already part of this chain")
                continue
            try:
                follow_up = self.run(follow_up_id, ctx.test, ctx.force, ctx.cancel_event, _chain=chain)
                result.follow_ups[follow_up_id] = follow_up.level
            except MirrorSyncException as e:
                logger.error(f"Follow-up {follow_up_id} failed: {e}")
                result.follow_ups[follow_up_id] = LogLevel.ERROR

    def _log_contract(
        self,
        ctx: _RunContext,
        contract: Optional[SynchronizationContract],
        action: Optional[SyncAction],
        **fields: Any
    ) -> None:
        entry = SynchronizationContractLog(
            synchronization_id=ctx.synchronization.id,
            synchronization_log_id=ctx.log.id,
            synchronization_contract_id=contract.id if contract else None,
            action=action,
            test=ctx.test,
            force=ctx.force,
            expires=utc_now() + timedelta(days=get_contract_log_retention_days()),
            **fields
        )
        self.store.add_contract_log(entry)
