"""
Persistence for synchronizations, mappings, contracts and run logs.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Iterable, Tuple

from ..exceptions import ContractConflictError
from ..models.config import Synchronization
from ..models.mapping import Mapping
from ..models.sync import (
    SyncAction, SynchronizationContract, SynchronizationLog,
    SynchronizationContractLog, utc_now
)

logger = logging.getLogger(__name__)


class SynchronizationStore(ABC):
    """
    Storage collaborator of the synchronization engine.

    Contracts are keyed by (synchronization id, origin id). ``upsert_contract`` is
    the only way to write one and is atomic per key: it compares the stored origin
    hash with the hash the caller read before writing.
    """

    # Synchronizations

    @abstractmethod
    def get_synchronization(self, synchronization_id: str) -> Optional[Synchronization]:
        pass

    @abstractmethod
    def list_synchronizations(self, active_only: bool = False) -> List[Synchronization]:
        pass

    @abstractmethod
    def save_synchronization(self, synchronization: Synchronization) -> Synchronization:
        pass

    @abstractmethod
    def delete_synchronization(self, synchronization_id: str) -> bool:
        """Delete a synchronization together with all of its contracts."""
        pass

    # Mappings

    @abstractmethod
    def get_mapping(self, mapping_id: str) -> Optional[Mapping]:
        pass

    @abstractmethod
    def save_mapping(self, mapping: Mapping) -> Mapping:
        pass

    # Contracts

    @abstractmethod
    def get_contract(self, synchronization_id: str, origin_id: str) -> Optional[SynchronizationContract]:
        pass

    @abstractmethod
    def upsert_contract(
        self,
        contract: SynchronizationContract,
        expected_hash: Optional[str]
    ) -> SynchronizationContract:
        """
        Create or replace a contract if nobody changed it since it was read.

        Args:
            contract: The contract to store
            expected_hash: Origin hash of the stored contract when it was read,
                None if no contract existed

        Returns:
            The stored contract, with its version incremented

        Raises:
            ContractConflictError: If the stored contract no longer matches
        """
        pass

    @abstractmethod
    def list_stale(self, synchronization_id: str, seen_ids: Iterable[str]) -> List[SynchronizationContract]:
        """Contracts whose origin was not seen, excluding those already marked deleted."""
        pass

    @abstractmethod
    def delete_contract(self, synchronization_id: str, origin_id: str) -> bool:
        pass

    @abstractmethod
    def list_contracts(self, synchronization_id: str, limit: int = 100) -> List[SynchronizationContract]:
        pass

    # Logs

    @abstractmethod
    def add_log(self, log: SynchronizationLog) -> SynchronizationLog:
        pass

    @abstractmethod
    def update_log(self, log: SynchronizationLog) -> SynchronizationLog:
        pass

    @abstractmethod
    def get_log(self, log_id: str) -> Optional[SynchronizationLog]:
        pass

    @abstractmethod
    def list_logs(self, synchronization_id: Optional[str] = None, limit: int = 50) -> List[SynchronizationLog]:
        """Run logs, newest first."""
        pass

    @abstractmethod
    def add_contract_log(self, entry: SynchronizationContractLog) -> SynchronizationContractLog:
        pass

    @abstractmethod
    def list_contract_logs(
        self,
        synchronization_id: Optional[str] = None,
        log_id: Optional[str] = None,
        limit: int = 100
    ) -> List[SynchronizationContractLog]:
        """Contract log entries in the order they were written."""
        pass

    @abstractmethod
    def clear_expired_logs(self, now: Optional[datetime] = None) -> int:
        """Delete run and contract logs past their expiry; returns how many were removed."""
        pass


def _check_expected(
    stored: Optional[SynchronizationContract],
    contract: SynchronizationContract,
    expected_hash: Optional[str]
) -> None:
    if stored is None:
        if expected_hash is not None:
            raise ContractConflictError(
                f"Contract for origin '{contract.origin_id}' disappeared while being processed"
            )
        return
    if stored.id != contract.id or stored.origin_hash != expected_hash:
        raise ContractConflictError(
            f"Contract for origin '{contract.origin_id}' was changed by another run"
        )


class InMemoryStore(SynchronizationStore):
    """
    Process-local store, used by tests and the CLI.

    All reads return copies so callers can never mutate stored state in place.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._synchronizations: Dict[str, Synchronization] = {}
        self._mappings: Dict[str, Mapping] = {}
        self._contracts: Dict[Tuple[str, str], SynchronizationContract] = {}
        self._logs: Dict[str, SynchronizationLog] = {}
        self._contract_logs: List[SynchronizationContractLog] = []

    # Synchronizations

    def get_synchronization(self, synchronization_id: str) -> Optional[Synchronization]:
        with self._lock:
            synchronization = self._synchronizations.get(synchronization_id)
            return synchronization.model_copy(deep=True) if synchronization else None

    def list_synchronizations(self, active_only: bool = False) -> List[Synchronization]:
        with self._lock:
            return [
                s.model_copy(deep=True) for s in self._synchronizations.values()
                if s.active or not active_only
            ]

    def save_synchronization(self, synchronization: Synchronization) -> Synchronization:
        with self._lock:
            synchronization.updated_at = utc_now()
            self._synchronizations[synchronization.id] = synchronization.model_copy(deep=True)
        logger.info(f"Saved synchronization: {synchronization.id}")
        return synchronization

    def delete_synchronization(self, synchronization_id: str) -> bool:
        with self._lock:
            if self._synchronizations.pop(synchronization_id, None) is None:
                return False
            stale = [key for key in self._contracts if key[0] == synchronization_id]
            for key in stale:
                del self._contracts[key]
        logger.info(f"Deleted synchronization {synchronization_id} and {len(stale)} contracts")
        return True

    # Mappings

    def get_mapping(self, mapping_id: str) -> Optional[Mapping]:
        with self._lock:
            mapping = self._mappings.get(mapping_id)
            return mapping.model_copy(deep=True) if mapping else None

    def save_mapping(self, mapping: Mapping) -> Mapping:
        with self._lock:
            mapping.updated_at = utc_now()
            self._mappings[mapping.id] = mapping.model_copy(deep=True)
        logger.info(f"Saved mapping: {mapping.id}")
        return mapping

    # Contracts

    def get_contract(self, synchronization_id: str, origin_id: str) -> Optional[SynchronizationContract]:
        with self._lock:
            contract = self._contracts.get((synchronization_id, origin_id))
            return contract.model_copy(deep=True) if contract else None

    def upsert_contract(
        self,
        contract: SynchronizationContract,
        expected_hash: Optional[str]
    ) -> SynchronizationContract:
        key = (contract.synchronization_id, contract.origin_id)
        with self._lock:
            stored = self._contracts.get(key)
            _check_expected(stored, contract, expected_hash)
            updated = contract.model_copy(deep=True, update={
                "version": (stored.version if stored else 0) + 1,
                "updated_at": utc_now(),
            })
            self._contracts[key] = updated
            return updated.model_copy(deep=True)

    def list_stale(self, synchronization_id: str, seen_ids: Iterable[str]) -> List[SynchronizationContract]:
        seen = set(seen_ids)
        with self._lock:
            return [
                contract.model_copy(deep=True)
                for (sync_id, origin_id), contract in self._contracts.items()
                if sync_id == synchronization_id
                and origin_id not in seen
                and contract.target_last_action != SyncAction.DELETE
            ]

    def delete_contract(self, synchronization_id: str, origin_id: str) -> bool:
        with self._lock:
            return self._contracts.pop((synchronization_id, origin_id), None) is not None

    def list_contracts(self, synchronization_id: str, limit: int = 100) -> List[SynchronizationContract]:
        with self._lock:
            contracts = [c for (sync_id, _), c in self._contracts.items() if sync_id == synchronization_id]
            return [c.model_copy(deep=True) for c in contracts[:limit]]

    # Logs

    def add_log(self, log: SynchronizationLog) -> SynchronizationLog:
        with self._lock:
            self._logs[log.id] = log.model_copy(deep=True)
        return log

    def update_log(self, log: SynchronizationLog) -> SynchronizationLog:
        with self._lock:
            self._logs[log.id] = log.model_copy(deep=True)
        return log

    def get_log(self, log_id: str) -> Optional[SynchronizationLog]:
        with self._lock:
            log = self._logs.get(log_id)
            return log.model_copy(deep=True) if log else None

    def list_logs(self, synchronization_id: Optional[str] = None, limit: int = 50) -> List[SynchronizationLog]:
        with self._lock:
            logs = [
                log for log in self._logs.values()
                if synchronization_id is None or log.synchronization_id == synchronization_id
            ]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return [log.model_copy(deep=True) for log in logs[:limit]]

    def add_contract_log(self, entry: SynchronizationContractLog) -> SynchronizationContractLog:
        with self._lock:
            self._contract_logs.append(entry.model_copy(deep=True))
        return entry

    def list_contract_logs(
        self,
        synchronization_id: Optional[str] = None,
        log_id: Optional[str] = None,
        limit: int = 100
    ) -> List[SynchronizationContractLog]:
        with self._lock:
            entries = [
                entry for entry in self._contract_logs
                if (synchronization_id is None or entry.synchronization_id == synchronization_id)
                and (log_id is None or entry.synchronization_log_id == log_id)
            ]
            return [entry.model_copy(deep=True) for entry in entries[:limit]]

    def clear_expired_logs(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        with self._lock:
            expired_logs = [log_id for log_id, log in self._logs.items() if log.expires and log.expires <= now]
            for log_id in expired_logs:
                del self._logs[log_id]
            kept = [entry for entry in self._contract_logs if not (entry.expires and entry.expires <= now)]
            removed = len(expired_logs) + len(self._contract_logs) - len(kept)
            self._contract_logs = kept
        if removed:
            logger.info(f"Cleared {removed} expired log entries")
        return removed


def create_store() -> SynchronizationStore:
    """Firestore when a Google Cloud project is configured, memory otherwise."""
    project_id = os.getenv("GOOGLE_CLOUD_PROJECT")
    if project_id:
        from .firestore import FirestoreStore
        return FirestoreStore(project_id=project_id)
    logger.warning("GOOGLE_CLOUD_PROJECT not set, using an in-memory store")
    return InMemoryStore()
