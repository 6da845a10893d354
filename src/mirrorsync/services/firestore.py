"""
Firestore-backed store for synchronizations, contracts and run history.
"""

import logging
from datetime import datetime
from typing import List, Any, Optional, Iterable
from urllib.parse import quote

from google.cloud import firestore
from google.auth import default
from pydantic import TypeAdapter

from .store import SynchronizationStore, _check_expected
from ..exceptions import ContractConflictError
from ..models.config import Synchronization
from ..models.mapping import Mapping
from ..models.sync import (
    SyncAction, SynchronizationContract, SynchronizationLog,
    SynchronizationContractLog, utc_now
)

logger = logging.getLogger(__name__)

_TIMESTAMP = TypeAdapter(datetime)

# Firestore limits a batch to 500 writes
_BATCH_SIZE = 500


def _timestamp(moment: datetime) -> str:
    # Same serialization as model_dump(mode="json") so stored values compare as strings
    return _TIMESTAMP.dump_python(moment, mode="json")


def contract_document_id(synchronization_id: str, origin_id: str) -> str:
    """Document id of a contract; origin ids may hold characters Firestore forbids."""
    return f"{quote(synchronization_id, safe='')}:{quote(origin_id, safe='')}"


class FirestoreStore(SynchronizationStore):
    """
    Store keeping every entity in its own Firestore collection.
    """

    def __init__(self, project_id: Optional[str] = None, client: Optional[firestore.Client] = None):
        """
        Initialize Firestore store.

        Args:
            project_id: Google Cloud project ID. If None, uses default from environment.
            client: Ready-made client, mostly for tests
        """
        try:
            if client is not None:
                self.db = client
            elif project_id:
                self.db = firestore.Client(project=project_id)
            else:
                # Use application default credentials
                credentials, project = default()
                self.db = firestore.Client(project=project, credentials=credentials)

            self.synchronizations_collection = "synchronizations"
            self.mappings_collection = "mappings"
            self.contracts_collection = "synchronization_contracts"
            self.logs_collection = "synchronization_logs"
            self.contract_logs_collection = "synchronization_contract_logs"

            logger.info(f"Firestore store initialized for project: {self.db.project}")

        except Exception as e:
            logger.error(f"Failed to initialize Firestore: {e}")
            raise

    # Synchronizations

    def get_synchronization(self, synchronization_id: str) -> Optional[Synchronization]:
        try:
            doc = self.db.collection(self.synchronizations_collection).document(synchronization_id).get()
            if doc.exists:
                return Synchronization.from_firestore(synchronization_id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get synchronization {synchronization_id}: {e}")
            raise

    def list_synchronizations(self, active_only: bool = False) -> List[Synchronization]:
        try:
            query = self.db.collection(self.synchronizations_collection)
            if active_only:
                query = query.where("active", "==", True)

            return [Synchronization.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list synchronizations: {e}")
            raise

    def save_synchronization(self, synchronization: Synchronization) -> Synchronization:
        try:
            synchronization.updated_at = utc_now()
            doc_ref = self.db.collection(self.synchronizations_collection).document(synchronization.id)
            doc_ref.set(synchronization.to_firestore())

            logger.info(f"Saved synchronization: {synchronization.id}")
            return synchronization

        except Exception as e:
            logger.error(f"Failed to save synchronization {synchronization.id}: {e}")
            raise

    def delete_synchronization(self, synchronization_id: str) -> bool:
        try:
            doc_ref = self.db.collection(self.synchronizations_collection).document(synchronization_id)
            if not doc_ref.get().exists:
                return False

            contracts = (self.db.collection(self.contracts_collection)
                         .where("synchronization_id", "==", synchronization_id))
            removed = self._delete_in_batches(doc.reference for doc in contracts.stream())
            doc_ref.delete()

            logger.info(f"Deleted synchronization {synchronization_id} and {removed} contracts")
            return True

        except Exception as e:
            logger.error(f"Failed to delete synchronization {synchronization_id}: {e}")
            raise

    # Mappings

    def get_mapping(self, mapping_id: str) -> Optional[Mapping]:
        try:
            doc = self.db.collection(self.mappings_collection).document(mapping_id).get()
            if doc.exists:
                return Mapping.from_firestore(mapping_id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get mapping {mapping_id}: {e}")
            raise

    def save_mapping(self, mapping: Mapping) -> Mapping:
        try:
            mapping.updated_at = utc_now()
            self.db.collection(self.mappings_collection).document(mapping.id).set(mapping.to_firestore())

            logger.info(f"Saved mapping: {mapping.id}")
            return mapping

        except Exception as e:
            logger.error(f"Failed to save mapping {mapping.id}: {e}")
            raise

    # Contracts

    def _contract_ref(self, synchronization_id: str, origin_id: str):
        return self.db.collection(self.contracts_collection).document(
            contract_document_id(synchronization_id, origin_id)
        )

    def get_contract(self, synchronization_id: str, origin_id: str) -> Optional[SynchronizationContract]:
        try:
            doc = self._contract_ref(synchronization_id, origin_id).get()
            if doc.exists:
                return SynchronizationContract.model_validate(doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get contract {synchronization_id}/{origin_id}: {e}")
            raise

    def upsert_contract(
        self,
        contract: SynchronizationContract,
        expected_hash: Optional[str]
    ) -> SynchronizationContract:
        doc_ref = self._contract_ref(contract.synchronization_id, contract.origin_id)

        @firestore.transactional
        def compare_and_set(transaction) -> SynchronizationContract:
            snapshot = doc_ref.get(transaction=transaction)
            stored = SynchronizationContract.model_validate(snapshot.to_dict()) if snapshot.exists else None
            _check_expected(stored, contract, expected_hash)

            updated = contract.model_copy(deep=True, update={
                "version": (stored.version if stored else 0) + 1,
                "updated_at": utc_now(),
            })
            transaction.set(doc_ref, updated.model_dump(mode="json"))
            return updated

        try:
            return compare_and_set(self.db.transaction())
        except ContractConflictError:
            raise
        except Exception as e:
            logger.error(f"Failed to upsert contract {contract.synchronization_id}/{contract.origin_id}: {e}")
            raise

    def list_stale(self, synchronization_id: str, seen_ids: Iterable[str]) -> List[SynchronizationContract]:
        seen = set(seen_ids)
        try:
            query = (self.db.collection(self.contracts_collection)
                     .where("synchronization_id", "==", synchronization_id))

            stale = []
            for doc in query.stream():
                contract = SynchronizationContract.model_validate(doc.to_dict())
                if contract.origin_id not in seen and contract.target_last_action != SyncAction.DELETE:
                    stale.append(contract)
            return stale

        except Exception as e:
            logger.error(f"Failed to list stale contracts for {synchronization_id}: {e}")
            raise

    def delete_contract(self, synchronization_id: str, origin_id: str) -> bool:
        try:
            doc_ref = self._contract_ref(synchronization_id, origin_id)
            if not doc_ref.get().exists:
                return False
            doc_ref.delete()
            return True

        except Exception as e:
            logger.error(f"Failed to delete contract {synchronization_id}/{origin_id}: {e}")
            raise

    def list_contracts(self, synchronization_id: str, limit: int = 100) -> List[SynchronizationContract]:
        try:
            query = (self.db.collection(self.contracts_collection)
                     .where("synchronization_id", "==", synchronization_id)
                     .limit(limit))
            return [SynchronizationContract.model_validate(doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list contracts for {synchronization_id}: {e}")
            raise

    # Logs

    def add_log(self, log: SynchronizationLog) -> SynchronizationLog:
        try:
            self.db.collection(self.logs_collection).document(log.id).set(log.model_dump(mode="json"))
            logger.debug(f"Created synchronization log: {log.id}")
            return log

        except Exception as e:
            logger.error(f"Failed to create log {log.id}: {e}")
            raise

    def update_log(self, log: SynchronizationLog) -> SynchronizationLog:
        try:
            self.db.collection(self.logs_collection).document(log.id).set(log.model_dump(mode="json"))
            return log

        except Exception as e:
            logger.error(f"Failed to update log {log.id}: {e}")
            raise

    def get_log(self, log_id: str) -> Optional[SynchronizationLog]:
        try:
            doc = self.db.collection(self.logs_collection).document(log_id).get()
            if doc.exists:
                return SynchronizationLog.model_validate(doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get log {log_id}: {e}")
            raise

    def list_logs(self, synchronization_id: Optional[str] = None, limit: int = 50) -> List[SynchronizationLog]:
        try:
            query = self.db.collection(self.logs_collection)
            if synchronization_id:
                query = query.where("synchronization_id", "==", synchronization_id)

            query = query.order_by("started_at", direction=firestore.Query.DESCENDING).limit(limit)
            return [SynchronizationLog.model_validate(doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list logs: {e}")
            raise

    def add_contract_log(self, entry: SynchronizationContractLog) -> SynchronizationContractLog:
        try:
            self.db.collection(self.contract_logs_collection).document(entry.id).set(entry.model_dump(mode="json"))
            return entry

        except Exception as e:
            logger.error(f"Failed to create contract log {entry.id}: {e}")
            raise

    def list_contract_logs(
        self,
        synchronization_id: Optional[str] = None,
        log_id: Optional[str] = None,
        limit: int = 100
    ) -> List[SynchronizationContractLog]:
        try:
            query = self.db.collection(self.contract_logs_collection)
            if synchronization_id:
                query = query.where("synchronization_id", "==", synchronization_id)
            if log_id:
                query = query.where("synchronization_log_id", "==", log_id)

            query = query.order_by("created_at").limit(limit)
            return [SynchronizationContractLog.model_validate(doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list contract logs: {e}")
            raise

    def clear_expired_logs(self, now: Optional[datetime] = None) -> int:
        cutoff = _timestamp(now or utc_now())
        try:
            removed = 0
            for collection in (self.logs_collection, self.contract_logs_collection):
                query = self.db.collection(collection).where("expires", "<=", cutoff)
                removed += self._delete_in_batches(doc.reference for doc in query.stream())

            if removed:
                logger.info(f"Cleared {removed} expired log entries")
            return removed

        except Exception as e:
            logger.error(f"Failed to clear expired logs: {e}")
            raise

    def _delete_in_batches(self, references: Iterable[Any]) -> int:
        count = 0
        batch = self.db.batch()
        pending = 0
        for reference in references:
            batch.delete(reference)
            pending += 1
            count += 1
            if pending == _BATCH_SIZE:
                batch.commit()
                batch = self.db.batch()
                pending = 0
        if pending:
            batch.commit()
        return count
