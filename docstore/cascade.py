"""
docstore/cascade.py -- Cascading deletion of a parent record and everything under it.

Three levels are removed, always bottom-up:

    parliamentDates/{dateId}                      parent
    parliamentSubjects  where dateId == {dateId}  dependents
    parliamentSubjects/{subjectId}/notes/*        nested items of each dependent

Ordering:
  For each dependent, its nested items are deleted in atomic batches of at
  most batch_limit writes (flushed on reaching the cap and once more for the
  remainder). Only then is the dependent itself queued in a second, separate
  accumulator, flushed on cap and after the last dependent. The parent goes
  last, as a single delete, once every dependent batch has committed.

  An interruption at any point therefore leaves either untouched dependents
  under an existing parent, or a parent with fewer (possibly zero)
  dependents. Never a dependent whose parent is gone.

Failure handling:
  A failed commit stops the run and returns a CascadeOutcome with ok=False
  and the last stage that fully completed. Nothing is retried here. Re-running
  the whole operation is safe: the dependent query simply returns whatever
  is left, and deleting an already-missing parent is not an error.

Usage:
    deleter = CascadeDeleter(store)
    outcome = deleter.delete("2024-05-01")
    if not outcome.ok:
        ...  # surface outcome.stage / outcome.error to the admin, let them retry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from core.config import get_settings
from docstore.models import subcollection
from docstore.store import DocumentStore, DocumentStoreError, WriteBatch

logger = logging.getLogger("schoolgate.docstore.cascade")

PARENT_COLLECTION = "parliamentDates"
DEPENDENT_COLLECTION = "parliamentSubjects"
FOREIGN_KEY = "dateId"
NESTED_COLLECTION = "notes"


class CascadeStage(str, Enum):
    """Progress markers, in execution order."""

    NOT_STARTED = "not_started"
    DEPENDENTS_LISTED = "dependents_listed"
    NESTED_ITEMS_DELETED = "nested_items_deleted"
    DEPENDENTS_DELETED = "dependents_deleted"
    PARENT_DELETED = "parent_deleted"


@dataclass
class CascadeOutcome:
    parent_id: str
    ok: bool = False
    stage: CascadeStage = CascadeStage.NOT_STARTED
    dependents_deleted: int = 0
    nested_items_deleted: int = 0
    batches_committed: int = 0
    error: Optional[str] = None
    # Dependent whose nested items were being removed when a failure hit.
    failed_dependent: Optional[str] = None


@dataclass
class BatchAccumulator:
    """A write batch plus its flush policy, owned by one deletion routine.

    add() queues a delete and commits as soon as the batch reaches limit;
    flush() commits whatever is pending. After every commit the batch is
    replaced with a fresh one. Counters are the deletes actually committed.
    """

    store: DocumentStore
    limit: int
    committed_ops: int = 0
    commits: int = 0
    _batch: WriteBatch = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("batch limit must be at least 1")
        self._batch = self.store.batch()

    @property
    def pending(self) -> int:
        return len(self._batch)

    def add(self, collection: str, doc_id: str) -> None:
        self._batch.delete(collection, doc_id)
        if len(self._batch) >= self.limit:
            self.flush()

    def flush(self) -> None:
        if not len(self._batch):
            return
        size = len(self._batch)
        self._batch.commit()
        self.committed_ops += size
        self.commits += 1
        self._batch = self.store.batch()


class CascadeDeleter:
    """Deletes one parent record together with its dependents and their nested items."""

    def __init__(
        self,
        store: DocumentStore,
        batch_limit: Optional[int] = None,
        parent_collection: str = PARENT_COLLECTION,
        dependent_collection: str = DEPENDENT_COLLECTION,
        foreign_key: str = FOREIGN_KEY,
        nested_collection: str = NESTED_COLLECTION,
    ) -> None:
        self.store = store
        self.batch_limit = batch_limit if batch_limit is not None else get_settings().cascade_batch_limit
        if self.batch_limit < 1:
            raise ValueError("batch limit must be at least 1")
        self.parent_collection = parent_collection
        self.dependent_collection = dependent_collection
        self.foreign_key = foreign_key
        self.nested_collection = nested_collection

    def delete(self, parent_id: str) -> CascadeOutcome:
        outcome = CascadeOutcome(parent_id=parent_id)
        dependents_acc = BatchAccumulator(self.store, self.batch_limit)

        try:
            # No limit: every dependent must be found or the parent would be
            # deleted out from under the ones we missed.
            dependents = self.store.where(self.dependent_collection, self.foreign_key, parent_id)
            outcome.stage = CascadeStage.DEPENDENTS_LISTED
            logger.info("Cascade %s: %d dependent(s) found", parent_id, len(dependents))

            for dep in dependents:
                outcome.failed_dependent = dep.id
                outcome.nested_items_deleted += self._delete_nested(dep.id, outcome)
                outcome.failed_dependent = None
                dependents_acc.add(self.dependent_collection, dep.id)
            outcome.stage = CascadeStage.NESTED_ITEMS_DELETED

            dependents_acc.flush()
            outcome.dependents_deleted = dependents_acc.committed_ops
            outcome.stage = CascadeStage.DEPENDENTS_DELETED

            self.store.delete(self.parent_collection, parent_id)
            outcome.stage = CascadeStage.PARENT_DELETED
        except DocumentStoreError as e:
            outcome.dependents_deleted = dependents_acc.committed_ops
            outcome.batches_committed += dependents_acc.commits
            outcome.error = str(e)
            logger.error(
                "Cascade %s stopped after stage %s: %s (dependents deleted: %d, nested items deleted: %d)",
                parent_id,
                outcome.stage.value,
                e,
                outcome.dependents_deleted,
                outcome.nested_items_deleted,
            )
            return outcome

        outcome.batches_committed += dependents_acc.commits
        outcome.ok = True
        logger.info(
            "Cascade %s complete: %d dependent(s), %d nested item(s), %d batch(es)",
            parent_id,
            outcome.dependents_deleted,
            outcome.nested_items_deleted,
            outcome.batches_committed,
        )
        return outcome

    def _delete_nested(self, dependent_id: str, outcome: CascadeOutcome) -> int:
        """Remove every nested item of one dependent. Returns the number deleted."""
        path = subcollection(self.dependent_collection, dependent_id, self.nested_collection)
        items = self.store.list_collection(path)
        if not items:
            return 0
        acc = BatchAccumulator(self.store, self.batch_limit)
        try:
            for item in items:
                acc.add(path, item.id)
            acc.flush()
        finally:
            outcome.batches_committed += acc.commits
            if acc.committed_ops < len(items):
                # Count partial progress so the failure report is accurate.
                outcome.nested_items_deleted += acc.committed_ops
        return acc.committed_ops
