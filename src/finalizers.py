"""
Finalizer Manager - Deletion guard for declared Sentry projects.

The store only erases a record once its finalizer list is empty, so the
operator's finalizer must be present before any remote mutation and removed
only after the remote project is confirmed gone.
"""

import logging
from typing import Iterable, Iterator, List

from models import FINALIZER, SentryProject

logger = logging.getLogger(__name__)


class FinalizerSet:
    """Ordered set of finalizer tokens."""

    def __init__(self, finalizers: Iterable[str] = ()):
        self._items: List[str] = []
        for finalizer in finalizers:
            self.add(finalizer)

    def __contains__(self, finalizer: object) -> bool:
        return finalizer in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def add(self, finalizer: str) -> bool:
        """Add a token. Returns True if the set changed."""
        if finalizer in self._items:
            return False
        self._items.append(finalizer)
        return True

    def discard(self, finalizer: str) -> bool:
        """Remove a token. Returns True if the set changed."""
        if finalizer not in self._items:
            return False
        self._items.remove(finalizer)
        return True

    def to_list(self) -> List[str]:
        return list(self._items)


class FinalizerManager:
    """
    Adds and removes the operator finalizer, committing only on change.

    Both operations are idempotent. On commit the project's finalizers and
    resource version are refreshed from the store's answer.
    """

    def __init__(self, store, finalizer: str = FINALIZER):
        self.store = store
        self.finalizer = finalizer

    def is_present(self, project: SentryProject) -> bool:
        return self.finalizer in FinalizerSet(project.finalizers)

    async def ensure_present(self, project: SentryProject) -> None:
        finalizers = FinalizerSet(project.finalizers)
        if not finalizers.add(self.finalizer):
            return
        await self._commit(project, finalizers)
        logger.info(f"Added finalizer {self.finalizer} to {project.name}")

    async def ensure_absent(self, project: SentryProject) -> None:
        finalizers = FinalizerSet(project.finalizers)
        if not finalizers.discard(self.finalizer):
            return
        await self._commit(project, finalizers)
        logger.info(f"Removed finalizer {self.finalizer} from {project.name}")

    async def _commit(self, project: SentryProject, finalizers: FinalizerSet) -> None:
        project.resource_version = await self.store.update_project_finalizers(
            project.name, finalizers.to_list(), project.resource_version
        )
        project.finalizers = finalizers.to_list()
