"""Reactively refreshed read models over one entity table."""

import logging
import threading
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from northstar_sync.models.schema import EntityTable
from northstar_sync.storage.local_store import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LiveCollection(Generic[T]):
    """A list of entities that reloads itself after every committed change.

    The collection subscribes to the store's change notifications for its
    table and re-runs its loader; observers registered with
    :meth:`on_change` get the fresh list.
    """

    def __init__(
        self,
        store: LocalStore,
        table: EntityTable,
        loader: Callable[[], List[T]],
    ):
        self.table = table
        self._loader = loader
        self._lock = threading.Lock()
        self._items: List[T] = loader()
        self._observers: List[Callable[[List[T]], None]] = []
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(
            table, self._on_table_changed
        )

    def _on_table_changed(self, table: EntityTable) -> None:
        self.refresh()

    def refresh(self) -> List[T]:
        """Reload the items and notify observers."""
        items = self._loader()
        with self._lock:
            self._items = items
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(items)
            except Exception as e:
                logger.warning(f"Observer of {self.table.value} failed: {e}")
        return items

    @property
    def items(self) -> List[T]:
        with self._lock:
            return list(self._items)

    def on_change(self, observer: Callable[[List[T]], None]) -> None:
        with self._lock:
            self._observers.append(observer)

    def close(self) -> None:
        """Stop following the table."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            self._observers.clear()

    @property
    def closed(self) -> bool:
        return self._unsubscribe is None

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
