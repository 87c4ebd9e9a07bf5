"""
Playlist for slidebox.

An in-memory FIFO of descriptors that have not been shown yet, refilled from
the catalog one page at a time. Refilling wraps around to the most recent
assets when the end of the catalog is reached.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, FrozenSet, Iterable, List, Optional

from .models import AssetDescriptor

# Cursor precision on the wire
CURSOR_STEP = timedelta(milliseconds=1)

if TYPE_CHECKING:
    from .catalog import AssetCatalogClient


class RefillSignal(Enum):
    """Outcome of a refill."""

    NOT_NEEDED = "not_needed"  # playlist above the low-water mark, nothing fetched
    APPENDED = "appended"  # pages fetched from the current cursor
    WRAPPED = "wrapped"  # end of catalog reached, restarted from the most recent assets
    EXHAUSTED = "exhausted"  # catalog empty (or everything filtered out)


@dataclass
class RefillResult:
    """What a refill fetched. Produced off the control loop, applied on it."""

    signal: RefillSignal
    descriptors: List[AssetDescriptor] = field(default_factory=list)
    # Boundary for the following refill
    next_cursor: Optional[datetime] = None
    boundary_ids: FrozenSet[str] = frozenset()

    @property
    def wrapped(self) -> bool:
        return self.signal == RefillSignal.WRAPPED


class Playlist:
    """Ordered queue of descriptors waiting to be shown."""

    def __init__(self, page_size: int = 100, low_water_mark: int = 0, max_pages_per_refill: int = 10):
        """
        Initialize Playlist.

        Args:
            page_size: Assets requested per catalog page
            low_water_mark: Refill when the queue holds this many items or fewer
            max_pages_per_refill: Upper bound on pages fetched by one refill when
                client-side filters reject whole pages
        """
        self.logger = logging.getLogger(__name__)
        self.page_size = page_size
        self.low_water_mark = max(0, low_water_mark)
        self.max_pages_per_refill = max(1, max_pages_per_refill)
        self._items: deque = deque()
        # Oldest capture time received so far, and the ids seen at exactly that time
        self.page_cursor: Optional[datetime] = None
        self.boundary_ids: FrozenSet[str] = frozenset()

    def __len__(self) -> int:
        return len(self._items)

    def needs_refill(self) -> bool:
        """True when the queue is empty or at/below the low-water mark."""
        return len(self._items) == 0 or len(self._items) <= self.low_water_mark

    def pop_front(self) -> Optional[AssetDescriptor]:
        """Remove and return the next descriptor, or None if the queue is empty."""
        if not self._items:
            return None
        return self._items.popleft()

    def extend(self, descriptors: Iterable[AssetDescriptor]) -> None:
        """Append descriptors to the tail, preserving order."""
        self._items.extend(descriptors)

    def clear(self) -> None:
        """Drop every queued descriptor and forget the page boundary."""
        self._items.clear()
        self.page_cursor = None
        self.boundary_ids = frozenset()

    def cursor_for_refill(self, persisted_cursor: Optional[datetime]) -> Optional[datetime]:
        """Boundary to fetch from: the playlist's own, or the persisted cursor before the first page."""
        if self.page_cursor is not None:
            return self.page_cursor
        return persisted_cursor

    def fetch_refill(
        self,
        catalog: "AssetCatalogClient",
        cursor: Optional[datetime],
        exclude_ids: FrozenSet[str] = frozenset(),
    ) -> RefillResult:
        """
        Fetch the next batch of descriptors without touching playlist state.

        Safe to call from a worker thread. An end-of-catalog page with a cursor
        wraps around to the most recent assets; an end-of-catalog page without
        one means there is nothing to show.

        Args:
            catalog: Catalog client
            cursor: Boundary to fetch at or before (None = most recent)
            exclude_ids: Ids already received at exactly the boundary time

        Returns:
            RefillResult (never NOT_NEEDED)

        Raises:
            TransportError: If the catalog cannot be reached
        """
        wrapped = False
        for _ in range(self.max_pages_per_refill):
            page = catalog.fetch_page(cursor, self.page_size)

            if page.exhausted or page.oldest_taken_at is None:
                if cursor is None:
                    self.logger.warning("No assets found matching the filters")
                    return RefillResult(signal=RefillSignal.EXHAUSTED)
                if wrapped:
                    # Already restarted from the top in this refill and still nothing
                    return RefillResult(signal=RefillSignal.EXHAUSTED)
                self.logger.info("Reached end of timeline, looping back to the beginning")
                cursor = None
                exclude_ids = frozenset()
                wrapped = True
                continue

            fresh = [d for d in page.descriptors if d.id not in exclude_ids]
            at_boundary = frozenset(
                d.id for d in page.descriptors if d.taken_at == page.oldest_taken_at
            )
            if page.oldest_taken_at == cursor:
                at_boundary = at_boundary | exclude_ids

            if page.oldest_taken_at == cursor and not fresh:
                if page.raw_count >= self.page_size:
                    # A full page sharing the boundary time; step past it
                    self.logger.debug("Page full of assets taken at %s, stepping back", cursor)
                    cursor = cursor - CURSOR_STEP
                    exclude_ids = frozenset()
                    continue
                # Only the boundary overlap came back: nothing older exists
                if wrapped:
                    return RefillResult(signal=RefillSignal.EXHAUSTED)
                self.logger.info("Reached end of timeline, looping back to the beginning")
                cursor = None
                exclude_ids = frozenset()
                wrapped = True
                continue

            cursor = page.oldest_taken_at
            exclude_ids = at_boundary
            if fresh:
                return RefillResult(
                    signal=RefillSignal.WRAPPED if wrapped else RefillSignal.APPENDED,
                    descriptors=fresh,
                    next_cursor=cursor,
                    boundary_ids=exclude_ids,
                )

            self.logger.debug("Page before %s filtered out entirely, fetching older", cursor)

        return RefillResult(
            signal=RefillSignal.WRAPPED if wrapped else RefillSignal.APPENDED,
            next_cursor=cursor,
            boundary_ids=exclude_ids,
        )

    def apply_refill(self, result: RefillResult) -> None:
        """Append a fetched batch and move the page boundary. Control loop only."""
        if result.signal in (RefillSignal.NOT_NEEDED, RefillSignal.EXHAUSTED):
            return
        self.extend(result.descriptors)
        self.page_cursor = result.next_cursor
        self.boundary_ids = result.boundary_ids
        self.logger.debug(
            "Playlist refilled with %d assets (%s), %d queued",
            len(result.descriptors),
            result.signal.value,
            len(self._items),
        )

    def refill_if_needed(
        self, catalog: "AssetCatalogClient", cursor: Optional[datetime]
    ) -> RefillResult:
        """
        Refill synchronously when the queue is low.

        No fetch happens when the playlist is above the low-water mark.

        Args:
            catalog: Catalog client
            cursor: Persisted cursor, used until the playlist has its own boundary

        Returns:
            RefillResult describing what happened

        Raises:
            TransportError: If the catalog cannot be reached
        """
        if not self.needs_refill():
            return RefillResult(
                signal=RefillSignal.NOT_NEEDED,
                next_cursor=self.page_cursor,
                boundary_ids=self.boundary_ids,
            )

        refill_cursor = self.cursor_for_refill(cursor)
        exclude = self.boundary_ids if refill_cursor == self.page_cursor else frozenset()
        result = self.fetch_refill(catalog, refill_cursor, exclude)
        self.apply_refill(result)
        return result
