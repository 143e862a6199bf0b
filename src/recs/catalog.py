"""
Catalog collaborator.

The engine never owns products or categories; it reads them through a
Catalog and tolerates products vanishing at any time. Two implementations:

- InMemoryCatalog: seeded from a JSON document or built in tests
- SupabaseCatalog: ``products`` / ``categories`` tables

Product lifecycle events (published, unpublished, deleted, updated) are
fanned out through a ProductEventRegistry owned by the engine.
"""

import asyncio
import json
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from core.errors import DependencyUnavailable
from core.logging import get_logger
from recs.models import CatalogEventType, Category, Product, ProductStatus


logger = get_logger(__name__)

Listener = Callable[[str, CatalogEventType], Optional[Awaitable[None]]]

WILDCARD = "*"


# =============================================================================
# Category tree
# =============================================================================

class CategoryTree:
    """
    Parent/child index over flat category records.

    Categories are level 0, subcategories level 1 with ``parent_category``
    set. ``descendants(x)`` includes x itself.
    """

    def __init__(self, categories: Iterable[Category] = ()):
        self._by_id: Dict[str, Category] = {}
        self._children: Dict[str, Set[str]] = defaultdict(set)
        for category in categories:
            self._by_id[category.id] = category
        for category in self._by_id.values():
            if category.parent_category:
                self._children[category.parent_category].add(category.id)

    def __contains__(self, category_id: str) -> bool:
        return category_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, category_id: str) -> Optional[Category]:
        return self._by_id.get(category_id)

    def all(self) -> List[Category]:
        return list(self._by_id.values())

    def descendants(self, category_id: str) -> Set[str]:
        out: Set[str] = set()
        stack = [category_id]
        while stack:
            current = stack.pop()
            if current in out:
                continue
            out.add(current)
            stack.extend(self._children.get(current, ()))
        return out

    def lineage(self, category_id: Optional[str]) -> List[str]:
        """The category followed by its ancestors, leaf first."""
        chain: List[str] = []
        current = category_id
        while current and current not in chain:
            chain.append(current)
            parent = self._by_id.get(current)
            current = parent.parent_category if parent else None
        return chain


# =============================================================================
# Product event registry
# =============================================================================

@dataclass(frozen=True)
class Subscription:
    id: int
    product_id: str
    listener: Listener


class ProductEventRegistry:
    """
    Listeners for product lifecycle events.

    Subscriptions are per product id or wildcard. Each subscription adds a
    reference for its product; a product leaves the registry when its last
    subscription is released. Subscribe/unsubscribe happen under one lock so
    counts never drift.
    """

    def __init__(self):
        self._lock = Lock()
        self._next_id = 0
        self._subs: Dict[str, Dict[int, Subscription]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, listener: Listener, product_id: str = WILDCARD) -> Subscription:
        with self._lock:
            self._next_id += 1
            sub = Subscription(self._next_id, product_id, listener)
            self._subs.setdefault(product_id, {})[sub.id] = sub
            return sub

    def unsubscribe(self, sub: Subscription) -> bool:
        with self._lock:
            subs = self._subs.get(sub.product_id)
            if not subs or sub.id not in subs:
                return False
            del subs[sub.id]
            if not subs:
                del self._subs[sub.product_id]
            return True

    def subscriber_count(self, product_id: str) -> int:
        with self._lock:
            return len(self._subs.get(product_id, {}))

    def watched_products(self) -> Set[str]:
        with self._lock:
            return {pid for pid in self._subs if pid != WILDCARD}

    def _listeners_for(self, product_id: str) -> List[Listener]:
        with self._lock:
            subs = list(self._subs.get(product_id, {}).values())
            subs += list(self._subs.get(WILDCARD, {}).values())
        return [s.listener for s in subs]

    async def publish(self, product_id: str, event: CatalogEventType) -> int:
        """Deliver an event to every matching listener; returns deliveries."""
        delivered = 0
        for listener in self._listeners_for(product_id):
            try:
                result = listener(product_id, event)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Product event listener failed",
                    product_id=product_id,
                    event_type=event.value,
                    error=str(e),
                )
        return delivered

    def publish_nowait(self, product_id: str, event: CatalogEventType) -> asyncio.Task:
        """Fire-and-forget publish from a running event loop."""
        task = asyncio.get_running_loop().create_task(self.publish(product_id, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight fire-and-forget deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# =============================================================================
# In-memory catalog
# =============================================================================

class InMemoryCatalog:
    """
    Catalog held in process memory.

    Usage:
        catalog = InMemoryCatalog.from_file(Path("seed.json"))
        product = await catalog.get_product(pid)
    """

    name = "in_memory"

    def __init__(self, products: Iterable[Product] = (), categories: Iterable[Category] = (),
                 events: Optional[ProductEventRegistry] = None):
        self._lock = Lock()
        self._products: Dict[str, Product] = {p.id: p for p in products}
        self._tree = CategoryTree(categories)
        self.events = events or ProductEventRegistry()

    @classmethod
    def from_document(cls, document: Mapping[str, Any],
                      events: Optional[ProductEventRegistry] = None) -> "InMemoryCatalog":
        return cls(
            products=[Product.from_dict(p) for p in document.get("products", [])],
            categories=[Category.from_dict(c) for c in document.get("categories", [])],
            events=events,
        )

    @classmethod
    def from_file(cls, path: Path, events: Optional[ProductEventRegistry] = None) -> "InMemoryCatalog":
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        catalog = cls.from_document(document, events)
        logger.info("Loaded catalog seed", path=str(path), products=len(catalog._products))
        return catalog

    # -- reads ---------------------------------------------------------------

    async def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def published_products(self) -> List[Product]:
        with self._lock:
            return [p for p in self._products.values() if p.is_published]

    async def live_ids(self, product_ids: Iterable[str]) -> Set[str]:
        with self._lock:
            return {
                pid for pid in product_ids
                if pid in self._products and self._products[pid].is_published
            }

    async def category_tree(self) -> CategoryTree:
        return self._tree

    async def maker_exists(self, maker_id: str) -> bool:
        with self._lock:
            return any(p.maker_id == maker_id for p in self._products.values())

    # -- writes (catalog side; used by seeding, tests and the events hook) -----

    def add_categories(self, categories: Iterable[Category]) -> None:
        with self._lock:
            merged = {c.id: c for c in self._tree.all()}
            merged.update({c.id: c for c in categories})
            self._tree = CategoryTree(merged.values())

    async def upsert_product(self, product: Product, notify: bool = True) -> None:
        with self._lock:
            previous = self._products.get(product.id)
            self._products[product.id] = product
        if notify:
            event = CatalogEventType.UPDATED
            if product.is_published and not (previous and previous.is_published):
                event = CatalogEventType.PUBLISHED
            elif previous and previous.is_published and not product.is_published:
                event = CatalogEventType.UNPUBLISHED
            self.events.publish_nowait(product.id, event)

    async def apply_event(self, product_id: str, event: CatalogEventType) -> bool:
        """
        Reflect a catalog event locally and publish it.

        Returns False when the product is unknown (the event is still
        published so caches drop stale entries).
        """
        known = True
        with self._lock:
            product = self._products.get(product_id)
            if product is None:
                known = False
            elif event == CatalogEventType.DELETED:
                del self._products[product_id]
            elif event == CatalogEventType.UNPUBLISHED:
                self._products[product_id] = _with_status(product, ProductStatus.ARCHIVED.value)
            elif event == CatalogEventType.PUBLISHED:
                self._products[product_id] = _with_status(product, ProductStatus.PUBLISHED.value)
        self.events.publish_nowait(product_id, event)
        return known

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "products": len(self._products),
            "categories": len(self._tree),
        }


def _with_status(product: Product, status: str) -> Product:
    return replace(product, status=status)


# =============================================================================
# Supabase catalog
# =============================================================================

class SupabaseCatalog:
    """
    Catalog read from Supabase tables.

    The published-product list is snapshotted for ``snapshot_seconds`` to
    keep generator fan-out from hammering PostgREST; liveness checks always
    go to the table.
    """

    name = "supabase"
    PAGE_SIZE = 1000
    COLUMNS = (
        "id,slug,status,category_id,tags,maker_id,created_at,upvote_count,"
        "view_count,bookmark_count,trending_score,name,tagline,thumbnail"
    )

    def __init__(self, client: Any, products_table: str = "products",
                 categories_table: str = "categories",
                 events: Optional[ProductEventRegistry] = None,
                 snapshot_seconds: float = 30.0):
        self._client = client
        self._products_table = products_table
        self._categories_table = categories_table
        self.events = events or ProductEventRegistry()
        self._snapshot_seconds = snapshot_seconds
        self._snapshot: Optional[List[Product]] = None
        self._snapshot_at = 0.0
        self._tree: Optional[CategoryTree] = None
        self._tree_at = 0.0

    async def _run(self, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.warning("Catalog call failed", error=str(e))
            raise DependencyUnavailable("Catalog unavailable") from e

    def invalidate_snapshot(self) -> None:
        self._snapshot = None

    async def get_product(self, product_id: str) -> Optional[Product]:
        found = await self.get_products([product_id])
        return found.get(product_id)

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        result = await self._run(
            lambda: self._client.table(self._products_table)
            .select(self.COLUMNS).in_("id", ids).execute()
        )
        products = [Product.from_dict(row) for row in result.data or []]
        return {p.id: p for p in products}

    async def published_products(self) -> List[Product]:
        if self._snapshot is not None and time.monotonic() - self._snapshot_at < self._snapshot_seconds:
            return self._snapshot
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            def page(offset=start):
                return (
                    self._client.table(self._products_table)
                    .select(self.COLUMNS)
                    .eq("status", ProductStatus.PUBLISHED.value)
                    .order("created_at", desc=True)
                    .range(offset, offset + self.PAGE_SIZE - 1)
                    .execute()
                )
            result = await self._run(page)
            data = result.data or []
            rows.extend(data)
            if len(data) < self.PAGE_SIZE:
                break
            start += self.PAGE_SIZE
        self._snapshot = [Product.from_dict(row) for row in rows]
        self._snapshot_at = time.monotonic()
        return self._snapshot

    async def live_ids(self, product_ids: Iterable[str]) -> Set[str]:
        found = await self.get_products(product_ids)
        return {pid for pid, p in found.items() if p.is_published}

    async def category_tree(self) -> CategoryTree:
        if self._tree is not None and time.monotonic() - self._tree_at < self._snapshot_seconds * 10:
            return self._tree
        result = await self._run(
            lambda: self._client.table(self._categories_table)
            .select("id,name,slug,parent_category,level").execute()
        )
        self._tree = CategoryTree(Category.from_dict(row) for row in result.data or [])
        self._tree_at = time.monotonic()
        return self._tree

    async def maker_exists(self, maker_id: str) -> bool:
        result = await self._run(
            lambda: self._client.table(self._products_table)
            .select("id").eq("maker_id", maker_id).limit(1).execute()
        )
        return bool(result.data)

    async def apply_event(self, product_id: str, event: CatalogEventType) -> bool:
        """The tables are owned elsewhere; drop the snapshot and publish."""
        self.invalidate_snapshot()
        self.events.publish_nowait(product_id, event)
        return True

    async def ping(self) -> bool:
        await self._run(
            lambda: self._client.table(self._products_table).select("id").limit(1).execute()
        )
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "products_table": self._products_table,
            "snapshot_size": len(self._snapshot or []),
        }
