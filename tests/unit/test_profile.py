"""
Tests for affinity building and the profile service.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from recs.models import InteractionKind, UserProfile


class SlowCatalog:
    """Wraps a catalog, delaying or failing product lookups and counting them."""

    def __init__(self, inner, delay: float = 0.0, error: Exception = None):
        self.inner = inner
        self.delay = delay
        self.error = error
        self.lookups = 0
        self.events = inner.events

    async def get_products(self, ids):
        self.lookups += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return await self.inner.get_products(ids)

    async def category_tree(self):
        return await self.inner.category_tree()


@pytest.fixture
def profiles(interaction_log, catalog):
    from recs.profile import InMemoryProfileStore, ProfileService
    return ProfileService(InMemoryProfileStore(), interaction_log, catalog)


class TestBuildAffinities:
    """Decayed, normalized affinities."""

    async def _interactions(self, log, *specs):
        records = []
        for product_id, kind in specs:
            records.append(await log.append("u", product_id, kind))
        return records

    async def test_single_interaction_normalizes_to_one(self, interaction_log, catalog, clock, object_id, category_ids):
        from recs.profile import build_affinities

        records = await self._interactions(interaction_log, (object_id(2), InteractionKind.UPVOTE))
        products = await catalog.get_products([object_id(2)])
        tree = await catalog.category_tree()

        categories, tags, used = build_affinities(records, products, tree, clock())

        assert used == 1
        assert categories == {category_ids["ai"]: pytest.approx(1.0)}
        assert tags == {"llm": pytest.approx(1.0), "chatbot": pytest.approx(1.0)}

    async def test_subcategory_contributes_to_parent(self, interaction_log, catalog, clock, object_id, category_ids):
        from recs.profile import build_affinities

        # Product 4 sits in the APIs subcategory of Developer Tools
        records = await self._interactions(interaction_log, (object_id(4), InteractionKind.VIEW))
        products = await catalog.get_products([object_id(4)])

        categories, _, _ = build_affinities(records, products, await catalog.category_tree(), clock())

        assert set(categories) == {category_ids["dev_apis"], category_ids["dev"]}

    async def test_more_recent_interaction_contributes_more(self, interaction_log, catalog, clock, object_id, category_ids):
        """Two identical upvotes, ten days apart, on products in different categories."""
        from recs.profile import build_affinities

        older = await interaction_log.append("u", object_id(1), InteractionKind.UPVOTE)
        clock.advance(days=10)
        newer = await interaction_log.append("u", object_id(2), InteractionKind.UPVOTE)
        products = await catalog.get_products([object_id(1), object_id(2)])

        categories, _, _ = build_affinities([older, newer], products, await catalog.category_tree(), clock())

        assert categories[category_ids["ai"]] > categories[category_ids["dev"]]
        assert categories[category_ids["ai"]] + categories[category_ids["dev"]] == pytest.approx(1.0)
        # Ten days at a 14 day half-life
        ratio = categories[category_ids["dev"]] / categories[category_ids["ai"]]
        assert ratio == pytest.approx(0.5 ** (10 / 14), rel=1e-3)

    async def test_ignores_dismissals_and_unknown_products(self, interaction_log, catalog, clock, object_id):
        from recs.profile import build_affinities

        records = await self._interactions(
            interaction_log,
            (object_id(1), InteractionKind.DISMISS),
            (object_id(1), InteractionKind.REMOVE_UPVOTE),
            ("f" * 24, InteractionKind.UPVOTE),
        )
        products = await catalog.get_products([object_id(1)])

        assert build_affinities(records, products, await catalog.category_tree(), clock()) == ({}, {}, 0)

    async def test_overrides_multiply(self, interaction_log, catalog, clock, object_id, category_ids):
        from recs.profile import build_affinities

        records = await self._interactions(
            interaction_log, (object_id(1), InteractionKind.VIEW), (object_id(2), InteractionKind.VIEW)
        )
        products = await catalog.get_products([object_id(1), object_id(2)])

        categories, tags, _ = build_affinities(
            records, products, await catalog.category_tree(), clock(),
            category_overrides={category_ids["dev"]: 2.0},
            tag_overrides={"llm": 0.0},
        )

        assert categories[category_ids["dev"]] == pytest.approx(2 * categories[category_ids["ai"]])
        assert "llm" not in tags

    async def test_top_k_truncation(self, interaction_log, catalog, clock, object_id):
        from recs.profile import AffinityConfig, build_affinities

        records = await self._interactions(
            interaction_log,
            (object_id(1), InteractionKind.UPVOTE),
            (object_id(2), InteractionKind.VIEW),
            (object_id(3), InteractionKind.VIEW),
        )
        products = await catalog.get_products([object_id(1), object_id(2), object_id(3)])

        categories, tags, _ = build_affinities(
            records, products, await catalog.category_tree(), clock(),
            AffinityConfig(category_top_k=1, tag_top_k=2),
        )

        assert len(categories) == 1
        assert len(tags) == 2
        assert set(tags) == {"api", "cli"}


class TestProfileService:
    """Lazy creation, freshness, coalescing, budgets."""

    async def test_no_interactions_gives_empty_profile_and_no_record(self, profiles):
        profile = await profiles.get_profile("newcomer")

        assert profile.category_affinities == {}
        assert profile.tag_affinities == {}
        assert await profiles.peek("newcomer") is None

    async def test_anonymous_without_key(self, profiles):
        profile = await profiles.get_profile(None)

        assert profile.user_id == "anonymous"
        assert not profile.has_affinities

    async def test_rebuild_persists_profile(self, profiles, interaction_log, object_id, category_ids):
        await interaction_log.append("u", object_id(3), InteractionKind.BOOKMARK)

        profile = await profiles.get_profile("u")
        stored = await profiles.peek("u")

        assert profile.category_affinities == {category_ids["design"]: pytest.approx(1.0)}
        assert stored is not None
        assert stored.interaction_count == 1
        assert stored.last_rebuilt is not None

    async def test_fresh_profile_not_rebuilt(self, interaction_log, catalog, object_id):
        from recs.profile import InMemoryProfileStore, ProfileService

        slow = SlowCatalog(catalog)
        profiles = ProfileService(InMemoryProfileStore(), interaction_log, slow)
        await interaction_log.append("u", object_id(1), InteractionKind.VIEW)

        await profiles.get_profile("u")
        await profiles.get_profile("u")

        assert slow.lookups == 1

    async def test_stale_profile_rebuilt(self, interaction_log, catalog, clock, object_id):
        from recs.profile import InMemoryProfileStore, ProfileService

        slow = SlowCatalog(catalog)
        profiles = ProfileService(InMemoryProfileStore(), interaction_log, slow, fresh_seconds=60)
        await interaction_log.append("u", object_id(1), InteractionKind.VIEW)

        await profiles.get_profile("u")
        clock.advance(minutes=2)
        await profiles.get_profile("u")

        assert slow.lookups == 2

    async def test_concurrent_requests_share_one_rebuild(self, interaction_log, catalog, object_id):
        from recs.profile import InMemoryProfileStore, ProfileService

        slow = SlowCatalog(catalog, delay=0.05)
        profiles = ProfileService(InMemoryProfileStore(), interaction_log, slow, build_budget_ms=1000)
        await interaction_log.append("u", object_id(1), InteractionKind.UPVOTE)

        results = await asyncio.gather(*(profiles.get_profile("u") for _ in range(5)))

        assert slow.lookups == 1
        assert all(r.has_affinities for r in results)

    async def test_over_budget_serves_stale_then_finishes(self, interaction_log, catalog, clock, object_id, category_ids):
        from recs.profile import InMemoryProfileStore, ProfileService

        store = InMemoryProfileStore()
        await store.put(UserProfile(
            user_id="u",
            category_affinities={category_ids["design"]: 1.0},
            last_rebuilt=clock() - timedelta(hours=1),
        ))
        slow = SlowCatalog(catalog, delay=0.2)
        profiles = ProfileService(store, interaction_log, slow, build_budget_ms=20)
        await interaction_log.append("u", object_id(2), InteractionKind.UPVOTE)

        served = await profiles.get_profile("u")
        assert served.category_affinities == {category_ids["design"]: 1.0}

        await profiles.drain()
        rebuilt = await profiles.peek("u")
        assert rebuilt.category_affinities == {category_ids["ai"]: pytest.approx(1.0)}

    async def test_failed_rebuild_serves_degraded_empty_profile(self, interaction_log, catalog, object_id):
        from core.errors import DependencyUnavailable
        from recs.profile import InMemoryProfileStore, ProfileService

        broken = SlowCatalog(catalog, error=DependencyUnavailable("Catalog unavailable"))
        profiles = ProfileService(InMemoryProfileStore(), interaction_log, broken)
        await interaction_log.append("u", object_id(1), InteractionKind.UPVOTE)

        profile = await profiles.get_profile("u")

        assert profile.degraded is True
        assert not profile.has_affinities

    async def test_store_failure_serves_degraded_profile(self, interaction_log, catalog):
        from core.errors import DependencyUnavailable
        from recs.profile import ProfileService

        store = AsyncMock()
        store.get.side_effect = DependencyUnavailable("Profile store unavailable")
        profiles = ProfileService(store, interaction_log, catalog)

        profile = await profiles.get_profile("u")

        assert profile.degraded is True

    async def test_user_settings_survive_rebuild(self, profiles, interaction_log, object_id):
        def mutate(profile):
            profile.dismissed_products.add(object_id(5))
            profile.personalization_enabled = False

        await profiles.update("u", mutate)
        await interaction_log.append("u", object_id(1), InteractionKind.UPVOTE)

        rebuilt = await profiles.rebuild("u")

        assert rebuilt.has_affinities
        assert rebuilt.dismissed_products == {object_id(5)}
        assert rebuilt.personalization_enabled is False

    async def test_store_copies_are_isolated(self, profiles):
        created = await profiles.update("u", lambda p: p.disabled_strategies.add("trending"))
        created.disabled_strategies.add("new")

        stored = await profiles.peek("u")

        assert stored.disabled_strategies == {"trending"}

    async def test_user_locks_are_released(self, profiles, interaction_log, object_id):
        for n in range(20):
            await interaction_log.append(f"user-{n}", object_id(1), InteractionKind.VIEW)
            await profiles.rebuild(f"user-{n}")
            await profiles.update(f"user-{n}", lambda p: p.disabled_strategies.add("new"))

        assert profiles._locks == {}
        assert profiles._lock_users == {}

    async def test_concurrent_updates_serialize_and_release(self, profiles):
        async def add(name):
            def mutate(profile):
                profile.disabled_strategies.add(name)
            await profiles.update("u", mutate)

        await asyncio.gather(*(add(name) for name in ("trending", "new", "similar")))

        stored = await profiles.peek("u")
        assert stored.disabled_strategies == {"trending", "new", "similar"}
        assert "u" not in profiles._locks


class TestScaleOverride:
    def test_multiplies_and_clamps(self):
        from recs.profile import scale_override

        weights = scale_override({"a": 3.5}, ["a", "b"], 1.25, 0.05, 4.0)

        assert weights == {"a": 4.0, "b": 1.25}
        assert scale_override({"a": 0.06}, ["a"], 0.5, 0.05, 4.0) == {"a": 0.05}


class TestRedisProfileStore:
    """Redis store against a mocked asyncio client."""

    async def test_round_trip(self):
        from recs.profile import RedisProfileStore

        saved = {}
        client = AsyncMock()
        client.set.side_effect = lambda key, value, ex=None: saved.__setitem__(key, value)
        client.get.side_effect = lambda key: saved.get(key)
        store = RedisProfileStore(client)

        await store.put(UserProfile(user_id="u", tag_affinities={"ai": 0.5}, dismissed_products={"x"}))
        loaded = await store.get("u")

        assert "recs:profile:u" in saved
        assert json.loads(saved["recs:profile:u"])["tag_affinities"] == {"ai": 0.5}
        assert loaded.tag_affinities == {"ai": 0.5}
        assert loaded.dismissed_products == {"x"}

    async def test_connection_error_is_dependency_unavailable(self):
        from core.errors import DependencyUnavailable
        from recs.profile import RedisProfileStore

        client = AsyncMock()
        client.get.side_effect = ConnectionError("refused")

        with pytest.raises(DependencyUnavailable):
            await RedisProfileStore(client).get("u")
