"""
Tests for the candidate generators.
"""

from datetime import datetime, timedelta, timezone

import pytest

from recs.models import InteractionKind, UserProfile


@pytest.fixture
def now(clock):
    """Query time an hour after the sample catalog was built; the log agrees."""
    current = datetime.now(timezone.utc) + timedelta(hours=1)
    clock.set(current)
    return current


@pytest.fixture
def generators(catalog, interaction_log):
    from recs.generators import build_generators
    return build_generators(catalog, interaction_log)


def _query(now, **kwargs):
    from recs.generators import GeneratorQuery
    return GeneratorQuery(now=now, **kwargs)


def _ids(candidates):
    return [c.product_id for c in candidates]


class TestHelpers:
    def test_recency(self):
        from recs.generators import recency

        assert recency(0) == 1.0
        assert recency(7) == pytest.approx(0.5)
        assert recency(-3) == 1.0

    def test_tag_jaccard(self):
        from recs.generators import tag_jaccard

        assert tag_jaccard({"x", "y"}, {"x"}) == pytest.approx(0.5)
        assert tag_jaccard(set(), set()) == 0.0


class TestTrending:
    """In-window engagement with counter fallback."""

    async def test_counter_fallback_when_log_is_quiet(self, generators, now, object_id):
        candidates = await generators["trending"].generate(_query(now), 5)

        assert _ids(candidates)[:3] == [object_id(1), object_id(2), object_id(3)]
        assert object_id(99) not in _ids(candidates)
        assert candidates[0].strategy == "trending"
        assert candidates[0].explanation.startswith("Trending: 120 upvotes")

    async def test_window_counts_from_log(self, generators, interaction_log, now, object_id):
        for _ in range(3):
            await interaction_log.append("u", object_id(7), InteractionKind.UPVOTE)
        await interaction_log.append("u", object_id(9), InteractionKind.UPVOTE)

        candidates = await generators["trending"].generate(_query(now), 4)

        assert _ids(candidates)[:2] == [object_id(7), object_id(9)]
        assert candidates[0].explanation == "Trending: 3 upvotes in the last 7 days"
        assert candidates[0].components["relevance"] == 1.0

    async def test_one_logged_view_keeps_counter_ranking(self, generators, interaction_log, now, object_id):
        """Products the log has not seen keep their counter order below it."""
        await interaction_log.append("u", object_id(12), InteractionKind.VIEW)

        candidates = await generators["trending"].generate(_query(now), 5)

        assert _ids(candidates) == [object_id(12), object_id(1), object_id(2), object_id(3), object_id(4)]
        assert candidates[1].explanation.startswith("Trending: 120 upvotes")
        scores = [c.score for c in candidates]
        assert scores == sorted(scores, reverse=True)
        assert scores[1] < scores[0]

    async def test_window_is_clamped(self, generators, now):
        candidates = await generators["trending"].generate(_query(now, window_days=45), 1)

        assert "last 30 days" in candidates[0].explanation

    async def test_exclude_and_filters(self, generators, now, object_id, category_ids):
        candidates = await generators["trending"].generate(
            _query(now, exclude=frozenset({object_id(2)}), category_id=category_ids["ai"]), 10
        )

        assert _ids(candidates) == [object_id(6), object_id(10)]

    async def test_deterministic(self, generators, now):
        first = await generators["trending"].generate(_query(now), 12)
        second = await generators["trending"].generate(_query(now), 12)

        assert _ids(first) == _ids(second)


class TestDiversifiedTrending:
    async def test_round_robin_over_categories(self, make_product, categories, interaction_log, now, object_id, category_ids):
        from recs.catalog import InMemoryCatalog
        from recs.generators import DiversifiedTrendingGenerator

        products = [
            make_product(1, category_ids["dev"], upvotes=100, now=now),
            make_product(2, category_ids["dev"], upvotes=90, now=now),
            make_product(3, category_ids["dev"], upvotes=80, now=now),
            make_product(4, category_ids["ai"], upvotes=10, now=now),
        ]
        generator = DiversifiedTrendingGenerator(InMemoryCatalog(products, categories), interaction_log)

        candidates = await generator.generate(_query(now), 4)

        assert _ids(candidates) == [object_id(1), object_id(4), object_id(2), object_id(3)]
        assert [c.score for c in candidates] == sorted((c.score for c in candidates), reverse=True)


class TestNew:
    async def test_newest_first_inside_window(self, generators, now, object_id):
        candidates = await generators["new"].generate(_query(now, window_days=2), 10)

        assert _ids(candidates) == [object_id(n) for n in range(1, 6)]
        assert candidates[0].explanation == "Launched today"


class TestSimilar:
    """Tag overlap, category match and popularity against a seed."""

    async def test_similar_skips_unpublished(self, make_product, categories, interaction_log, now, object_id, category_ids):
        from recs.catalog import InMemoryCatalog
        from recs.generators import SimilarGenerator

        seed = make_product(1, category_ids["dev"], tags={"x", "y"}, now=now)
        c1 = make_product(2, category_ids["ai"], tags={"x", "y"}, upvotes=5, now=now)
        c2 = make_product(3, category_ids["ai"], tags={"x"}, upvotes=5, now=now)
        c3 = make_product(4, category_ids["ai"], tags={"x", "y"}, upvotes=50, status="Unpublished", now=now)
        unrelated = make_product(5, category_ids["design"], tags={"z"}, upvotes=100, now=now)
        generator = SimilarGenerator(InMemoryCatalog([seed, c1, c2, c3, unrelated], categories), interaction_log)

        candidates = await generator.generate(_query(now, seed_product_id=object_id(1)), 5)

        assert _ids(candidates) == [object_id(2), object_id(3)]

    async def test_scores_and_explanations(self, generators, now, object_id):
        candidates = await generators["similar"].generate(_query(now, seed_product_id=object_id(1)), 10)

        assert _ids(candidates) == [object_id(n) for n in (5, 9, 4, 8, 12)]
        assert candidates[0].score == pytest.approx(0.5 + 0.3 + 0.2 * 80 / 120)
        assert candidates[0].explanation == "Shares tags api, cli with Product 1"
        assert candidates[2].explanation == "Shares tags api with Product 1"

    async def test_unknown_seed(self, generators, now):
        from core.errors import NotFound

        with pytest.raises(NotFound):
            await generators["similar"].generate(_query(now, seed_product_id="f" * 24), 5)


class TestListings:
    """Category, maker and tag listings."""

    async def test_category_includes_subcategories(self, generators, now, object_id, category_ids):
        candidates = await generators["category"].generate(_query(now, category_id=category_ids["dev"]), 10)

        assert _ids(candidates) == [object_id(n) for n in (1, 4, 5, 8, 9, 12)]
        assert candidates[0].explanation == "Popular in Developer Tools"

    async def test_unknown_category(self, generators, now):
        from core.errors import NotFound

        with pytest.raises(NotFound):
            await generators["category"].generate(_query(now, category_id="f" * 24), 10)

    async def test_maker(self, generators, now, object_id):
        candidates = await generators["maker"].generate(_query(now, maker_id=object_id(0x1000 + 3)), 10)

        assert _ids(candidates) == [object_id(3)]
        assert candidates[0].explanation == "More from this maker"

    async def test_unknown_maker(self, generators, now, object_id):
        from core.errors import NotFound

        with pytest.raises(NotFound):
            await generators["maker"].generate(_query(now, maker_id=object_id(0x9999)), 10)

    async def test_tag(self, generators, now, object_id):
        candidates = await generators["tag"].generate(_query(now, tags=("rest",)), 10)

        assert _ids(candidates) == [object_id(4), object_id(8), object_id(12)]
        assert candidates[0].explanation == "Tagged rest"


class TestHistory:
    async def test_similar_to_recent_views(self, generators, interaction_log, now, object_id):
        await interaction_log.append("u", object_id(1), InteractionKind.VIEW)

        candidates = await generators["history"].generate(_query(now, user_key="u"), 3)

        assert _ids(candidates) == [object_id(5), object_id(9), object_id(4)]
        assert all(c.explanation == "Because you looked at Product 1" for c in candidates)
        assert candidates[0].strategy == "history"

    async def test_no_history(self, generators, now):
        assert await generators["history"].generate(_query(now, user_key="u"), 3) == []
        assert await generators["history"].generate(_query(now), 3) == []


class TestCollaborative:
    async def test_co_engagement(self, generators, interaction_log, now, object_id):
        await interaction_log.append("u", object_id(1), InteractionKind.UPVOTE)
        await interaction_log.append("v", object_id(1), InteractionKind.UPVOTE)
        await interaction_log.append("v", object_id(2), InteractionKind.VIEW)
        await interaction_log.append("v", object_id(3), InteractionKind.BOOKMARK)
        await interaction_log.append("w", object_id(1), InteractionKind.BOOKMARK)
        await interaction_log.append("w", object_id(2), InteractionKind.VIEW)

        candidates = await generators["collaborative"].generate(_query(now, user_key="u"), 5)

        assert _ids(candidates) == [object_id(3), object_id(2)]
        assert candidates[1].explanation == "Liked by 2 people with similar taste"
        assert candidates[0].explanation == "Liked by 1 person with similar taste"

    async def test_without_seeds(self, generators, interaction_log, now, object_id):
        await interaction_log.append("u", object_id(1), InteractionKind.VIEW)

        assert await generators["collaborative"].generate(_query(now, user_key="u"), 5) == []
        assert await generators["collaborative"].generate(_query(now), 5) == []


class TestInterests:
    """Affinity scoring with trending fallback and top-up."""

    async def test_affinity_matches_then_trending_top_up(self, generators, now, object_id, category_ids):
        profile = UserProfile(user_id="u", category_affinities={category_ids["ai"]: 1.0})

        candidates = await generators["interests"].generate(_query(now, user_key="u", profile=profile), 5)

        assert _ids(candidates)[:3] == [object_id(2), object_id(6), object_id(10)]
        assert _ids(candidates)[3:] == [object_id(1), object_id(3)]
        assert max(c.score for c in candidates[3:]) < min(c.score for c in candidates[:3])
        assert candidates[0].explanation == "Matches your interest in Artificial Intelligence"

    async def test_tag_affinity_explanation(self, generators, now, object_id):
        profile = UserProfile(user_id="u", tag_affinities={"figma": 1.0})

        candidates = await generators["interests"].generate(_query(now, user_key="u", profile=profile), 1)

        assert _ids(candidates) == [object_id(3)]
        assert candidates[0].explanation == "Tagged figma, which you engage with"

    async def test_empty_profile_delegates_to_trending(self, generators, now):
        profile = UserProfile(user_id="u")

        interests = await generators["interests"].generate(_query(now, profile=profile), 5)
        trending = await generators["trending"].generate(_query(now), 5)

        assert _ids(interests) == _ids(trending)

    async def test_personalization_disabled(self, generators, now, category_ids):
        profile = UserProfile(
            user_id="u",
            category_affinities={category_ids["ai"]: 1.0},
            personalization_enabled=False,
        )

        interests = await generators["interests"].generate(_query(now, profile=profile), 3)
        trending = await generators["trending"].generate(_query(now), 3)

        assert _ids(interests) == _ids(trending)


class TestRegistry:
    def test_all_generators_registered(self, catalog, interaction_log):
        from recs.generators import build_generators

        names = set(build_generators(catalog, interaction_log))

        assert names == {
            "trending", "diversified_trending", "new", "similar", "category",
            "maker", "tag", "history", "collaborative", "interests",
        }
