"""
Tests for the interaction log.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from recs.models import InteractionKind, Strategy


PRODUCT_A = "a" * 24
PRODUCT_B = "b" * 24


class TestAppend:
    """Scoring, validation and timestamps on write."""

    async def test_append_scores_record(self, interaction_log):
        record = await interaction_log.append(
            "user-1", PRODUCT_A, InteractionKind.VIEW,
            strategy=Strategy.TRENDING,
            metadata={"timeOnPage": 120, "scrollDepth": 0.8},
        )

        assert record.quality == pytest.approx(6.4)
        assert record.strategy == Strategy.TRENDING
        assert record.user_key == "user-1"
        assert len(record.id) == 24

    async def test_append_requires_kind_user_and_product(self, interaction_log):
        from core.errors import ValidationError

        with pytest.raises(ValidationError):
            await interaction_log.append("user-1", PRODUCT_A, None)
        with pytest.raises(ValidationError):
            await interaction_log.append(None, PRODUCT_A, InteractionKind.VIEW)
        with pytest.raises(ValidationError):
            await interaction_log.append("user-1", "", InteractionKind.VIEW)
        with pytest.raises(ValidationError):
            await interaction_log.append("user-1", PRODUCT_A, InteractionKind.VIEW, position=-1)

        assert await interaction_log.count() == 0

    async def test_timestamps_strictly_increase(self, interaction_log):
        """The clock stands still; stored order still follows write order."""
        first = await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        second = await interaction_log.append("u", PRODUCT_A, InteractionKind.CLICK)
        third = await interaction_log.append("u", PRODUCT_B, InteractionKind.UPVOTE)

        assert first.timestamp < second.timestamp < third.timestamp

    async def test_metadata_is_copied(self, interaction_log):
        metadata = {"source": "feed"}
        record = await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW, metadata=metadata)
        metadata["source"] = "changed"

        assert record.metadata["source"] == "feed"


class TestQueries:
    """Range queries by user, product and strategy."""

    async def test_query_by_user_newest_first(self, interaction_log, clock):
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        clock.advance(minutes=5)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.CLICK)
        await interaction_log.append("other", PRODUCT_B, InteractionKind.CLICK)

        records = await interaction_log.query_by_user("u").to_list()

        assert [r.product_id for r in records] == [PRODUCT_B, PRODUCT_A]

    async def test_query_by_user_kind_filter(self, interaction_log):
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        await interaction_log.append("u", PRODUCT_A, InteractionKind.UPVOTE)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.IMPRESSION)

        records = await interaction_log.query_by_user(
            "u", kinds=[InteractionKind.UPVOTE, InteractionKind.VIEW]
        ).to_list()

        assert {r.kind for r in records} == {InteractionKind.UPVOTE, InteractionKind.VIEW}

    async def test_query_by_user_time_window(self, interaction_log, clock):
        start = clock()
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        clock.advance(days=2)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.VIEW)

        recent = await interaction_log.query_by_user("u", since=start + timedelta(days=1)).to_list()
        older = await interaction_log.query_by_user("u", until=start + timedelta(days=1)).to_list()

        assert [r.product_id for r in recent] == [PRODUCT_B]
        assert [r.product_id for r in older] == [PRODUCT_A]

    async def test_query_by_product(self, interaction_log):
        await interaction_log.append("u1", PRODUCT_A, InteractionKind.UPVOTE)
        await interaction_log.append("u2", PRODUCT_A, InteractionKind.BOOKMARK)
        await interaction_log.append("u2", PRODUCT_B, InteractionKind.UPVOTE)

        records = await interaction_log.query_by_product(PRODUCT_A).to_list()

        assert [r.user_key for r in records] == ["u2", "u1"]

    async def test_query_by_strategy(self, interaction_log):
        await interaction_log.append("u", PRODUCT_A, InteractionKind.CLICK, strategy=Strategy.TRENDING)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.CLICK, strategy=Strategy.NEW)

        records = await interaction_log.query_by_strategy(Strategy.TRENDING, InteractionKind.CLICK).to_list()

        assert [r.product_id for r in records] == [PRODUCT_A]

    async def test_stream_is_restartable(self, interaction_log):
        """Iterating again sees records appended in between."""
        stream = interaction_log.query_by_user("u")
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        assert len(await stream.to_list()) == 1

        await interaction_log.append("u", PRODUCT_B, InteractionKind.VIEW)
        assert len(await stream.to_list()) == 2

    async def test_to_list_limit(self, interaction_log):
        for _ in range(5):
            await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)

        assert len(await interaction_log.query_by_user("u").to_list(limit=3)) == 3


class TestRetention:
    """Nothing older than the retention window is ever returned."""

    async def test_reads_hide_expired_records(self, interaction_log, clock):
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        clock.advance(days=91)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.VIEW)

        records = await interaction_log.query_by_user("u").to_list()
        explicit = await interaction_log.query_by_user("u", since=clock() - timedelta(days=365)).to_list()

        assert [r.product_id for r in records] == [PRODUCT_B]
        assert [r.product_id for r in explicit] == [PRODUCT_B]

    async def test_purge_is_idempotent(self, interaction_log, clock):
        await interaction_log.append("u", PRODUCT_A, InteractionKind.VIEW)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.VIEW)
        clock.advance(days=91)
        await interaction_log.append("u", PRODUCT_B, InteractionKind.CLICK)

        assert await interaction_log.purge_expired() == 2
        assert await interaction_log.purge_expired() == 0
        assert await interaction_log.count() == 1
        assert len(await interaction_log.query_by_product(PRODUCT_A).to_list()) == 0


class TestAggregate:
    """Grouped counts and average quality."""

    async def test_group_by_strategy_and_kind(self, interaction_log):
        await interaction_log.append("u1", PRODUCT_A, InteractionKind.IMPRESSION, strategy=Strategy.TRENDING)
        await interaction_log.append("u2", PRODUCT_A, InteractionKind.IMPRESSION, strategy=Strategy.TRENDING)
        await interaction_log.append("u1", PRODUCT_A, InteractionKind.CLICK, strategy=Strategy.TRENDING)

        rows = await interaction_log.aggregate(("strategy", "kind"))

        assert rows[0].to_dict() == {"strategy": "trending", "kind": "impression", "count": 2, "avgQuality": 1.0}
        assert rows[1].key("kind") == "click"
        assert rows[1].avg_quality == pytest.approx(3.0)

    async def test_kind_filter_and_since(self, interaction_log, clock):
        await interaction_log.append("u1", PRODUCT_A, InteractionKind.UPVOTE)
        clock.advance(days=10)
        since = clock() - timedelta(days=1)
        await interaction_log.append("u2", PRODUCT_A, InteractionKind.UPVOTE)
        await interaction_log.append("u2", PRODUCT_B, InteractionKind.VIEW)

        rows = await interaction_log.aggregate(("product",), since=since, kinds=[InteractionKind.UPVOTE])

        assert [(r.key("product"), r.count) for r in rows] == [(PRODUCT_A, 1)]

    async def test_invalid_grouping(self, interaction_log):
        from core.errors import ValidationError

        with pytest.raises(ValidationError):
            await interaction_log.aggregate(("country",))
        with pytest.raises(ValidationError):
            await interaction_log.aggregate(())


class TestSupabaseBackend:
    """Supabase backend against a mocked client."""

    def _client(self, rows):
        client = MagicMock()
        query = client.table.return_value.select.return_value
        for method in ("eq", "gte", "lte", "order", "range"):
            getattr(query, method).return_value = query
        query.execute.return_value.data = rows
        return client, query

    async def test_fetch_by_user_maps_rows(self, clock):
        from recs.interaction_log import SupabaseInteractionBackend

        row = {
            "id": "rec-1", "user_key": "u", "user_id": "u", "client_id": None,
            "product_id": PRODUCT_A, "interaction_type": "view",
            "recommendation_type": "similar-products", "position": 2,
            "metadata": {"source": "feed"}, "engagement_quality": 2.0,
            "created_at": "2024-06-01T10:00:00Z",
        }
        client, query = self._client([row])
        backend = SupabaseInteractionBackend(client, "recommendation_interactions")

        records = await backend.fetch_by_user("u", clock() - timedelta(days=90), None)

        assert len(records) == 1
        assert records[0].kind == InteractionKind.VIEW
        assert records[0].strategy == Strategy.SIMILAR
        client.table.assert_called_with("recommendation_interactions")
        query.eq.assert_called_with("user_key", "u")

    async def test_insert_failure_is_dependency_unavailable(self):
        from core.errors import DependencyUnavailable
        from recs.interaction_log import InteractionLog, SupabaseInteractionBackend

        client = MagicMock()
        client.table.return_value.insert.return_value.execute.side_effect = ConnectionError("down")
        log = InteractionLog(SupabaseInteractionBackend(client))

        with pytest.raises(DependencyUnavailable):
            await log.append("u", PRODUCT_A, InteractionKind.VIEW)

    async def test_insert_writes_row(self):
        from recs.interaction_log import InteractionLog, SupabaseInteractionBackend

        client = MagicMock()
        log = InteractionLog(SupabaseInteractionBackend(client, "events"))

        record = await log.append("u", PRODUCT_A, InteractionKind.UPVOTE, strategy=Strategy.NEW)

        client.table.assert_called_with("events")
        row = client.table.return_value.insert.call_args[0][0]
        assert row["interaction_type"] == "upvote"
        assert row["recommendation_type"] == "new"
        assert row["engagement_quality"] == 7.0
        assert row["id"] == record.id
