"""
Tests for engagement quality scoring.
"""

import math

import pytest


class TestBaseScores:
    """Base score per interaction kind."""

    @pytest.mark.parametrize("kind,expected", [
        ("conversion", 10.0),
        ("bookmark", 8.0),
        ("upvote", 7.0),
        ("comment", 6.0),
        ("share", 5.0),
        ("click", 3.0),
        ("view", 2.0),
        ("impression", 1.0),
        ("dismiss", 0.0),
    ])
    def test_base_score_without_metadata(self, kind, expected):
        from recs.scorer import score_engagement

        assert score_engagement(kind) == expected

    def test_other_kinds_score_one(self):
        from recs.models import InteractionKind
        from recs.scorer import score_engagement

        assert score_engagement(InteractionKind.FEEDBACK) == 1.0
        assert score_engagement(InteractionKind.UNKNOWN) == 1.0
        assert score_engagement("remove_upvote") == 1.0
        assert score_engagement("something-new") == 1.0
        assert score_engagement(None) == 1.0

    def test_enum_and_string_agree(self):
        from recs.models import InteractionKind
        from recs.scorer import score_engagement

        assert score_engagement(InteractionKind.BOOKMARK) == score_engagement(" Bookmark ")


class TestAdjustments:
    """Metadata adjustments on top of the base score."""

    def test_view_with_time_and_scroll(self):
        """2 + min(4, 120/60) + 0.8*3 = 6.4"""
        from recs.scorer import score_engagement

        quality = score_engagement("view", {"timeOnPage": 120, "scrollDepth": 0.8})

        assert quality == pytest.approx(6.4)

    def test_snake_case_keys(self):
        from recs.scorer import score_engagement

        assert score_engagement("view", {"time_on_page": 120, "scroll_depth": 0.8}) == pytest.approx(6.4)

    def test_time_on_page_capped_at_four(self):
        from recs.scorer import score_engagement

        assert score_engagement("view", {"timeOnPage": 3600}) == pytest.approx(6.0)

    def test_session_duration_capped_at_three(self):
        from recs.scorer import score_engagement

        assert score_engagement("click", {"sessionDuration": 150}) == pytest.approx(3.5)
        assert score_engagement("click", {"sessionDuration": 99999}) == pytest.approx(6.0)

    def test_click_count_from_engagement_metrics(self):
        from recs.scorer import score_engagement

        assert score_engagement("click", {"engagementMetrics": {"clickCount": 1}}) == pytest.approx(4.0)
        assert score_engagement("click", {"engagementMetrics": {"clickCount": 9}}) == pytest.approx(5.0)

    def test_clamped_to_ten(self):
        from recs.scorer import score_engagement

        quality = score_engagement("conversion", {
            "timeOnPage": 600, "scrollDepth": 1.0, "sessionDuration": 900,
            "engagementMetrics": {"clickCount": 5},
        })

        assert quality == 10.0

    def test_dismiss_never_negative(self):
        from recs.scorer import score_engagement

        assert score_engagement("dismiss", {"timeOnPage": 0}) == 0.0

    def test_accepts_metadata_model(self):
        from recs.models import ViewMetadata
        from recs.scorer import score_engagement

        meta = ViewMetadata.model_validate({"timeOnPage": 120, "scrollDepth": 0.8, "source": "feed"})

        assert score_engagement("view", meta) == pytest.approx(6.4)

    def test_unknown_metadata_keys_ignored(self):
        from recs.scorer import score_engagement

        assert score_engagement("upvote", {"referrer": "newsletter", "experimentId": "e1"}) == 7.0


class TestMalformedMetadata:
    """Malformed adjustment fields fall back to the base score."""

    @pytest.mark.parametrize("metadata", [
        {"timeOnPage": -5},
        {"timeOnPage": "120"},
        {"scrollDepth": 1.5},
        {"scrollDepth": True},
        {"sessionDuration": float("nan")},
        {"timeOnPage": math.inf},
        {"engagementMetrics": "lots"},
        {"engagementMetrics": {"clickCount": -1}},
    ])
    def test_returns_base_only(self, metadata):
        from recs.scorer import score_engagement

        assert score_engagement("view", metadata) == 2.0

    def test_non_mapping_metadata(self):
        from recs.scorer import score_engagement

        assert score_engagement("click", ["not", "a", "dict"]) == 3.0
        assert score_engagement("click", "timeOnPage=5") == 3.0

    def test_always_within_bounds(self):
        from recs.models import InteractionKind
        from recs.scorer import score_engagement

        for kind in InteractionKind:
            for metadata in (None, {}, {"timeOnPage": 1e9, "scrollDepth": 1.0}):
                assert 0.0 <= score_engagement(kind, metadata) <= 10.0
