"""Tests for the spam & relevance gate."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from booking_orchestrator.services.spam_filter import (
    SPAM_MESSAGE,
    SUSPICIOUS_MESSAGE,
    InMemoryBehaviorStore,
    SpamScorer,
    SpamZone,
    behavior_tier,
    zone_for,
)
from booking_orchestrator.services.vector_store import VectorStoreError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scorer(embeddings, vector_store, clock):
    scorer = SpamScorer(embeddings, vector_store, clock=clock)
    scorer.add_irrelevant_examples(["Thời tiết hôm nay thế nào?"])
    return scorer


class TestZones:
    @pytest.mark.parametrize(
        ("score", "zone"),
        [(0.0, SpamZone.NORMAL), (0.29, SpamZone.NORMAL), (0.3, SpamZone.SUSPICIOUS),
         (0.69, SpamZone.SUSPICIOUS), (0.7, SpamZone.SPAM), (1.0, SpamZone.SPAM)],
    )
    def test_zone_boundaries(self, score, zone):
        assert zone_for(score) is zone

    def test_behavior_tiers(self):
        assert [behavior_tier(n) for n in (10, 11, 20, 21, 30, 31)] == [0.0, 0.1, 0.1, 0.3, 0.3, 0.5]

    def test_canned_replies_per_zone(self, scorer):
        normal = scorer.assess("Bệnh viện có khoa nhi không?", "s1")
        assert normal.zone is SpamZone.NORMAL
        assert normal.canned_reply is None


class TestContentScore:
    def test_off_topic_exemplar_scores_point_four(self, scorer):
        assert scorer.content_score("Thời tiết hôm nay thế nào?") == pytest.approx(0.4)

    def test_spam_pattern_and_bad_length_add_up(self, scorer):
        assert scorer.content_score("hack") == pytest.approx(0.3)
        assert scorer.content_score("ok") == pytest.approx(0.1)
        assert scorer.content_score("x" * 1001) == pytest.approx(0.1)

    def test_empty_text_counts_as_too_short(self, scorer):
        assert scorer.content_score("") == pytest.approx(0.1)
        assert scorer.content_score("  ") == pytest.approx(0.1)

    def test_medical_question_scores_zero(self, scorer):
        assert scorer.content_score("Tôi bị đau bụng, nên khám khoa nào?") == 0.0

    def test_vector_failure_fails_open(self, embeddings):
        broken = MagicMock()
        broken.search.side_effect = VectorStoreError("down")
        scorer = SpamScorer(embeddings, broken)
        assert scorer.is_irrelevant("Thời tiết hôm nay thế nào?") is False


class TestAssess:
    def test_off_topic_turn_is_normal_zone_on_its_own(self, scorer):
        # 0.6 * 0.4 = 0.24 stays below the suspicious threshold
        assessment = scorer.assess("Thời tiết hôm nay thế nào?", "s1")
        assert assessment.spam_score == pytest.approx(0.24)
        assert assessment.zone is SpamZone.NORMAL

    def test_off_topic_spam_pattern_is_suspicious(self, scorer):
        scorer.add_irrelevant_examples(["Làm sao để hack tài khoản Facebook?"])
        assessment = scorer.assess("Làm sao để hack tài khoản Facebook?", "s1")
        assert assessment.content_score == pytest.approx(0.7)
        assert assessment.zone is SpamZone.SUSPICIOUS
        assert assessment.canned_reply == SUSPICIOUS_MESSAGE

    def test_score_is_monotonic_in_request_rate(self, scorer):
        scores = [scorer.assess("Bệnh viện có khoa nhi không?", "s1").spam_score for _ in range(35)]
        assert scores == sorted(scores)

    def test_flood_forces_spam_after_thirty_requests(self, scorer):
        zones = [scorer.assess("Bệnh viện có khoa nhi không?", "s1").zone for _ in range(35)]
        assert zones[:30] == [SpamZone.NORMAL] * 30
        assert zones[30:] == [SpamZone.SPAM] * 5
        last = scorer.assess("Bệnh viện có khoa nhi không?", "s1")
        assert last.spam_score >= 0.7
        assert last.canned_reply == SPAM_MESSAGE

    def test_window_slides(self, scorer, clock):
        for _ in range(31):
            scorer.assess("Bệnh viện có khoa nhi không?", "s1")
        clock.now = 61.0
        assert scorer.assess("Bệnh viện có khoa nhi không?", "s1").zone is SpamZone.NORMAL

    def test_sessions_are_counted_separately(self, scorer):
        for _ in range(31):
            scorer.assess("Bệnh viện có khoa nhi không?", "s1")
        assert scorer.assess("Bệnh viện có khoa nhi không?", "s2").zone is SpamZone.NORMAL

    def test_reset_behavior_clears_counters(self, scorer):
        for _ in range(31):
            scorer.assess("Bệnh viện có khoa nhi không?", "s1")
        scorer.reset_behavior("s1")
        assert scorer.assess("Bệnh viện có khoa nhi không?", "s1").zone is SpamZone.NORMAL


class TestBehaviorStore:
    def test_idle_sessions_are_swept(self, embeddings, vector_store, clock):
        store = InMemoryBehaviorStore()
        scorer = SpamScorer(embeddings, vector_store, store, clock=clock)
        for i in range(50):
            scorer.assess("Bệnh viện có khoa nhi không?", f"session-{i}")
        assert store.tracked_sessions() == 50

        clock.now = 61.0
        scorer.assess("Bệnh viện có khoa nhi không?", "session-new")

        assert store.tracked_sessions() == 1

    def test_active_sessions_survive_a_sweep(self, clock):
        store = InMemoryBehaviorStore()
        store.record_request("busy", 0.0, 60.0)
        store.record_request("busy", 59.0, 60.0)
        store.record_request("idle", 0.0, 60.0)

        assert store.record_request("other", 61.0, 60.0) == 1
        assert store.tracked_sessions() == 2
        assert store.record_request("busy", 62.0, 60.0) == 2
