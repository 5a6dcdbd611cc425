import logging
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from matchpicks import cache, db
from matchpicks.exceptions import ConsistencyConflict, NotFound, PreconditionFailed
from matchpicks.models import GroupMember, GroupRanking, Match, Prediction, ScoringRule
from matchpicks.models.match import MatchStatus
from matchpicks.services.ranking_service import (
    RankingPropagator,
    ScoringResult,
    get_ranking_propagator,
)
from matchpicks.utils.cache_utils import rankings_cache_key
from matchpicks.utils.locks import GroupLockRegistry
from matchpicks.utils.scoring import RuleCategory


def member_total(group, user):
    return db.session.execute(
        select(GroupMember.total_points).where(
            GroupMember.group_id == group.id, GroupMember.user_id == user.id
        )
    ).scalar_one()


def ranking_for(group, user):
    return db.session.execute(
        select(GroupRanking).where(
            GroupRanking.group_id == group.id, GroupRanking.user_id == user.id
        )
    ).scalar_one_or_none()


def set_rule_points(group, category, points):
    db.session.execute(
        update(ScoringRule)
        .where(ScoringRule.group_id == group.id, ScoringRule.category == category)
        .values(points=points)
    )
    db.session.commit()


class TestFinalizeMatchScoring:
    def test_points_accumulate_in_member_and_ranking(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        exact = factory.finished_match(2, 0)
        winner = factory.finished_match(1, 0)
        factory.prediction(group, user, exact, 2, 0)
        factory.prediction(group, user, winner, 3, 1)

        first = propagator.finalize_match_scoring(exact.id)
        second = propagator.finalize_match_scoring(winner.id)

        assert first.predictions_scored == 1
        assert second.predictions_scored == 1
        assert member_total(group, user) == 8

        ranking = ranking_for(group, user)
        assert ranking.total_points == 8
        assert ranking.total_predictions == 2
        assert ranking.correct_predictions == 2
        assert ranking.rank == 1

    def test_result_and_prediction_points(self, factory, propagator):
        group = factory.group()
        hit = factory.member(group)
        miss = factory.member(group)
        match = factory.finished_match(1, 2)
        p_hit = factory.prediction(group, hit, match, 0, 1)
        p_miss = factory.prediction(group, miss, match, 2, 0)

        result = propagator.finalize_match_scoring(match.id)

        assert isinstance(result, ScoringResult)
        assert result.to_dict() == {
            "match_id": match.id,
            "predictions_scored": 2,
            "groups_updated": [group.id],
            "already_scored": False,
        }
        assert db.session.get(Prediction, p_hit.id).points_earned == 3
        assert db.session.get(Prediction, p_miss.id).points_earned == 0

        missed = ranking_for(group, miss)
        assert missed.total_points == 0
        assert missed.total_predictions == 1
        assert missed.correct_predictions == 0
        assert db.session.get(Match, match.id).scored_at is not None

    def test_finalizing_twice_changes_nothing(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        match = factory.finished_match(2, 2)
        factory.prediction(group, user, match, 2, 2)

        propagator.finalize_match_scoring(match.id)
        again = propagator.finalize_match_scoring(match.id)

        assert again.already_scored is True
        assert again.predictions_scored == 0
        assert again.groups_updated == []
        assert member_total(group, user) == 5
        ranking = ranking_for(group, user)
        assert ranking.total_points == 5
        assert ranking.total_predictions == 1

    def test_strict_mode_reports_double_finalization(self, factory, propagator):
        group = factory.group()
        match = factory.finished_match(0, 0)
        factory.prediction(group, factory.member(group), match, 0, 0)

        propagator.finalize_match_scoring(match.id)

        with pytest.raises(ConsistencyConflict):
            propagator.finalize_match_scoring(match.id, strict=True)

    def test_competition_ranks_with_ties(self, factory, propagator):
        group = factory.group()
        a, b, c, d = (factory.member(group) for _ in range(4))

        first = factory.finished_match(2, 0)
        factory.prediction(group, a, first, 2, 0)
        factory.prediction(group, b, first, 2, 0)
        factory.prediction(group, c, first, 3, 1)
        propagator.finalize_match_scoring(first.id)

        assert [ranking_for(group, u).rank for u in (a, b, c)] == [1, 1, 3]

        second = factory.finished_match(0, 0)
        factory.prediction(group, d, second, 1, 1)
        propagator.finalize_match_scoring(second.id)

        assert [ranking_for(group, u).rank for u in (a, b, c, d)] == [1, 1, 3, 3]
        assert [r.rank for r in group.get_rankings()] == [1, 1, 3, 3]

    def test_previous_rank_records_the_prior_rank(self, factory, propagator):
        group = factory.group()
        leader, chaser = factory.member(group), factory.member(group)

        first = factory.finished_match(1, 0)
        factory.prediction(group, leader, first, 1, 0)
        factory.prediction(group, chaser, first, 2, 1)
        propagator.finalize_match_scoring(first.id)

        assert ranking_for(group, chaser).previous_rank is None
        assert ranking_for(group, chaser).rank_change is None

        second = factory.finished_match(3, 3)
        factory.prediction(group, leader, second, 0, 1)
        factory.prediction(group, chaser, second, 3, 3)
        propagator.finalize_match_scoring(second.id)

        overtaker = ranking_for(group, chaser)
        assert (overtaker.previous_rank, overtaker.rank) == (2, 1)
        assert overtaker.rank_change == 1

        dropped = ranking_for(group, leader)
        assert (dropped.previous_rank, dropped.rank) == (1, 2)
        assert dropped.rank_change == -1

    def test_groups_are_scored_with_their_own_rules(self, factory, propagator):
        generous = factory.group()
        standard = factory.group()
        set_rule_points(generous, RuleCategory.EXACT_SCORE, 10)

        user = factory.user()
        factory.member(generous, user)
        factory.member(standard, user)
        match = factory.finished_match(3, 1)
        factory.prediction(generous, user, match, 3, 1)
        factory.prediction(standard, user, match, 3, 1)

        result = propagator.finalize_match_scoring(match.id)

        assert result.predictions_scored == 2
        assert result.groups_updated == sorted([generous.id, standard.id])
        assert member_total(generous, user) == 10
        assert member_total(standard, user) == 5
        assert ranking_for(generous, user).total_points == 10
        assert ranking_for(standard, user).total_points == 5

    def test_other_groups_rankings_are_untouched(self, factory, propagator):
        scored = factory.group()
        idle = factory.group()
        other = factory.member(idle)
        earlier = factory.finished_match(1, 1)
        factory.prediction(idle, other, earlier, 1, 1)
        propagator.finalize_match_scoring(earlier.id)
        idle_ranking = ranking_for(idle, other)
        before = (idle_ranking.rank, idle_ranking.previous_rank, idle_ranking.total_points)

        match = factory.finished_match(2, 1)
        factory.prediction(scored, factory.member(scored), match, 2, 1)
        result = propagator.finalize_match_scoring(match.id)

        assert result.groups_updated == [scored.id]
        idle_ranking = ranking_for(idle, other)
        assert (
            idle_ranking.rank,
            idle_ranking.previous_rank,
            idle_ranking.total_points,
        ) == before

    def test_match_without_predictions_is_claimed(self, factory, propagator):
        match = factory.finished_match(0, 1)

        result = propagator.finalize_match_scoring(match.id)

        assert result.predictions_scored == 0
        assert result.groups_updated == []
        assert result.already_scored is False
        assert db.session.get(Match, match.id).scored_at is not None

    def test_prediction_scored_earlier_is_skipped(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        match = factory.finished_match(2, 0)
        prediction = factory.prediction(group, user, match, 2, 0)
        prediction.points_earned = 4
        db.session.commit()

        result = propagator.finalize_match_scoring(match.id)

        assert result.predictions_scored == 0
        assert db.session.get(Prediction, prediction.id).points_earned == 4
        assert member_total(group, user) == 0

    def test_prediction_from_non_member_still_ranks(self, factory, propagator, caplog):
        group = factory.group()
        outsider = factory.user()
        match = factory.finished_match(1, 0)
        factory.prediction(group, outsider, match, 1, 0)

        with caplog.at_level(logging.WARNING):
            result = propagator.finalize_match_scoring(match.id)

        assert result.predictions_scored == 1
        assert ranking_for(group, outsider).total_points == 5
        assert "No membership" in caplog.text

    def test_group_locks_are_taken_in_sorted_order(self, app, factory, repository):
        locks = GroupLockRegistry()
        propagator = RankingPropagator(repository, locks=locks)
        second, first = factory.group(), factory.group()
        user = factory.user()
        match = factory.finished_match(1, 0)
        factory.prediction(first, user, match, 1, 0)
        factory.prediction(second, user, match, 0, 1)

        with patch.object(locks, "hold", wraps=locks.hold) as hold:
            propagator.finalize_match_scoring(match.id)

        hold.assert_called_once_with(sorted([first.id, second.id]))

    def test_empty_lock_registry_is_kept(self, repository):
        locks = GroupLockRegistry()

        assert len(locks) == 0
        assert RankingPropagator(repository, locks=locks).locks is locks


class TestPreconditions:
    def test_unknown_match(self, propagator):
        with pytest.raises(NotFound):
            propagator.finalize_match_scoring(9999)

    def test_match_not_finished(self, factory, propagator):
        group = factory.group()
        match = factory.match(MatchStatus.LIVE, 1, 0)
        factory.prediction(group, factory.member(group), match, 1, 0)

        with pytest.raises(PreconditionFailed):
            propagator.finalize_match_scoring(match.id)

        assert db.session.get(Match, match.id).scored_at is None
        assert db.session.execute(select(GroupRanking)).first() is None

    def test_finished_match_without_score(self, factory, propagator):
        match = factory.match(MatchStatus.FINISHED, 2, None)

        with pytest.raises(PreconditionFailed):
            propagator.finalize_match_scoring(match.id)

        assert db.session.get(Match, match.id).scored_at is None


class TestAllOrNothing:
    def test_failure_midway_leaves_no_writes(self, factory, repository, propagator):
        group = factory.group()
        first, second = factory.member(group), factory.member(group)
        match = factory.finished_match(2, 1)
        p1 = factory.prediction(group, first, match, 2, 1)
        p2 = factory.prediction(group, second, match, 1, 0)

        original = repository.upsert_ranking
        calls = []

        def flaky(*args):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("storage failure")
            return original(*args)

        with patch.object(repository, "upsert_ranking", side_effect=flaky):
            with pytest.raises(RuntimeError, match="storage failure"):
                propagator.finalize_match_scoring(match.id)

        assert db.session.get(Match, match.id).scored_at is None
        assert db.session.get(Prediction, p1.id).points_earned is None
        assert db.session.get(Prediction, p2.id).points_earned is None
        assert member_total(group, first) == 0
        assert db.session.execute(select(GroupRanking)).first() is None

        # The match can be scored once storage recovers
        result = propagator.finalize_match_scoring(match.id)
        assert result.predictions_scored == 2
        assert member_total(group, first) == 5
        assert member_total(group, second) == 3


class TestCompletionHook:
    def test_hook_receives_result_after_commit(self, app, factory, repository):
        seen = []

        def on_scored(result):
            # Points are visible by the time the hook runs
            seen.append((result.match_id, ranking_for(group, user).total_points))

        propagator = RankingPropagator(repository, on_scored=on_scored)
        group = factory.group()
        user = factory.member(group)
        match = factory.finished_match(0, 0)
        factory.prediction(group, user, match, 0, 0)

        propagator.finalize_match_scoring(match.id)
        propagator.finalize_match_scoring(match.id)

        assert seen == [(match.id, 5)]

    def test_hook_failure_is_logged_not_raised(self, factory, repository, caplog):
        hook = MagicMock(side_effect=RuntimeError("socket down"))
        propagator = RankingPropagator(repository, on_scored=hook)
        group = factory.group()
        user = factory.member(group)
        match = factory.finished_match(1, 0)
        factory.prediction(group, user, match, 1, 0)

        with caplog.at_level(logging.ERROR):
            result = propagator.finalize_match_scoring(match.id)

        hook.assert_called_once_with(result)
        assert result.predictions_scored == 1
        assert member_total(group, user) == 5
        assert "socket down" in caplog.text

    def test_app_propagator_invalidates_cached_rankings(self, app, factory):
        group = factory.group()
        match = factory.finished_match(1, 0)
        factory.prediction(group, factory.member(group), match, 1, 0)
        cache.set(rankings_cache_key(group.id), {"stale": True})

        result = get_ranking_propagator().finalize_match_scoring(match.id)

        assert result.predictions_scored == 1
        assert cache.get(rankings_cache_key(group.id)) is None

    def test_app_propagators_share_group_locks(self, app, factory):
        first = get_ranking_propagator()
        second = get_ranking_propagator()

        assert first.locks is app.extensions["group_locks"]
        assert second.locks is first.locks

        group = factory.group()
        match = factory.finished_match(1, 0)
        factory.prediction(group, factory.member(group), match, 1, 0)
        first.finalize_match_scoring(match.id)

        assert len(app.extensions["group_locks"]) == 1


class TestRecomputeAndSweep:
    def test_recompute_group_ranks(self, factory, propagator):
        group = factory.group()
        a, b = factory.member(group), factory.member(group)
        match = factory.finished_match(1, 0)
        factory.prediction(group, a, match, 1, 0)
        factory.prediction(group, b, match, 2, 0)
        propagator.finalize_match_scoring(match.id)

        db.session.execute(
            update(GroupRanking)
            .where(GroupRanking.user_id == b.id)
            .values(total_points=20)
        )
        db.session.commit()

        rows = propagator.recompute_group_ranks(group.id)

        assert [row.user_id for row in rows] == [b.id, a.id]
        assert (ranking_for(group, b).previous_rank, ranking_for(group, b).rank) == (2, 1)
        assert ranking_for(group, a).rank == 2

    def test_recompute_unknown_group(self, propagator):
        with pytest.raises(NotFound):
            propagator.recompute_group_ranks(4242)

    def test_score_pending_matches(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        done = [factory.finished_match(1, 0), factory.finished_match(2, 2)]
        upcoming = factory.match()
        for match in done + [upcoming]:
            factory.prediction(group, user, match, 1, 0)

        results, failed = propagator.score_pending_matches()

        assert failed == []
        assert [r.match_id for r in results] == [m.id for m in done]
        assert member_total(group, user) == 5
        assert propagator.score_pending_matches() == ([], [])

    def test_score_pending_matches_respects_limit(self, factory, propagator):
        for _ in range(3):
            factory.finished_match(0, 0)

        results, _ = propagator.score_pending_matches(limit=2)

        assert len(results) == 2

    def test_storage_failure_in_sweep_moves_on(self, factory, repository, propagator):
        broken = factory.finished_match(1, 0)
        fine = factory.finished_match(0, 1)
        original = repository.claim_match

        def claim(match_id):
            if match_id == broken.id:
                raise OperationalError("UPDATE matches", {}, Exception("db down"))
            return original(match_id)

        with patch.object(repository, "claim_match", side_effect=claim):
            results, failed = propagator.score_pending_matches()

        assert failed == [broken.id]
        assert [r.match_id for r in results] == [fine.id]


class TestConsistencyCheck:
    def test_consistent_after_scoring(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        for score in ((1, 0), (2, 2)):
            match = factory.finished_match(*score)
            factory.prediction(group, user, match, *score)
            propagator.finalize_match_scoring(match.id)

        assert propagator.check_group_consistency(group.id) == []

    def test_reports_drifted_totals(self, factory, propagator):
        group = factory.group()
        user = factory.member(group)
        match = factory.finished_match(1, 0)
        factory.prediction(group, user, match, 1, 0)
        propagator.finalize_match_scoring(match.id)

        db.session.execute(
            update(GroupRanking)
            .where(GroupRanking.user_id == user.id)
            .values(total_points=99)
        )
        db.session.commit()

        problems = propagator.check_group_consistency(group.id)

        assert problems == [
            {
                "user_id": user.id,
                "expected_points": 5,
                "expected_predictions": 1,
                "ranking_points": 99,
                "ranking_predictions": 1,
                "member_points": 5,
            }
        ]
