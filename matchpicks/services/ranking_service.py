"""
Ranking propagation for finished matches

When a match is finished, every prediction on it is scored, the points are
added to the member total and the group ranking cache, and each touched
group is re-ranked. One match is one transaction: either every prediction
is scored and every group re-ranked, or nothing is written.
"""

from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from matchpicks.exceptions import ConsistencyConflict, PreconditionFailed
from matchpicks.utils.locks import GroupLockRegistry
from matchpicks.utils.logging_config import ContextualLogger, get_logger
from matchpicks.utils.performance import PerformanceMonitor, timer
from matchpicks.utils.scoring import assign_competition_ranks, compute_points

logger = get_logger(__name__)


@dataclass
class ScoringResult:
    match_id: int
    predictions_scored: int = 0
    groups_updated: list = field(default_factory=list)
    already_scored: bool = False

    def to_dict(self):
        return {
            "match_id": self.match_id,
            "predictions_scored": self.predictions_scored,
            "groups_updated": list(self.groups_updated),
            "already_scored": self.already_scored,
        }


class RankingPropagator:
    """Scores a finished match and propagates the points into group rankings"""

    def __init__(self, repository, locks=None, on_scored=None):
        self.repository = repository
        self.locks = locks if locks is not None else GroupLockRegistry()
        self.on_scored = on_scored

    @timer
    def finalize_match_scoring(self, match_id, strict=False):
        """
        Score every prediction of a finished match and re-rank affected groups.

        Args:
            match_id: id of the match to finalize
            strict: raise ConsistencyConflict instead of returning a no-op
                result when the match was already scored

        Returns:
            ScoringResult

        Raises:
            NotFound: the match does not exist
            PreconditionFailed: the match is not finished or a score is unset
            ConsistencyConflict: already scored, in strict mode only
        """
        log = ContextualLogger(__name__, {"match_id": match_id})

        match = self.repository.get_match(match_id)
        if not match.is_final:
            raise PreconditionFailed(
                f"Match {match_id} is not finished (status: {match.status})"
            )
        if not match.has_result:
            raise PreconditionFailed(f"Match {match_id} scores are not set")

        actual_home, actual_away = match.home_score, match.away_score
        predictions = self.repository.get_predictions_for_match(match_id)
        group_ids = sorted({prediction.group_id for prediction in predictions})

        result = ScoringResult(match_id=match_id)

        with self.locks.hold(group_ids):
            try:
                self.repository.lock_groups(group_ids)
                claimed = self.repository.claim_match(match_id)

                if claimed:
                    with PerformanceMonitor(f"Scoring match {match_id}"):
                        result.predictions_scored = self._score_predictions(
                            predictions, actual_home, actual_away, group_ids
                        )
                        for group_id in group_ids:
                            self._rerank(group_id)
                    self.repository.commit()
                else:
                    self.repository.rollback()
            except Exception:
                self.repository.rollback()
                log.bind(groups=group_ids).error(
                    "Scoring failed, all changes for the match rolled back"
                )
                raise

        if not claimed:
            if strict:
                raise ConsistencyConflict(f"Match {match_id} has already been scored")
            log.info("Match already scored, skipping")
            result.already_scored = True
            return result

        result.groups_updated = group_ids
        log.info(
            f"Scored {result.predictions_scored} predictions "
            f"across {len(group_ids)} groups"
        )

        self._notify(result)
        return result

    def _score_predictions(self, predictions, actual_home, actual_away, group_ids):
        rules_by_group = self.repository.get_rules_for_groups(group_ids)

        scored = 0
        for prediction in predictions:
            if prediction.points_earned is not None:
                continue

            points = compute_points(
                prediction.home_score_prediction,
                prediction.away_score_prediction,
                actual_home,
                actual_away,
                rules_by_group.get(prediction.group_id),
            )

            if not self.repository.record_prediction_points(prediction.id, points):
                logger.warning(f"Prediction {prediction.id} was already scored")
                continue

            self.repository.increment_member_points(
                prediction.group_id, prediction.user_id, points
            )
            self.repository.upsert_ranking(
                prediction.group_id, prediction.user_id, points
            )
            scored += 1

        return scored

    def _rerank(self, group_id):
        """Assign competition ranks to a group's rows; caller holds the group lock"""
        rankings = self.repository.get_group_rankings(group_id, for_update=True)
        ranks = assign_competition_ranks([ranking.total_points for ranking in rankings])

        for ranking, rank in zip(rankings, ranks):
            ranking.previous_rank = ranking.rank
            ranking.rank = rank

        logger.debug(f"Re-ranked {len(rankings)} rows in group {group_id}")
        return rankings

    def _notify(self, result):
        if self.on_scored is None:
            return
        try:
            self.on_scored(result)
        except Exception as e:
            logger.error(
                f"Scoring completion hook failed for match {result.match_id}: {e}",
                exc_info=True,
            )

    def recompute_group_ranks(self, group_id):
        """Re-rank one group outside of match scoring and commit"""
        self.repository.get_group(group_id)

        with self.locks.hold([group_id]):
            try:
                self.repository.lock_groups([group_id])
                with PerformanceMonitor(f"Re-ranking group {group_id}"):
                    rankings = self._rerank(group_id)
                self.repository.commit()
            except Exception:
                self.repository.rollback()
                raise

        logger.info(f"Recomputed ranks for group {group_id}")
        return rankings

    def score_pending_matches(self, limit=None):
        """
        Finalize finished matches that were never scored.

        A storage failure on one match is logged and the sweep moves on.

        Returns:
            tuple: (list of ScoringResult, list of match ids that failed)
        """
        results = []
        failed = []

        for match_id in self.repository.get_unscored_finished_match_ids(limit):
            try:
                results.append(self.finalize_match_scoring(match_id))
            except SQLAlchemyError as e:
                failed.append(match_id)
                logger.error(f"Failed to score match {match_id}: {e}", exc_info=True)

        if results or failed:
            logger.info(
                f"Pending sweep scored {len(results)} matches, {len(failed)} failed"
            )
        return results, failed

    def check_group_consistency(self, group_id):
        """
        Compare a group's cached totals with its scored predictions.

        Returns:
            list of dicts describing each user whose ranking row or member
            total disagrees with the sum of their scored predictions
        """
        self.repository.get_group(group_id)

        expected = self.repository.get_prediction_totals(group_id)
        member_totals = self.repository.get_group_member_totals(group_id)
        rankings = {
            ranking.user_id: ranking
            for ranking in self.repository.get_group_rankings(group_id)
        }

        problems = []
        for user_id in sorted(set(expected) | set(rankings)):
            totals = expected.get(user_id, {"total_points": 0, "total_predictions": 0})
            ranking = rankings.get(user_id)
            cached_points = ranking.total_points if ranking else 0
            cached_count = ranking.total_predictions if ranking else 0
            member_points = member_totals.get(user_id)

            if (
                cached_points != totals["total_points"]
                or cached_count != totals["total_predictions"]
                or (member_points is not None and member_points != totals["total_points"])
            ):
                problems.append(
                    {
                        "user_id": user_id,
                        "expected_points": totals["total_points"],
                        "expected_predictions": totals["total_predictions"],
                        "ranking_points": cached_points,
                        "ranking_predictions": cached_count,
                        "member_points": member_points,
                    }
                )

        return problems


def publish_scoring_completed(result):
    """Invalidate cached leaderboards and tell live subscribers a match was scored"""
    from matchpicks.socketio_handlers import broadcast_match_scored
    from matchpicks.utils.cache_utils import invalidate_group_rankings

    invalidate_group_rankings(result.groups_updated)
    broadcast_match_scored(result)


def get_ranking_propagator():
    """Build a propagator bound to the current app's session and group locks"""
    from flask import current_app

    from matchpicks import db
    from matchpicks.services.scoring_repository import ScoringRepository

    return RankingPropagator(
        ScoringRepository(db.session),
        locks=current_app.extensions["group_locks"],
        on_scored=publish_scoring_completed,
    )
