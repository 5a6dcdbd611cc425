"""
Storage collaborator for match scoring

ScoringRepository wraps one SQLAlchemy session and exposes the reads and
writes the ranking propagator needs. Aggregate changes are issued as SQL
increments so concurrent scorers never lose an update.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from matchpicks.exceptions import NotFound
from matchpicks.models import (
    Group,
    GroupMember,
    GroupRanking,
    Match,
    Prediction,
    ScoringRule,
)
from matchpicks.models.match import MatchStatus

logger = logging.getLogger(__name__)


class ScoringRepository:
    def __init__(self, db: Session):
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # Reads

    def get_match(self, match_id) -> Match:
        match = self.db.get(Match, match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        return match

    def get_group(self, group_id) -> Group:
        group = self.db.get(Group, group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    def get_predictions_for_match(self, match_id):
        stmt = (
            select(Prediction)
            .where(Prediction.match_id == match_id)
            .order_by(Prediction.id)
        )
        return self.db.execute(stmt).scalars().all()

    def get_rules_for_groups(self, group_ids):
        """Map each group id to its scoring rules (empty list when it has none)"""
        rules = {group_id: [] for group_id in group_ids}
        if not rules:
            return rules

        stmt = (
            select(ScoringRule)
            .where(ScoringRule.group_id.in_(list(rules)))
            .order_by(ScoringRule.id)
        )
        for rule in self.db.execute(stmt).scalars():
            rules[rule.group_id].append(rule)
        return rules

    def get_unscored_finished_match_ids(self, limit=None):
        stmt = (
            select(Match.id)
            .where(
                Match.status == MatchStatus.FINISHED,
                Match.home_score.is_not(None),
                Match.away_score.is_not(None),
                Match.scored_at.is_(None),
            )
            .order_by(Match.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.db.execute(stmt).scalars().all()

    # Locking and idempotency

    def lock_groups(self, group_ids):
        """Row-lock the given groups until the transaction ends (ascending id order)"""
        if not group_ids:
            return []
        stmt = (
            select(Group.id)
            .where(Group.id.in_(list(group_ids)))
            .order_by(Group.id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalars().all()

    def claim_match(self, match_id) -> bool:
        """
        Mark a match as scored unless it already is.

        Returns True when this transaction made the claim, False when the
        match had been scored before.
        """
        stmt = (
            update(Match)
            .where(Match.id == match_id, Match.scored_at.is_(None))
            .values(scored_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    # Writes

    def record_prediction_points(self, prediction_id, points) -> bool:
        """Store points on a prediction that has not been scored yet"""
        stmt = (
            update(Prediction)
            .where(Prediction.id == prediction_id, Prediction.points_earned.is_(None))
            .values(points_earned=points)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def increment_member_points(self, group_id, user_id, points) -> bool:
        stmt = (
            update(GroupMember)
            .where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
            .values(total_points=GroupMember.total_points + points)
            .execution_options(synchronize_session=False)
        )
        updated = self.db.execute(stmt).rowcount
        if not updated:
            logger.warning(
                f"No membership for user {user_id} in group {group_id}; "
                f"member total not updated"
            )
        return bool(updated)

    def upsert_ranking(self, group_id, user_id, points) -> None:
        """Create the ranking row on first score, otherwise increment its totals"""
        correct = 1 if points > 0 else 0

        existing = self.db.execute(
            select(GroupRanking.id).where(
                GroupRanking.group_id == group_id, GroupRanking.user_id == user_id
            )
        ).scalar_one_or_none()

        if existing is None:
            try:
                with self.db.begin_nested():
                    self.db.add(
                        GroupRanking(
                            group_id=group_id,
                            user_id=user_id,
                            total_points=points,
                            total_predictions=1,
                            correct_predictions=correct,
                        )
                    )
                return
            except IntegrityError:
                # Another scorer created the row first; fall through to increment
                logger.info(
                    f"Ranking row for user {user_id} in group {group_id} "
                    f"created concurrently, incrementing instead"
                )

        stmt = (
            update(GroupRanking)
            .where(GroupRanking.group_id == group_id, GroupRanking.user_id == user_id)
            .values(
                total_points=GroupRanking.total_points + points,
                total_predictions=GroupRanking.total_predictions + 1,
                correct_predictions=GroupRanking.correct_predictions + correct,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def get_group_rankings(self, group_id, for_update=False):
        """All ranking rows of a group, highest total first, freshly loaded"""
        stmt = (
            select(GroupRanking)
            .where(GroupRanking.group_id == group_id)
            .order_by(GroupRanking.total_points.desc(), GroupRanking.id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().all()

    def get_group_member_totals(self, group_id):
        stmt = select(GroupMember.user_id, GroupMember.total_points).where(
            GroupMember.group_id == group_id
        )
        return dict(self.db.execute(stmt).all())

    def get_prediction_totals(self, group_id):
        """Raw per-user aggregates from scored predictions, for consistency checks"""
        stmt = (
            select(
                Prediction.user_id,
                func.sum(Prediction.points_earned),
                func.count(Prediction.id),
            )
            .where(
                Prediction.group_id == group_id,
                Prediction.points_earned.is_not(None),
            )
            .group_by(Prediction.user_id)
        )
        return {
            user_id: {"total_points": int(total or 0), "total_predictions": count}
            for user_id, total, count in self.db.execute(stmt).all()
        }
