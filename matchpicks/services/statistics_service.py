"""
Prediction statistics for users, groups and the cross-group leaderboard

Everything here is read from what scoring has already written: the
GroupRanking cache and the points stored on each Prediction. Nothing is
recomputed from match results.
"""

import logging

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from matchpicks.exceptions import NotFound, PreconditionFailed
from matchpicks.models import Group, GroupMember, GroupRanking, Match, Prediction, User
from matchpicks.utils.scoring import accuracy_percent, assign_competition_ranks

logger = logging.getLogger(__name__)

DEFAULT_LEADERBOARD_LIMIT = 50
MAX_LEADERBOARD_LIMIT = 200
TOP_PERFORMERS = 5
RECENT_ACTIVITY = 10


class StatisticsService:
    def __init__(self, db: Session):
        self.db = db

    def get_user_statistics(self, user_id):
        """Prediction totals for one user plus their standing in every group"""
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")

        total_predictions, total_points, correct_predictions = self.db.execute(
            select(
                func.count(Prediction.id),
                func.coalesce(func.sum(Prediction.points_earned), 0),
                func.coalesce(
                    func.sum(case((Prediction.points_earned > 0, 1), else_=0)), 0
                ),
            ).where(Prediction.user_id == user_id)
        ).one()

        groups_joined = self.db.execute(
            select(func.count(GroupMember.id)).where(GroupMember.user_id == user_id)
        ).scalar_one()

        standings = self.db.execute(
            select(GroupRanking, Group.name)
            .join(Group, Group.id == GroupRanking.group_id)
            .where(GroupRanking.user_id == user_id)
            .order_by(GroupRanking.rank, GroupRanking.group_id)
        ).all()

        return {
            "user": {**user.to_dict(), "display_name": user.full_name},
            "total_predictions": total_predictions,
            "total_points": int(total_points),
            "correct_predictions": int(correct_predictions),
            # Unscored predictions count against accuracy until their match ends
            "accuracy": accuracy_percent(correct_predictions, total_predictions),
            "groups_joined": groups_joined,
            "rankings": [
                {
                    "group_id": ranking.group_id,
                    "group_name": group_name,
                    "rank": ranking.rank,
                    "total_points": ranking.total_points,
                    "total_predictions": ranking.total_predictions,
                    "correct_predictions": ranking.correct_predictions,
                }
                for ranking, group_name in standings
            ],
        }

    def get_group_statistics(self, group_id):
        """Membership and prediction counts, top of the table and latest predictions"""
        group = self.db.get(Group, group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")

        total_members = self.db.execute(
            select(func.count(GroupMember.id)).where(GroupMember.group_id == group_id)
        ).scalar_one()

        total_predictions, scored_predictions = self.db.execute(
            select(
                func.count(Prediction.id),
                func.count(Prediction.points_earned),
            ).where(Prediction.group_id == group_id)
        ).one()

        top_performers = self.db.execute(
            select(GroupRanking, User.username)
            .join(User, User.id == GroupRanking.user_id)
            .where(GroupRanking.group_id == group_id)
            .order_by(GroupRanking.rank, GroupRanking.user_id)
            .limit(TOP_PERFORMERS)
        ).all()

        recent = self.db.execute(
            select(Prediction, User.username, Match.home_team, Match.away_team)
            .join(User, User.id == Prediction.user_id)
            .join(Match, Match.id == Prediction.match_id)
            .where(Prediction.group_id == group_id)
            .order_by(Prediction.predicted_at.desc(), Prediction.id.desc())
            .limit(RECENT_ACTIVITY)
        ).all()

        return {
            "group_id": group.id,
            "group_name": group.name,
            "total_members": total_members,
            "total_predictions": total_predictions,
            "scored_predictions": scored_predictions,
            "top_performers": [
                {
                    "user_id": ranking.user_id,
                    "username": username,
                    "rank": ranking.rank,
                    "total_points": ranking.total_points,
                    "correct_predictions": ranking.correct_predictions,
                    "total_predictions": ranking.total_predictions,
                }
                for ranking, username in top_performers
            ],
            "recent_activity": [
                {
                    "prediction_id": prediction.id,
                    "user_id": prediction.user_id,
                    "username": username,
                    "match": f"{home_team} vs {away_team}",
                    "prediction": (
                        f"{prediction.home_score_prediction} - "
                        f"{prediction.away_score_prediction}"
                    ),
                    "points_earned": prediction.points_earned,
                    "predicted_at": (
                        prediction.predicted_at.isoformat()
                        if prediction.predicted_at
                        else None
                    ),
                }
                for prediction, username, home_team, away_team in recent
            ],
        }

    def get_leaderboard(self, competition_id=None, limit=DEFAULT_LEADERBOARD_LIMIT):
        """
        Users ranked by their points summed over every group they play in.

        Args:
            competition_id: only count groups that follow this competition
            limit: number of entries, 1 to MAX_LEADERBOARD_LIMIT

        Returns:
            list of dicts ordered by total points, then correct predictions.
            Users level on both share a competition rank.
        """
        if limit is None:
            limit = DEFAULT_LEADERBOARD_LIMIT
        if not 1 <= limit <= MAX_LEADERBOARD_LIMIT:
            raise PreconditionFailed(
                f"'limit' must be between 1 and {MAX_LEADERBOARD_LIMIT}"
            )

        points = func.sum(GroupRanking.total_points).label("points")
        correct = func.sum(GroupRanking.correct_predictions).label("correct")
        stmt = select(
            GroupRanking.user_id,
            points,
            func.sum(GroupRanking.total_predictions).label("predictions"),
            correct,
            func.count(GroupRanking.id).label("group_count"),
        ).group_by(GroupRanking.user_id)

        if competition_id is not None:
            stmt = stmt.join(Group, Group.id == GroupRanking.group_id).where(
                Group.competition_id == competition_id
            )

        rows = self.db.execute(
            stmt.order_by(points.desc(), correct.desc(), GroupRanking.user_id).limit(limit)
        ).all()

        users = {
            user.id: user
            for user in self.db.execute(
                select(User).where(User.id.in_([row.user_id for row in rows]))
            ).scalars()
        }
        ranks = assign_competition_ranks([(row.points, row.correct) for row in rows])

        leaderboard = []
        for row, rank in zip(rows, ranks):
            user = users[row.user_id]
            leaderboard.append(
                {
                    "rank": rank,
                    "user_id": user.id,
                    "username": user.username,
                    "display_name": user.full_name,
                    "total_points": int(row.points),
                    "total_predictions": int(row.predictions),
                    "correct_predictions": int(row.correct),
                    "groups_participated": row.group_count,
                    "accuracy": accuracy_percent(row.correct, row.predictions),
                }
            )

        logger.debug(
            f"Leaderboard built with {len(leaderboard)} entries "
            f"(competition: {competition_id or 'all'})"
        )
        return leaderboard
