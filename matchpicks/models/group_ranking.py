from datetime import datetime, timezone

from matchpicks import db
from matchpicks.utils.scoring import accuracy_percent


class GroupRanking(db.Model):
    """Denormalized leaderboard row for one user in one group"""

    __tablename__ = "group_rankings"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    total_points = db.Column(db.Integer, nullable=False, default=0)
    total_predictions = db.Column(db.Integer, nullable=False, default=0)
    correct_predictions = db.Column(db.Integer, nullable=False, default=0)

    rank = db.Column(db.Integer)
    previous_rank = db.Column(db.Integer)

    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = db.relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        db.UniqueConstraint("group_id", "user_id", name="unique_group_user_ranking"),
        db.Index("idx_ranking_group_points", "group_id", "total_points"),
    )

    def __repr__(self):
        return (
            f"<GroupRanking group_id={self.group_id} user_id={self.user_id} "
            f"rank={self.rank} points={self.total_points}>"
        )

    @property
    def rank_change(self):
        """Places gained since the previous recomputation (negative = dropped)"""
        if self.rank is None or self.previous_rank is None:
            return None
        return self.previous_rank - self.rank

    @property
    def accuracy(self):
        return accuracy_percent(self.correct_predictions, self.total_predictions)

    def to_dict(self):
        """Convert ranking row to dictionary for API responses"""
        return {
            "group_id": self.group_id,
            "user": self.user.to_dict() if self.user else {"id": self.user_id},
            "rank": self.rank,
            "previous_rank": self.previous_rank,
            "rank_change": self.rank_change,
            "total_points": self.total_points,
            "total_predictions": self.total_predictions,
            "correct_predictions": self.correct_predictions,
            "accuracy": self.accuracy,
        }
