from datetime import datetime, timezone

from matchpicks import db


class Prediction(db.Model):
    __tablename__ = "predictions"

    id = db.Column(db.Integer, primary_key=True)

    # Prediction identification
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    match_id = db.Column(db.Integer, db.ForeignKey("matches.id"), nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False)

    # Forecast
    home_score_prediction = db.Column(db.Integer, nullable=False)
    away_score_prediction = db.Column(db.Integer, nullable=False)

    # Result (set once, when the match is scored)
    points_earned = db.Column(db.Integer)

    predicted_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "match_id", "group_id", name="unique_user_match_group_prediction"
        ),
        db.Index("idx_prediction_match", "match_id"),
        db.Index("idx_prediction_group", "group_id"),
    )

    def __repr__(self):
        return (
            f"<Prediction user_id={self.user_id} match_id={self.match_id} "
            f"{self.home_score_prediction}-{self.away_score_prediction}>"
        )

    @property
    def is_scored(self):
        return self.points_earned is not None

    def to_dict(self):
        """Convert prediction to dictionary for API responses"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "match_id": self.match_id,
            "group_id": self.group_id,
            "home_score_prediction": self.home_score_prediction,
            "away_score_prediction": self.away_score_prediction,
            "points_earned": self.points_earned,
            "predicted_at": self.predicted_at.isoformat() if self.predicted_at else None,
        }
