from datetime import datetime, timezone

from matchpicks import db


class ScoringRule(db.Model):
    __tablename__ = "group_scoring_rules"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False)

    description = db.Column(db.Text)
    points = db.Column(db.Integer, nullable=False)

    # exact_score, correct_winner, correct_draw or custom; untagged rules are
    # matched by description
    category = db.Column(db.String(20))

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (db.Index("idx_scoring_rule_group", "group_id"),)

    def __repr__(self):
        return f"<ScoringRule group_id={self.group_id} {self.description!r}={self.points}>"

    def to_dict(self):
        """Convert rule to dictionary for API responses"""
        return {
            "id": self.id,
            "group_id": self.group_id,
            "description": self.description,
            "points": self.points,
            "category": self.category,
        }
