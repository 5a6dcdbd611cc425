from datetime import datetime, timezone

from matchpicks import db


class GroupMember(db.Model):
    __tablename__ = "group_members"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False)

    # Membership role: owner, admin or member
    role = db.Column(db.String(20), nullable=False, default="member")

    # Cumulative points, incremented as predictions are scored
    total_points = db.Column(db.Integer, nullable=False, default=0)

    joined_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("group_id", "user_id", name="unique_user_group"),
        db.Index("idx_user_memberships", "user_id"),
    )

    def __repr__(self):
        return f"<GroupMember user_id={self.user_id} group_id={self.group_id}>"

    def to_dict(self):
        """Convert membership to dictionary for API responses"""
        return {
            "user_id": self.user_id,
            "group_id": self.group_id,
            "username": self.user.username if self.user else None,
            "role": self.role,
            "total_points": self.total_points,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }
