from datetime import datetime, timezone

from matchpicks import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)

    # Profile information
    first_name = db.Column(db.String(50))
    last_name = db.Column(db.String(50))

    # Timestamps
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    predictions = db.relationship(
        "Prediction", backref="user", lazy="dynamic", cascade="all, delete-orphan"
    )
    group_memberships = db.relationship(
        "GroupMember", backref="user", lazy="dynamic", cascade="all, delete-orphan"
    )
    owned_groups = db.relationship("Group", backref="owner", lazy="dynamic")

    def __repr__(self):
        return f"<User {self.username}>"

    @property
    def full_name(self):
        """Return first and last name, or the username when neither is set"""
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.username

    def to_dict(self):
        """Convert user to dictionary for API responses"""
        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }
