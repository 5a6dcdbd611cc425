from datetime import datetime, timezone

from matchpicks import db


class Group(db.Model):
    __tablename__ = "groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)

    # Group settings
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    competition_id = db.Column(db.Integer, nullable=False)
    visibility = db.Column(db.String(20), nullable=False, default="private")

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    members = db.relationship(
        "GroupMember", backref="group", lazy="dynamic", cascade="all, delete-orphan"
    )
    scoring_rules = db.relationship(
        "ScoringRule", backref="group", lazy="dynamic", cascade="all, delete-orphan"
    )
    rankings = db.relationship(
        "GroupRanking", backref="group", lazy="dynamic", cascade="all, delete-orphan"
    )
    predictions = db.relationship(
        "Prediction", backref="group", lazy="dynamic", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("idx_group_owner", "owner_id"),
        db.Index("idx_group_competition", "competition_id"),
    )

    def __repr__(self):
        return f"<Group {self.name}>"

    @staticmethod
    def create_with_default_rules(
        name, owner_id, competition_id, description=None, visibility="private"
    ):
        """Create a group with its owner membership and the three seed scoring rules"""
        from matchpicks.utils.scoring import DEFAULT_RULES

        from .group_member import GroupMember
        from .scoring_rule import ScoringRule

        group = Group(
            name=name,
            owner_id=owner_id,
            competition_id=competition_id,
            description=description,
            visibility=visibility,
        )
        db.session.add(group)
        db.session.flush()

        db.session.add(GroupMember(group_id=group.id, user_id=owner_id, role="owner"))
        for rule_description, points, category in DEFAULT_RULES:
            db.session.add(
                ScoringRule(
                    group_id=group.id,
                    description=rule_description,
                    points=points,
                    category=category,
                )
            )

        return group

    def add_member(self, user_id, role="member"):
        """Add a user to the group"""
        from .group_member import GroupMember

        existing = self.members.filter_by(user_id=user_id).first()
        if existing:
            return False, "User is already a member"

        db.session.add(GroupMember(group_id=self.id, user_id=user_id, role=role))
        return True, "User added successfully"

    def get_scoring_rules(self):
        """Get scoring rules, highest value first"""
        from .scoring_rule import ScoringRule

        return self.scoring_rules.order_by(
            ScoringRule.points.desc(), ScoringRule.id
        ).all()

    def get_rankings(self):
        """Get the cached leaderboard ordered by rank"""
        from sqlalchemy.orm import joinedload

        from .group_ranking import GroupRanking

        return (
            self.rankings.options(joinedload(GroupRanking.user))
            .order_by(GroupRanking.rank.is_(None), GroupRanking.rank, GroupRanking.id)
            .all()
        )

    def get_member_count(self):
        """Get count of members"""
        return self.members.count()

    def to_dict(self, include_rules=False):
        """Convert group to dictionary for API responses"""
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "competition_id": self.competition_id,
            "visibility": self.visibility,
            "member_count": self.get_member_count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

        if include_rules:
            data["scoring_rules"] = [rule.to_dict() for rule in self.get_scoring_rules()]

        return data
