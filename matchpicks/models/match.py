from datetime import datetime, timezone

from matchpicks import db
from matchpicks.exceptions import PreconditionFailed


class MatchStatus:
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINISHED = "finished"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"

    TERMINAL = (FINISHED, POSTPONED, CANCELLED)

    # Allowed moves; finished, postponed and cancelled never change again
    TRANSITIONS = {
        SCHEDULED: (LIVE, FINISHED, POSTPONED, CANCELLED),
        LIVE: (FINISHED, POSTPONED, CANCELLED),
        FINISHED: (),
        POSTPONED: (),
        CANCELLED: (),
    }


class Match(db.Model):
    __tablename__ = "matches"

    id = db.Column(db.Integer, primary_key=True)
    competition_id = db.Column(db.Integer, nullable=False)

    # Teams
    home_team = db.Column(db.String(100), nullable=False)
    away_team = db.Column(db.String(100), nullable=False)

    scheduled_date = db.Column(db.DateTime, nullable=False)
    location = db.Column(db.String(200))

    # Scores
    home_score = db.Column(db.Integer)
    away_score = db.Column(db.Integer)

    status = db.Column(db.String(20), nullable=False, default=MatchStatus.SCHEDULED)

    # Set once when finalization claims the match for scoring
    scored_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    predictions = db.relationship(
        "Prediction", backref="match", lazy="dynamic", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("idx_match_status", "status"),
        db.Index("idx_match_scheduled_date", "scheduled_date"),
        db.CheckConstraint("home_team != away_team", name="different_teams"),
    )

    def __repr__(self):
        return f"<Match {self.home_team} vs {self.away_team} ({self.status})>"

    @property
    def is_final(self):
        return self.status == MatchStatus.FINISHED

    @property
    def has_result(self):
        """Check if both scores are set"""
        return self.home_score is not None and self.away_score is not None

    @property
    def is_scoreable(self):
        """Check if the match can be finalized for scoring"""
        return self.is_final and self.has_result

    @property
    def is_scored(self):
        return self.scored_at is not None

    def transition_to(self, status):
        """Move the match to a new status, rejecting illegal transitions"""
        if status == self.status:
            return
        if status not in MatchStatus.TRANSITIONS:
            raise PreconditionFailed(f"Unknown match status '{status}'")
        if status not in MatchStatus.TRANSITIONS.get(self.status, ()):
            raise PreconditionFailed(
                f"Match {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status

    def update_score(self, home_score, away_score, is_final=False):
        """Update match score; a final score moves the match to finished"""
        if self.status in MatchStatus.TERMINAL:
            raise PreconditionFailed(
                f"Match {self.id} is {self.status}, its score can no longer change"
            )

        self.home_score = home_score
        self.away_score = away_score

        if is_final:
            self.transition_to(MatchStatus.FINISHED)

    def has_started(self):
        """Check if match has started"""
        if not self.scheduled_date:
            return False
        scheduled = self.scheduled_date

        # If scheduled_date is timezone-naive, assume it's in UTC
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)

        return datetime.now(timezone.utc) >= scheduled

    def to_dict(self):
        """Convert match to dictionary for API responses"""
        return {
            "id": self.id,
            "competition_id": self.competition_id,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "scheduled_date": (
                self.scheduled_date.isoformat() if self.scheduled_date else None
            ),
            "location": self.location,
            "status": self.status,
            "home_score": self.home_score,
            "away_score": self.away_score,
            "scored_at": self.scored_at.isoformat() if self.scored_at else None,
        }
