"""
Pytest configuration and fixtures.

Every test gets a fresh application on TestingConfig with an in-memory
SQLite database, plus a factory for the records scoring needs.
"""

from datetime import datetime, timedelta, timezone

import pytest

from matchpicks import create_app, db
from matchpicks.models import GroupMember, Match, Prediction, User
from matchpicks.models.group import Group
from matchpicks.models.match import MatchStatus
from matchpicks.services.ranking_service import RankingPropagator
from matchpicks.services.scoring_repository import ScoringRepository


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def repository(app):
    return ScoringRepository(db.session)


@pytest.fixture
def propagator(app, repository):
    return RankingPropagator(repository, locks=app.extensions["group_locks"])


class Factory:
    """Creates and commits model rows with sensible defaults"""

    def __init__(self):
        self._counter = 0

    def _next(self):
        self._counter += 1
        return self._counter

    def user(self, username=None):
        user = User(username=username or f"user{self._next()}")
        db.session.add(user)
        db.session.commit()
        return user

    def group(self, owner=None, name=None, competition_id=1):
        owner = owner or self.user()
        group = Group.create_with_default_rules(
            name or f"Group {self._next()}", owner.id, competition_id
        )
        db.session.commit()
        return group

    def member(self, group, user=None):
        user = user or self.user()
        db.session.add(GroupMember(group_id=group.id, user_id=user.id))
        db.session.commit()
        return user

    def match(self, status=MatchStatus.SCHEDULED, home_score=None, away_score=None):
        n = self._next()
        match = Match(
            competition_id=1,
            home_team=f"Home {n}",
            away_team=f"Away {n}",
            scheduled_date=datetime.now(timezone.utc) + timedelta(days=1),
            status=status,
            home_score=home_score,
            away_score=away_score,
        )
        db.session.add(match)
        db.session.commit()
        return match

    def finished_match(self, home_score, away_score):
        return self.match(MatchStatus.FINISHED, home_score, away_score)

    def prediction(self, group, user, match, home, away):
        prediction = Prediction(
            group_id=group.id,
            user_id=user.id,
            match_id=match.id,
            home_score_prediction=home,
            away_score_prediction=away,
        )
        db.session.add(prediction)
        db.session.commit()
        return prediction


@pytest.fixture
def factory(app):
    return Factory()
