from types import SimpleNamespace

import pytest
from sqlalchemy import update

from matchpicks import db
from matchpicks.exceptions import NotFound, PreconditionFailed
from matchpicks.models import ScoringRule
from matchpicks.services.statistics_service import StatisticsService
from matchpicks.utils.scoring import RuleCategory


@pytest.fixture
def stats(app):
    return StatisticsService(db.session)


@pytest.fixture
def league(factory, propagator):
    """
    Two groups in different competitions, both scored:

    cup (competition 1):   alice 5, bob 0, plus one open prediction by alice
    derby (competition 2): carol 5, alice 3
    """
    alice, bob, carol = factory.user("alice"), factory.user("bob"), factory.user("carol")
    alice.first_name, alice.last_name = "Ana", "Silva"
    db.session.commit()

    cup = factory.group(name="Cup", competition_id=1)
    derby = factory.group(name="Derby", competition_id=2)
    factory.member(cup, alice)
    factory.member(cup, bob)
    factory.member(derby, alice)
    factory.member(derby, carol)

    opener = factory.finished_match(2, 1)
    draw = factory.finished_match(0, 0)
    upcoming = factory.match()

    factory.prediction(cup, alice, opener, 2, 1)
    factory.prediction(cup, bob, opener, 0, 1)
    factory.prediction(derby, alice, draw, 1, 1)
    factory.prediction(derby, carol, draw, 0, 0)
    open_prediction = factory.prediction(cup, alice, upcoming, 1, 0)

    propagator.finalize_match_scoring(opener.id)
    propagator.finalize_match_scoring(draw.id)

    return SimpleNamespace(
        alice=alice,
        bob=bob,
        carol=carol,
        cup=cup,
        derby=derby,
        open_prediction=open_prediction,
    )


class TestUserStatistics:
    def test_totals_and_group_standings(self, stats, league):
        result = stats.get_user_statistics(league.alice.id)

        assert result["user"]["display_name"] == "Ana Silva"
        assert result["total_predictions"] == 3
        assert result["total_points"] == 8
        assert result["correct_predictions"] == 2
        # the open prediction counts against accuracy until its match ends
        assert result["accuracy"] == 66.67
        assert result["groups_joined"] == 2
        assert result["rankings"] == [
            {
                "group_id": league.cup.id,
                "group_name": "Cup",
                "rank": 1,
                "total_points": 5,
                "total_predictions": 1,
                "correct_predictions": 1,
            },
            {
                "group_id": league.derby.id,
                "group_name": "Derby",
                "rank": 2,
                "total_points": 3,
                "total_predictions": 1,
                "correct_predictions": 1,
            },
        ]

    def test_user_without_predictions(self, stats, factory):
        user = factory.user("dora")

        result = stats.get_user_statistics(user.id)

        assert result["total_predictions"] == 0
        assert result["total_points"] == 0
        assert result["accuracy"] == 0.0
        assert result["rankings"] == []

    def test_unknown_user(self, stats):
        with pytest.raises(NotFound):
            stats.get_user_statistics(999)


class TestGroupStatistics:
    def test_summary(self, stats, league):
        result = stats.get_group_statistics(league.cup.id)

        assert result["group_name"] == "Cup"
        # owner, alice and bob
        assert result["total_members"] == 3
        assert result["total_predictions"] == 3
        assert result["scored_predictions"] == 2
        assert [
            (entry["username"], entry["rank"], entry["total_points"])
            for entry in result["top_performers"]
        ] == [("alice", 1, 5), ("bob", 2, 0)]

    def test_recent_activity_newest_first(self, stats, league):
        activity = stats.get_group_statistics(league.cup.id)["recent_activity"]

        assert len(activity) == 3
        latest = activity[0]
        assert latest["prediction_id"] == league.open_prediction.id
        assert latest["username"] == "alice"
        assert latest["prediction"] == "1 - 0"
        assert latest["points_earned"] is None
        assert " vs " in latest["match"]

    def test_unknown_group(self, stats):
        with pytest.raises(NotFound):
            stats.get_group_statistics(999)


class TestLeaderboard:
    def test_points_summed_across_groups(self, stats, league):
        board = stats.get_leaderboard()

        assert [(e["username"], e["rank"], e["total_points"]) for e in board] == [
            ("alice", 1, 8),
            ("carol", 2, 5),
            ("bob", 3, 0),
        ]
        leader = board[0]
        assert leader["display_name"] == "Ana Silva"
        assert leader["groups_participated"] == 2
        assert leader["total_predictions"] == 2
        assert leader["correct_predictions"] == 2
        assert leader["accuracy"] == 100.0

    def test_competition_filter(self, stats, league):
        board = stats.get_leaderboard(competition_id=2)

        assert [(e["username"], e["rank"], e["total_points"]) for e in board] == [
            ("carol", 1, 5),
            ("alice", 2, 3),
        ]
        assert board[1]["groups_participated"] == 1

    def test_limit(self, stats, league):
        assert [e["username"] for e in stats.get_leaderboard(limit=1)] == ["alice"]

    @pytest.mark.parametrize("limit", [0, -1, 201])
    def test_limit_out_of_range(self, stats, limit):
        with pytest.raises(PreconditionFailed):
            stats.get_leaderboard(limit=limit)

    def test_level_users_share_a_rank(self, stats, factory, propagator):
        group = factory.group()
        first, second, third = (factory.member(group) for _ in range(3))
        match = factory.finished_match(1, 0)
        factory.prediction(group, first, match, 1, 0)
        factory.prediction(group, second, match, 1, 0)
        factory.prediction(group, third, match, 2, 0)
        propagator.finalize_match_scoring(match.id)

        board = stats.get_leaderboard()

        assert [(e["rank"], e["total_points"]) for e in board] == [(1, 5), (1, 5), (3, 3)]

    def test_correct_predictions_break_point_ties(self, stats, factory, propagator):
        group = factory.group()
        db.session.execute(
            update(ScoringRule)
            .where(
                ScoringRule.group_id == group.id,
                ScoringRule.category == RuleCategory.EXACT_SCORE,
            )
            .values(points=6)
        )
        db.session.commit()
        steady, lucky = factory.member(group), factory.member(group)
        first = factory.finished_match(1, 0)
        second = factory.finished_match(2, 0)
        # steady: two correct winners, 3 + 3; lucky: one exact score, 6 + 0
        factory.prediction(group, steady, first, 2, 0)
        factory.prediction(group, steady, second, 3, 1)
        factory.prediction(group, lucky, first, 1, 0)
        factory.prediction(group, lucky, second, 0, 2)
        for match in (first, second):
            propagator.finalize_match_scoring(match.id)

        board = stats.get_leaderboard()

        assert [(e["user_id"], e["total_points"], e["rank"]) for e in board] == [
            (steady.id, 6, 1),
            (lucky.id, 6, 2),
        ]

    def test_empty(self, stats):
        assert stats.get_leaderboard() == []
