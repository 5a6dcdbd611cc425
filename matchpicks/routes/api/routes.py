from flask import jsonify, request

from matchpicks import db, limiter
from matchpicks.exceptions import PreconditionFailed
from matchpicks.routes.api import bp
from matchpicks.services.ranking_service import get_ranking_propagator
from matchpicks.services.scoring_repository import ScoringRepository
from matchpicks.services.statistics_service import StatisticsService
from matchpicks.utils.cache_utils import (
    cached_group_view,
    invalidate_group_rankings,
    rankings_cache_key,
)


def _parse_score(data, key):
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise PreconditionFailed(f"'{key}' must be a non-negative integer")
    return value


def _flag(value):
    return str(value).lower() in ("1", "true", "yes")


@bp.route("/matches/<int:match_id>")
def match_detail(match_id):
    """Get a single match"""
    match = ScoringRepository(db.session).get_match(match_id)
    return jsonify(match.to_dict())


@bp.route("/matches/<int:match_id>/score", methods=["POST"])
@limiter.limit("30 per minute")
def set_match_score(match_id):
    """Record a match score; a final score also scores every prediction"""
    data = request.get_json(silent=True) or {}

    home_score = _parse_score(data, "home_score")
    away_score = _parse_score(data, "away_score")
    is_final = _flag(data.get("is_final", False))

    match = ScoringRepository(db.session).get_match(match_id)
    match.update_score(home_score, away_score, is_final=is_final)
    db.session.commit()

    scoring = None
    if match.is_scoreable:
        scoring = get_ranking_propagator().finalize_match_scoring(match_id)

    return jsonify(
        {
            "match": match.to_dict(),
            "scoring": scoring.to_dict() if scoring else None,
        }
    )


@bp.route("/matches/<int:match_id>/finalize", methods=["POST"])
@limiter.limit("30 per minute")
def finalize_match(match_id):
    """Score an already finished match; ?strict=1 turns a repeat into 409"""
    strict = _flag(request.args.get("strict", ""))
    result = get_ranking_propagator().finalize_match_scoring(match_id, strict=strict)
    return jsonify(result.to_dict())


@cached_group_view(rankings_cache_key)
def _rankings_payload(group_id):
    group = ScoringRepository(db.session).get_group(group_id)
    return {
        "group_id": group.id,
        "group_name": group.name,
        "rankings": [ranking.to_dict() for ranking in group.get_rankings()],
    }


@bp.route("/groups/<int:group_id>/rankings")
def group_rankings(group_id):
    """Get the group leaderboard"""
    return jsonify(_rankings_payload(group_id))


@bp.route("/groups/<int:group_id>/scoring-rules")
def group_scoring_rules(group_id):
    """Get the group's scoring rules, highest value first"""
    group = ScoringRepository(db.session).get_group(group_id)
    return jsonify(
        {
            "group_id": group.id,
            "scoring_rules": [rule.to_dict() for rule in group.get_scoring_rules()],
        }
    )


@bp.route("/groups/<int:group_id>/rankings/recompute", methods=["POST"])
@limiter.limit("10 per minute")
def recompute_rankings(group_id):
    """Re-rank a group from its cached totals"""
    rankings = get_ranking_propagator().recompute_group_ranks(group_id)
    invalidate_group_rankings([group_id])
    return jsonify(
        {
            "group_id": group_id,
            "rankings": [ranking.to_dict() for ranking in rankings],
        }
    )


@bp.route("/users/<int:user_id>/statistics")
def user_statistics(user_id):
    """Get a user's prediction totals and rank in each group"""
    return jsonify(StatisticsService(db.session).get_user_statistics(user_id))


@bp.route("/groups/<int:group_id>/statistics")
def group_statistics(group_id):
    """Get a group's activity summary and top performers"""
    return jsonify(StatisticsService(db.session).get_group_statistics(group_id))


@bp.route("/leaderboard")
def leaderboard():
    """Get the cross-group leaderboard, optionally for one competition"""
    competition_id = request.args.get("competition_id", type=int)
    limit = request.args.get("limit", type=int)
    entries = StatisticsService(db.session).get_leaderboard(
        competition_id=competition_id, limit=limit
    )
    return jsonify(
        {
            "competition_id": competition_id,
            "leaderboard": entries,
        }
    )
