#!/usr/bin/env python3
"""
Match Picks Management CLI

This script provides command-line management for the Match Picks service:
database setup, groups, match results, scoring and rankings.
"""

import logging

import click
from flask.cli import with_appcontext
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from matchpicks import create_app, db
from matchpicks.exceptions import ScoringError
from matchpicks.models import Group, Match, Prediction, User
from matchpicks.models.match import MatchStatus
from matchpicks.services.ranking_service import get_ranking_propagator
from matchpicks.services.scoring_repository import ScoringRepository
from matchpicks.services.statistics_service import StatisticsService
from matchpicks.utils.cache_utils import invalidate_group_rankings
from matchpicks.utils.data_sync import ResultSync


def _find_user(username):
    return db.session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()


@click.group()
def cli():
    """Match Picks Management CLI"""
    pass


# Database Commands
@cli.group("db-cmd")
def db_cmd():
    """Database commands"""
    pass


@db_cmd.command("init")
@with_appcontext
def init_db():
    """Initialize database tables"""
    try:
        db.create_all()
        click.echo("✅ Database tables created successfully!")
    except SQLAlchemyError as e:
        click.echo(f"❌ Error initializing database: {str(e)}")


@db_cmd.command()
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@with_appcontext
def reset(yes):
    """⚠️  DANGER: Drop and recreate all tables"""
    if not yes and not click.confirm("This will DELETE ALL DATA. Are you sure?"):
        click.echo("Cancelled.")
        return

    try:
        db.drop_all()
        db.create_all()
        click.echo("✅ Database reset successfully!")
    except SQLAlchemyError as e:
        click.echo(f"❌ Error resetting database: {str(e)}")


# User Commands
@cli.group()
def user():
    """User commands"""
    pass


@user.command("create")
@click.argument("username")
@click.option("--first-name", help="First name")
@click.option("--last-name", help="Last name")
@with_appcontext
def create_user(username, first_name, last_name):
    """Create a user"""
    try:
        new_user = User(username=username, first_name=first_name, last_name=last_name)
        db.session.add(new_user)
        db.session.commit()
        click.echo(f"✅ Created user {username} (id {new_user.id})")
    except IntegrityError:
        db.session.rollback()
        click.echo(f"❌ User {username} already exists!")


# Group Commands
@cli.group()
def group():
    """Group commands"""
    pass


@group.command("create")
@click.argument("name")
@click.argument("owner")
@click.option("--competition-id", type=int, required=True, help="Competition id")
@click.option("--description", help="Group description")
@with_appcontext
def create_group(name, owner, competition_id, description):
    """Create a group owned by OWNER with the default scoring rules"""
    owner_user = _find_user(owner)
    if not owner_user:
        click.echo(f"❌ User {owner} not found!")
        return

    try:
        new_group = Group.create_with_default_rules(
            name, owner_user.id, competition_id, description=description
        )
        db.session.commit()
        click.echo(f"✅ Created group '{name}' (id {new_group.id})")
        for rule in new_group.get_scoring_rules():
            click.echo(f"   {rule.description}: {rule.points} pts")
    except SQLAlchemyError as e:
        db.session.rollback()
        click.echo(f"❌ Database error creating group: {str(e)}")
        logging.error(f"Group creation failed - SQL error: {e}")


@group.command("add-member")
@click.argument("group_id", type=int)
@click.argument("username")
@with_appcontext
def add_member(group_id, username):
    """Add a user to a group"""
    member = _find_user(username)
    if not member:
        click.echo(f"❌ User {username} not found!")
        return

    try:
        target = ScoringRepository(db.session).get_group(group_id)
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    added, message = target.add_member(member.id)
    if not added:
        click.echo(f"⚠️  {message}")
        return

    db.session.commit()
    click.echo(f"✅ Added {username} to group '{target.name}'")


# Match Commands
@cli.group()
def match():
    """Match commands"""
    pass


@match.command("create")
@click.argument("home_team")
@click.argument("away_team")
@click.option("--competition-id", type=int, required=True, help="Competition id")
@click.option(
    "--date",
    "scheduled_date",
    type=click.DateTime(formats=["%Y-%m-%d %H:%M", "%Y-%m-%d"]),
    required=True,
    help="Kick-off (YYYY-MM-DD HH:MM)",
)
@click.option("--location", help="Venue")
@with_appcontext
def create_match(home_team, away_team, competition_id, scheduled_date, location):
    """Create a scheduled match"""
    try:
        new_match = Match(
            competition_id=competition_id,
            home_team=home_team,
            away_team=away_team,
            scheduled_date=scheduled_date,
            location=location,
        )
        db.session.add(new_match)
        db.session.commit()
        click.echo(f"✅ Created match {home_team} vs {away_team} (id {new_match.id})")
    except IntegrityError as e:
        db.session.rollback()
        click.echo(f"❌ Invalid match: {str(e.orig)}")


@match.command("score")
@click.argument("match_id", type=int)
@click.argument("home_score", type=click.IntRange(min=0))
@click.argument("away_score", type=click.IntRange(min=0))
@click.option("--final", "is_final", is_flag=True, help="Mark the match finished and score it")
@with_appcontext
def score_match(match_id, home_score, away_score, is_final):
    """Record a match score"""
    try:
        target = ScoringRepository(db.session).get_match(match_id)
        target.update_score(home_score, away_score, is_final=is_final)
        db.session.commit()
        click.echo(
            f"✅ {target.home_team} {home_score}-{away_score} {target.away_team} "
            f"({target.status})"
        )

        if target.is_scoreable:
            result = get_ranking_propagator().finalize_match_scoring(match_id)
            click.echo(
                f"🏆 Scored {result.predictions_scored} predictions in "
                f"{len(result.groups_updated)} groups"
            )
    except ScoringError as e:
        db.session.rollback()
        click.echo(f"❌ {e.message}")


# Prediction Commands
@cli.group()
def prediction():
    """Prediction commands"""
    pass


@prediction.command("add")
@click.argument("group_id", type=int)
@click.argument("username")
@click.argument("match_id", type=int)
@click.argument("home_score", type=click.IntRange(min=0))
@click.argument("away_score", type=click.IntRange(min=0))
@with_appcontext
def add_prediction(group_id, username, match_id, home_score, away_score):
    """Record a user's prediction for a match in a group"""
    predictor = _find_user(username)
    if not predictor:
        click.echo(f"❌ User {username} not found!")
        return

    target = db.session.get(Match, match_id)
    if not target:
        click.echo(f"❌ Match {match_id} not found!")
        return
    if target.status != MatchStatus.SCHEDULED or target.has_started():
        click.echo(f"❌ Match {match_id} has already started, predictions are closed")
        return

    try:
        db.session.add(
            Prediction(
                user_id=predictor.id,
                match_id=match_id,
                group_id=group_id,
                home_score_prediction=home_score,
                away_score_prediction=away_score,
            )
        )
        db.session.commit()
        click.echo(f"✅ {username} predicts {home_score}-{away_score} for match {match_id}")
    except IntegrityError:
        db.session.rollback()
        click.echo("❌ Prediction already exists or references a missing record!")


# Scoring Commands
@cli.group()
def scoring():
    """Scoring commands"""
    pass


@scoring.command()
@click.argument("match_id", type=int)
@click.option("--strict", is_flag=True, help="Fail if the match was already scored")
@with_appcontext
def finalize(match_id, strict):
    """Score every prediction of a finished match"""
    try:
        result = get_ranking_propagator().finalize_match_scoring(match_id, strict=strict)
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    if result.already_scored:
        click.echo(f"⚠️  Match {match_id} was already scored")
    else:
        click.echo(
            f"✅ Scored {result.predictions_scored} predictions in "
            f"{len(result.groups_updated)} groups"
        )


@scoring.command()
@click.option("--limit", type=int, help="Maximum number of matches to score")
@with_appcontext
def pending(limit):
    """Score finished matches that were never scored"""
    results, failed = get_ranking_propagator().score_pending_matches(limit=limit)

    if not results and not failed:
        click.echo("No pending matches.")
        return

    for result in results:
        click.echo(
            f"✅ Match {result.match_id}: {result.predictions_scored} predictions scored"
        )
    for match_id in failed:
        click.echo(f"❌ Match {match_id}: scoring failed, see logs")


# Ranking Commands
@cli.group()
def rankings():
    """Ranking commands"""
    pass


@rankings.command()
@click.argument("group_id", type=int)
@with_appcontext
def recompute(group_id):
    """Re-rank a group from its cached totals"""
    try:
        rows = get_ranking_propagator().recompute_group_ranks(group_id)
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    invalidate_group_rankings([group_id])
    click.echo(f"✅ Re-ranked {len(rows)} members of group {group_id}")


@rankings.command()
@click.argument("group_id", type=int)
@with_appcontext
def show(group_id):
    """Print a group leaderboard"""
    try:
        target = ScoringRepository(db.session).get_group(group_id)
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    rows = target.get_rankings()
    click.echo(f"🏆 {target.name}")
    if not rows:
        click.echo("No scored predictions yet.")
        return

    for row in rows:
        change = row.rank_change
        marker = ""
        if change:
            marker = f" ({'+' if change > 0 else ''}{change})"
        click.echo(
            f"  {row.rank or '-':>3}. {row.user.username:<20} "
            f"{row.total_points:>4} pts  {row.correct_predictions}/"
            f"{row.total_predictions}{marker}"
        )


@rankings.command()
@click.argument("group_id", type=int)
@with_appcontext
def verify(group_id):
    """Compare cached totals with scored predictions"""
    try:
        problems = get_ranking_propagator().check_group_consistency(group_id)
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    if not problems:
        click.echo(f"✅ Group {group_id} totals are consistent")
        return

    click.echo(f"⚠️  {len(problems)} inconsistent members in group {group_id}:")
    for problem in problems:
        click.echo(
            f"  user {problem['user_id']}: expected {problem['expected_points']} pts "
            f"over {problem['expected_predictions']}, ranking has "
            f"{problem['ranking_points']} over {problem['ranking_predictions']}, "
            f"member total {problem['member_points']}"
        )


@rankings.command("leaderboard")
@click.option("--competition-id", type=int, help="Only count groups for this competition")
@click.option("--limit", default=20, show_default=True, type=int)
@with_appcontext
def leaderboard(competition_id, limit):
    """Print the cross-group leaderboard"""
    try:
        entries = StatisticsService(db.session).get_leaderboard(
            competition_id=competition_id, limit=limit
        )
    except ScoringError as e:
        click.echo(f"❌ {e.message}")
        return

    scope = f"competition {competition_id}" if competition_id else "all groups"
    click.echo(f"🌍 Leaderboard ({scope})")
    if not entries:
        click.echo("No scored predictions yet.")
        return

    for entry in entries:
        click.echo(
            f"  {entry['rank']:>3}. {entry['display_name']:<24} "
            f"{entry['total_points']:>4} pts  {entry['accuracy']}% accurate, "
            f"{entry['groups_participated']} groups"
        )


# Sync Commands
@cli.group()
def sync():
    """Data synchronization commands"""
    pass


@sync.command()
@with_appcontext
def results():
    """Pull match results from the feed and score finished matches"""
    click.echo("Syncing match results...")
    success, message = ResultSync().sync_results()

    if success:
        click.echo(f"✅ {message}")
    else:
        click.echo(f"❌ {message}")


@cli.command()
@with_appcontext
def status():
    """Show application status"""
    click.echo("📊 Match Picks Status")
    click.echo("=" * 30)

    def count(stmt):
        return db.session.execute(stmt).scalar()

    click.echo(f"👥 Users: {count(select(func.count(User.id)))}")
    click.echo(f"🏆 Groups: {count(select(func.count(Group.id)))}")

    total = count(select(func.count(Match.id)))
    finished = count(
        select(func.count(Match.id)).where(Match.status == MatchStatus.FINISHED)
    )
    scored = count(select(func.count(Match.id)).where(Match.scored_at.is_not(None)))
    click.echo(f"⚽ Matches: {finished}/{total} finished, {scored} scored")

    unscored = len(ScoringRepository(db.session).get_unscored_finished_match_ids())
    if unscored:
        click.echo(f"⚠️  {unscored} finished matches waiting to be scored")

    predictions = count(select(func.count(Prediction.id)))
    click.echo(f"🎯 Predictions: {predictions}")


if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        cli()
