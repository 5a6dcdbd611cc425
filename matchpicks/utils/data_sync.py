import logging
import time
from functools import wraps

import requests
from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from matchpicks import db
from matchpicks.exceptions import ScoringError
from matchpicks.models import Match
from matchpicks.models.match import MatchStatus

logger = logging.getLogger(__name__)

DEFAULT_MATCHES_API_URL = "https://frozen-bet-ext-api.vercel.app/matches"


def rate_limit_decorator(max_retries=3, base_delay=1.0, backoff_factor=2.0):
    """
    Decorator to handle API rate limiting with exponential backoff
    """

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(self, *args, **kwargs)

                except requests.exceptions.HTTPError as e:
                    status_code = e.response.status_code if e.response is not None else 0
                    if status_code != 429 and status_code < 500:
                        raise
                    if attempt == max_retries - 1:
                        raise

                    delay = base_delay * (backoff_factor**attempt)
                    if status_code == 429:
                        delay = float(e.response.headers.get("Retry-After", delay))
                    logger.warning(
                        f"HTTP {status_code}. Waiting {delay}s before retry {attempt + 1}/{max_retries}"
                    )
                    time.sleep(delay)

                except requests.exceptions.RequestException as e:
                    if attempt == max_retries - 1:
                        raise
                    delay = base_delay * (backoff_factor**attempt)
                    logger.warning(
                        f"Request failed: {e}. Waiting {delay}s before retry {attempt + 1}/{max_retries}"
                    )
                    time.sleep(delay)

        return wrapper

    return decorator


class ResultSync:
    """
    Pulls match status and scores from the external matches feed and hands
    newly finished matches to the ranking propagator
    """

    def __init__(self, api_url=None, timeout=None, propagator=None):
        config = current_app.config if has_app_context() else {}
        self.api_url = api_url or config.get("MATCHES_API_URL", DEFAULT_MATCHES_API_URL)
        self.timeout = timeout or config.get("MATCHES_API_TIMEOUT", 30)
        self.propagator = propagator

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "MatchPicks/1.0"})

        # Rate limiting configuration
        self.last_request_time = 0
        self.min_request_interval = 0.5  # Minimum 500ms between requests

        self.last_stats = {}

    def _enforce_rate_limit(self):
        """Enforce a minimum interval between requests"""
        time_since_last = time.time() - self.last_request_time
        if time_since_last < self.min_request_interval:
            time.sleep(self.min_request_interval - time_since_last)

        self.last_request_time = time.time()

    @rate_limit_decorator(max_retries=3, base_delay=2.0)
    def _make_api_request(self, url, params=None):
        """Make API request with rate limiting and retry logic"""
        self._enforce_rate_limit()

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response

        except requests.exceptions.Timeout:
            logger.warning(f"Request timeout for {url}")
            raise
        except requests.exceptions.ConnectionError:
            logger.warning(f"Connection error for {url}")
            raise

    def fetch_matches(self):
        """
        Fetch the matches feed and keep the well-formed items

        Returns:
            list of dicts with at least an integer id and a string status

        Raises:
            ValueError: the feed is not a JSON list
        """
        response = self._make_api_request(self.api_url)
        payload = response.json()

        if not isinstance(payload, list):
            raise ValueError(
                f"Matches feed returned {type(payload).__name__}, expected a list"
            )

        items = []
        for item in payload:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed feed item: {item!r}")
                continue
            if not isinstance(item.get("id"), int) or not isinstance(
                item.get("status"), str
            ):
                logger.warning(f"Skipping feed item without id or status: {item!r}")
                continue
            items.append(item)

        return items

    def _apply_feed_item(self, match, item):
        """
        Bring one match in line with its feed item

        Returns:
            True when the match changed
        """
        status = item["status"].lower()
        home_score = item.get("homeScore")
        away_score = item.get("awayScore")
        has_scores = isinstance(home_score, int) and isinstance(away_score, int)

        if status not in MatchStatus.TRANSITIONS:
            logger.warning(f"Match {match.id}: unknown feed status '{item['status']}'")
            return False

        if match.status in MatchStatus.TERMINAL:
            if match.status != status or (
                has_scores and (home_score, away_score) != (match.home_score, match.away_score)
            ):
                logger.warning(
                    f"Match {match.id} is already {match.status}; ignoring feed "
                    f"status {status} {home_score}-{away_score}"
                )
            return False

        if status == MatchStatus.FINISHED:
            if not has_scores:
                logger.warning(f"Match {match.id} finished in feed without a score")
                return False
            match.update_score(home_score, away_score, is_final=True)
            return True

        changed = False
        if status != MatchStatus.SCHEDULED and status != match.status:
            match.transition_to(status)
            changed = True

        if (
            status == MatchStatus.LIVE
            and has_scores
            and (home_score, away_score) != (match.home_score, match.away_score)
        ):
            match.update_score(home_score, away_score)
            changed = True

        return changed

    def sync_results(self):
        """
        Update known matches from the feed, then score the newly finished ones

        Returns:
            tuple: (success, message); counts are kept in last_stats
        """
        stats = {"fetched": 0, "updated": 0, "unknown": 0, "finished": 0, "scored": 0}
        self.last_stats = stats
        newly_finished = []

        try:
            items = self.fetch_matches()
            stats["fetched"] = len(items)

            ids = [item["id"] for item in items]
            known = {
                match.id: match
                for match in db.session.execute(
                    select(Match).where(Match.id.in_(ids))
                ).scalars()
            }

            for item in items:
                match = known.get(item["id"])
                if match is None:
                    stats["unknown"] += 1
                    continue

                was_final = match.is_final
                try:
                    if not self._apply_feed_item(match, item):
                        continue
                except ScoringError as e:
                    logger.warning(f"Match {match.id}: {e.message}")
                    continue

                stats["updated"] += 1
                if match.is_scoreable and not was_final:
                    newly_finished.append(match.id)

            db.session.commit()

        except (requests.exceptions.RequestException, ValueError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error(f"Error syncing match results: {str(e)}")
            return False, str(e)

        stats["finished"] = len(newly_finished)
        stats["scored"] = self._score_finished(newly_finished)

        message = (
            f"Fetched {stats['fetched']} matches: {stats['updated']} updated, "
            f"{stats['finished']} finished, {stats['scored']} scored"
        )
        logger.info(message)
        return True, message

    def _score_finished(self, match_ids):
        if not match_ids:
            return 0

        propagator = self.propagator
        if propagator is None:
            from matchpicks.services.ranking_service import get_ranking_propagator

            propagator = get_ranking_propagator()

        scored = 0
        for match_id in match_ids:
            try:
                result = propagator.finalize_match_scoring(match_id)
            except (ScoringError, SQLAlchemyError) as e:
                # Left unclaimed; the pending sweep picks it up again
                logger.error(f"Error scoring synced match {match_id}: {str(e)}")
                continue
            if not result.already_scored:
                scored += 1

        return scored
