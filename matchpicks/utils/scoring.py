"""
Scoring Engine for Match Picks

This module computes the points a single prediction earns for a finished
match, and assigns competition ranks to a sorted list of point totals.
It does no I/O; persistence and aggregation live in
matchpicks/services/ranking_service.py
"""


class RuleCategory:
    """Category tags a group scoring rule can carry"""

    EXACT_SCORE = "exact_score"
    CORRECT_WINNER = "correct_winner"
    CORRECT_DRAW = "correct_draw"
    CUSTOM = "custom"

    ALL = (EXACT_SCORE, CORRECT_WINNER, CORRECT_DRAW, CUSTOM)


class Outcome:
    """Result class of a scoreline"""

    HOME = "home"
    AWAY = "away"
    DRAW = "draw"


# Description keyword matched for rules without a category tag
RULE_KEYWORDS = {
    RuleCategory.EXACT_SCORE: "exact score",
    RuleCategory.CORRECT_WINNER: "correct winner",
    RuleCategory.CORRECT_DRAW: "correct draw",
}

DEFAULT_POINTS = {
    RuleCategory.EXACT_SCORE: 5,
    RuleCategory.CORRECT_WINNER: 3,
    RuleCategory.CORRECT_DRAW: 3,
}

# Seed rules every new group starts with: (description, points, category)
DEFAULT_RULES = [
    ("Exact score", 5, RuleCategory.EXACT_SCORE),
    ("Correct winner", 3, RuleCategory.CORRECT_WINNER),
    ("Correct draw", 3, RuleCategory.CORRECT_DRAW),
]


def classify_outcome(home_score, away_score):
    """Classify a scoreline as a home win, away win or draw"""
    if home_score > away_score:
        return Outcome.HOME
    if home_score < away_score:
        return Outcome.AWAY
    return Outcome.DRAW


def rule_points(rules, category):
    """
    Look up the points a group awards for a rule category.

    A rule tagged with the category wins. Untagged rules are matched by a
    case-insensitive search for the category keyword in their description.
    Falls back to the default value when nothing matches.

    Args:
        rules: iterable of objects with description, points and (optionally)
            category attributes; None is treated as an empty rule set
        category: one of the RuleCategory constants with a default value
    """
    rules = list(rules or [])

    for rule in rules:
        if getattr(rule, "category", None) == category:
            return rule.points

    keyword = RULE_KEYWORDS[category]
    for rule in rules:
        if getattr(rule, "category", None):
            continue
        description = getattr(rule, "description", None) or ""
        if keyword in description.lower():
            return rule.points

    return DEFAULT_POINTS[category]


def compute_points(predicted_home, predicted_away, actual_home, actual_away, rules):
    """
    Calculate points for a single prediction.

    Returns:
        exact score points when both scores match (never combined with
        winner/draw points), correct draw or correct winner points when the
        predicted outcome class matches the actual one, 0 otherwise
    """
    if predicted_home == actual_home and predicted_away == actual_away:
        return rule_points(rules, RuleCategory.EXACT_SCORE)

    predicted = classify_outcome(predicted_home, predicted_away)
    actual = classify_outcome(actual_home, actual_away)

    if predicted != actual:
        return 0

    if actual == Outcome.DRAW:
        return rule_points(rules, RuleCategory.CORRECT_DRAW)
    return rule_points(rules, RuleCategory.CORRECT_WINNER)


def assign_competition_ranks(totals):
    """
    Assign competition ranks to point totals sorted in descending order.

    Equal totals share the rank of the first tied entry; the next distinct
    total takes its 1-based position, so [10, 10, 7] ranks as [1, 1, 3].
    """
    ranks = []
    current_rank = 1
    for index, total in enumerate(totals):
        if index == 0 or totals[index - 1] != total:
            current_rank = index + 1
        ranks.append(current_rank)
    return ranks


def accuracy_percent(correct, total):
    """Share of predictions that earned points, as a percentage to 2 places"""
    if not total:
        return 0.0
    return round(correct / total * 100, 2)
