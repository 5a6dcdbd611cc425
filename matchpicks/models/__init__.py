from matchpicks import db  # noqa: F401 - imported for model imports

from .group import Group
from .group_member import GroupMember
from .group_ranking import GroupRanking
from .match import Match
from .prediction import Prediction
from .scoring_rule import ScoringRule
from .user import User

__all__ = [
    "User",
    "Group",
    "GroupMember",
    "ScoringRule",
    "Match",
    "Prediction",
    "GroupRanking",
]
