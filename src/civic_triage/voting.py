from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .config import ScoringWeights
from .db import adjust_priority_score, count_votes, delete_vote, get_issue, has_vote, insert_vote
from .errors import IssueNotFoundError
from .logger import get_logger

log = get_logger(__name__)

DEFAULT_VOTE_STEP = 5


@dataclass(frozen=True)
class VoteResult:
    voted: bool
    new_count: int
    priority_score: int

    def to_response(self) -> Dict[str, Any]:
        return {"voted": self.voted, "newCount": self.new_count, "priorityScore": self.priority_score}


def toggle_vote(
    db_path: str,
    issue_id: str,
    user_id: str,
    step: int = DEFAULT_VOTE_STEP,
    weights: ScoringWeights | None = None,
) -> VoteResult:
    """Add the user's vote if absent, remove it if present.

    The score moves by ``step`` in either direction within the scoring bounds.
    A duplicate insert lost to a concurrent toggle is a no-op.
    """
    w = weights or ScoringWeights()
    issue = get_issue(db_path, issue_id)
    if issue is None:
        raise IssueNotFoundError(issue_id)

    score: int | None = int(issue["priority_score"])
    if has_vote(db_path, issue_id, user_id):
        voted = False
        if delete_vote(db_path, issue_id, user_id):
            score = adjust_priority_score(db_path, issue_id, -step, floor=w.floor, cap=w.cap)
    else:
        voted = True
        if insert_vote(db_path, issue_id, user_id):
            score = adjust_priority_score(db_path, issue_id, step, floor=w.floor, cap=w.cap)

    new_count = count_votes(db_path, issue_id)
    log.debug("Vote toggle issue=%s user=%s voted=%s count=%d", issue_id, user_id, voted, new_count)
    return VoteResult(voted=voted, new_count=new_count, priority_score=int(score if score is not None else 0))
