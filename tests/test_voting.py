from __future__ import annotations

import pytest

from civic_triage.config import ScoringWeights
from civic_triage.db import count_votes, delete_issue, get_issue, insert_vote, list_timeline, update_issue
from civic_triage.errors import IssueNotFoundError
from civic_triage.voting import toggle_vote


def test_vote_then_unvote(initialized_db, make_issue):
    issue = make_issue()
    assert issue["priority_score"] == 50

    first = toggle_vote(initialized_db, issue["id"], "alice")
    assert first.voted is True
    assert first.new_count == 1
    assert first.priority_score == 55

    second = toggle_vote(initialized_db, issue["id"], "alice")
    assert second.voted is False
    assert second.new_count == 0
    assert second.priority_score == 50
    assert second.to_response() == {"voted": False, "newCount": 0, "priorityScore": 50}


def test_unvote_revote_round_trip(initialized_db, make_issue):
    issue = make_issue()
    toggle_vote(initialized_db, issue["id"], "alice")
    toggle_vote(initialized_db, issue["id"], "bob")
    before = count_votes(initialized_db, issue["id"])
    score_before = get_issue(initialized_db, issue["id"])["priority_score"]

    toggle_vote(initialized_db, issue["id"], "bob")
    restored = toggle_vote(initialized_db, issue["id"], "bob")

    assert restored.new_count == before == 2
    assert restored.priority_score == score_before


def test_duplicate_insert_is_a_noop(initialized_db, make_issue):
    issue = make_issue()
    assert insert_vote(initialized_db, issue["id"], "carol") is True
    assert insert_vote(initialized_db, issue["id"], "carol") is False
    assert count_votes(initialized_db, issue["id"]) == 1


def test_votes_are_per_user(initialized_db, make_issue):
    issue = make_issue()
    for user in ("a", "b", "c"):
        result = toggle_vote(initialized_db, issue["id"], user)
    assert result.new_count == 3
    assert result.priority_score == 65


def test_score_stays_within_bounds(initialized_db, make_issue):
    issue = make_issue()
    update_issue(initialized_db, issue["id"], {"priority_score": 98})
    assert toggle_vote(initialized_db, issue["id"], "dave").priority_score == 100

    update_issue(initialized_db, issue["id"], {"priority_score": 2})
    assert toggle_vote(initialized_db, issue["id"], "dave").priority_score == 0


def test_custom_step(initialized_db, make_issue):
    issue = make_issue()
    result = toggle_vote(initialized_db, issue["id"], "erin", step=1, weights=ScoringWeights())
    assert result.priority_score == 51


def test_vote_on_missing_issue(initialized_db):
    with pytest.raises(IssueNotFoundError):
        toggle_vote(initialized_db, "nope", "alice")


def test_deleting_issue_cascades_to_votes(initialized_db, make_issue):
    issue = make_issue()
    toggle_vote(initialized_db, issue["id"], "citizen-2")

    assert delete_issue(initialized_db, issue["id"]) is True
    assert count_votes(initialized_db, issue["id"]) == 0
    assert list_timeline(initialized_db, issue["id"]) == []
    assert delete_issue(initialized_db, issue["id"]) is False
