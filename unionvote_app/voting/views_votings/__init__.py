"""Voting JSON views.

All public view functions are re-exported here so that ``voting.urls`` can
reference ``views_votings.<view_name>``.
"""

from voting.views_votings.crud import (
    voting_delete,
    voting_detail,
    voting_option_add,
    voting_option_remove,
    voting_update,
    votings,
)
from voting.views_votings.lifecycle import (
    voting_cancel,
    voting_end,
    voting_pause,
    voting_resume,
    voting_schedule,
    voting_start,
)
from voting.views_votings.results import voting_public_audit, voting_results, voting_statistics_view
from voting.views_votings.vote import voting_eligibility, voting_my_vote, voting_vote_submit

__all__ = [
    "voting_cancel",
    "voting_delete",
    "voting_detail",
    "voting_eligibility",
    "voting_end",
    "voting_my_vote",
    "voting_option_add",
    "voting_option_remove",
    "voting_pause",
    "voting_public_audit",
    "voting_results",
    "voting_resume",
    "voting_schedule",
    "voting_start",
    "voting_statistics_view",
    "voting_update",
    "voting_vote_submit",
    "votings",
]
