import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import models

from voting.directory import Member, get_member_directory
from voting.exceptions import (
    AlreadyVotedError,
    ExcludedError,
    IneligibleError,
    InstanceNotActiveError,
    NotEligibleError,
)
from voting.models import Ballot, VotingInstance

logger = logging.getLogger(__name__)


class Ineligibility(models.TextChoices):
    not_active = "not_active", "This voting is not accepting ballots."
    already_voted = "already_voted", "You have already voted in this voting."
    not_eligible = "not_eligible", "You are not eligible to vote in this voting."
    excluded = "excluded", "You have been excluded from this voting."


_ERROR_BY_REASON: dict[str, type[IneligibleError]] = {
    Ineligibility.not_active: InstanceNotActiveError,
    Ineligibility.already_voted: AlreadyVotedError,
    Ineligibility.not_eligible: NotEligibleError,
    Ineligibility.excluded: ExcludedError,
}


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    reason: Ineligibility | None = None

    @property
    def message(self) -> str:
        return self.reason.label if self.reason is not None else ""

    def as_dict(self) -> dict[str, object]:
        return {
            "eligible": self.eligible,
            "reason": str(self.reason) if self.reason is not None else None,
            "message": self.message,
        }

    def raise_for_reason(self) -> None:
        if self.reason is None:
            return
        error_class = _ERROR_BY_REASON[self.reason]
        raise error_class(self.message, reason=str(self.reason))


_ELIGIBLE = EligibilityDecision(eligible=True)


def _normalized(values: object) -> set[str]:
    if not isinstance(values, list):
        return set()
    return {str(v).strip().lower() for v in values if str(v).strip()}


def _member_ids(values: object) -> set[str]:
    if not isinstance(values, list):
        return set()
    return {str(v).strip() for v in values if str(v).strip()}


def _has_criteria(instance: VotingInstance) -> bool:
    return bool(
        _member_ids(instance.allowed_member_ids)
        or _normalized(instance.eligible_roles)
        or _normalized(instance.eligible_departments)
    )


def _matches_criteria(*, instance: VotingInstance, member: Member) -> bool:
    if member.id in _member_ids(instance.allowed_member_ids):
        return True
    if member.roles & _normalized(instance.eligible_roles):
        return True
    department = member.department.strip().lower()
    return bool(department) and department in _normalized(instance.eligible_departments)


def satisfies_visibility(*, instance: VotingInstance, member: Member) -> bool:
    """Rule 3: visibility criteria, independent of ballots and status."""
    visibility = instance.visibility
    if visibility == VotingInstance.Visibility.public:
        return True

    if visibility == VotingInstance.Visibility.board_only:
        board_role = str(settings.VOTING_BOARD_ROLE or "").strip().lower()
        if board_role and board_role in member.roles:
            return True
        return _matches_criteria(instance=instance, member=member)

    if visibility == VotingInstance.Visibility.members_only and not _has_criteria(instance):
        return True

    # custom visibility without any criteria admits nobody.
    return _matches_criteria(instance=instance, member=member)


def is_excluded(*, instance: VotingInstance, member_id: str) -> bool:
    return str(member_id).strip() in _member_ids(instance.denied_member_ids)


def has_counted_ballot(*, instance: VotingInstance, member_id: str) -> bool:
    voter_token = Ballot.compute_voter_token(instance_id=instance.pk, member_id=str(member_id))
    return Ballot.objects.counted().filter(instance=instance, voter_token=voter_token).exists()


def can_vote(*, instance: VotingInstance, member: Member | None) -> EligibilityDecision:
    """Decide whether ``member`` may cast a ballot in ``instance`` right now.

    Rules are evaluated in order and the first failing rule wins. This has no
    side effects; the ballot ledger re-runs it under the instance lock.
    """
    if instance.status != VotingInstance.Status.active:
        return EligibilityDecision(eligible=False, reason=Ineligibility.not_active)

    if member is None:
        return EligibilityDecision(eligible=False, reason=Ineligibility.not_eligible)

    if not instance.allow_vote_change and has_counted_ballot(instance=instance, member_id=member.id):
        return EligibilityDecision(eligible=False, reason=Ineligibility.already_voted)

    # Inactive members are never eligible, whatever the visibility.
    if not member.is_active or not satisfies_visibility(instance=instance, member=member):
        return EligibilityDecision(eligible=False, reason=Ineligibility.not_eligible)

    if is_excluded(instance=instance, member_id=member.id):
        return EligibilityDecision(eligible=False, reason=Ineligibility.excluded)

    return _ELIGIBLE


def eligible_universe(*, instance: VotingInstance) -> list[Member]:
    """Members who satisfy the instance's criteria, ignoring status and ballots."""
    members = [
        member
        for member in get_member_directory().list_members()
        if member.is_active
        and satisfies_visibility(instance=instance, member=member)
        and not is_excluded(instance=instance, member_id=member.id)
    ]
    logger.debug(
        "Eligible universe resolved: instance=%s visibility=%s eligible=%s",
        instance.pk,
        instance.visibility,
        len(members),
    )
    return members


def eligible_member_count(*, instance: VotingInstance) -> int:
    return len(eligible_universe(instance=instance))
