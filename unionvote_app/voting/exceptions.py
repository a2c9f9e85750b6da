"""Voting core exception classes."""

QUORUM_NOT_REACHED = "quorum_not_reached"


class VotingError(Exception):
    code = "voting_error"


class IneligibleError(VotingError):
    code = "ineligible"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.code


class InstanceNotActiveError(IneligibleError):
    code = "not_active"


class AlreadyVotedError(IneligibleError):
    code = "already_voted"


class NotEligibleError(IneligibleError):
    code = "not_eligible"


class ExcludedError(IneligibleError):
    code = "excluded"


class InvalidSelectionError(VotingError):
    code = "invalid_selection"


class VerificationRequiredError(VotingError):
    """Raised when a ballot needs step-up verification that was not attempted."""

    code = "verification_required"


class VerificationFailedError(VotingError):
    """Raised when verification was attempted and rejected, timed out or was throttled."""

    code = "verification_failed"

    def __init__(self, message: str, *, failure_reason: str = "") -> None:
        super().__init__(message)
        self.failure_reason = failure_reason


class DuplicateVoteError(VotingError):
    """Raised when the storage-level uniqueness constraint rejects a ballot."""

    code = "duplicate_vote"


class InvalidTransitionError(VotingError):
    code = "invalid_transition"


class ComputationConflictError(VotingError):
    """Raised when another tabulation committed a newer snapshot set first."""

    code = "computation_conflict"


__all__ = [
    "QUORUM_NOT_REACHED",
    "VotingError",
    "IneligibleError",
    "InstanceNotActiveError",
    "AlreadyVotedError",
    "NotEligibleError",
    "ExcludedError",
    "InvalidSelectionError",
    "VerificationRequiredError",
    "VerificationFailedError",
    "DuplicateVoteError",
    "InvalidTransitionError",
    "ComputationConflictError",
]
