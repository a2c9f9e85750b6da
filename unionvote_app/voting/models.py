from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal
from typing import override

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q


class VotingInstanceQuerySet(models.QuerySet["VotingInstance"]):
    def due_for_activation(self, *, now) -> VotingInstanceQuerySet:
        return self.filter(status="scheduled", starts_at__lte=now)

    def due_for_closing(self, *, now) -> VotingInstanceQuerySet:
        return self.filter(status="active", ends_at__isnull=False, ends_at__lte=now)


class VotingInstance(models.Model):
    class Type(models.TextChoices):
        simple = "simple", "Simple"
        multiple = "multiple", "Multiple choice"
        ranked = "ranked", "Ranked"
        approval = "approval", "Approval"

    class Status(models.TextChoices):
        draft = "draft", "Draft"
        scheduled = "scheduled", "Scheduled"
        active = "active", "Active"
        paused = "paused", "Paused"
        ended = "ended", "Ended"
        cancelled = "cancelled", "Cancelled"

    class Visibility(models.TextChoices):
        public = "public", "Public"
        members_only = "members_only", "Members only"
        board_only = "board_only", "Board only"
        custom = "custom", "Custom"

    class RankedMethod(models.TextChoices):
        plurality = "plurality", "First-preference plurality"
        instant_runoff = "instant_runoff", "Instant runoff"

    class ResultsMode(models.TextChoices):
        realtime = "realtime", "Real-time"
        on_close = "on_close", "On close"

    class AnonymizationTiming(models.TextChoices):
        immediate = "immediate", "At cast time"
        on_close = "on_close", "At close"

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    type = models.CharField(max_length=16, choices=Type.choices, default=Type.simple)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.draft, db_index=True)

    starts_at = models.DateTimeField(blank=True, null=True)
    ends_at = models.DateTimeField(blank=True, null=True)
    actual_start_at = models.DateTimeField(blank=True, null=True)
    actual_end_at = models.DateTimeField(blank=True, null=True)

    visibility = models.CharField(max_length=16, choices=Visibility.choices, default=Visibility.members_only)

    requires_quorum = models.BooleanField(default=False)
    quorum_percentage = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("50.00"),
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))],
    )

    allow_abstention = models.BooleanField(default=True)
    allow_vote_change = models.BooleanField(default=False)
    is_anonymous = models.BooleanField(default=False)
    is_secret = models.BooleanField(default=False)
    requires_biometric = models.BooleanField(default=False)
    requires_step_up = models.BooleanField(
        default=False,
        help_text="Require any successful step-up verification (password or biometric) before accepting a ballot.",
    )
    max_votes_per_user = models.PositiveSmallIntegerField(default=1, validators=[MinValueValidator(1)])

    ranked_method = models.CharField(max_length=16, choices=RankedMethod.choices, default=RankedMethod.plurality)
    results_mode = models.CharField(max_length=16, choices=ResultsMode.choices, default=ResultsMode.realtime)
    anonymization_timing = models.CharField(
        max_length=16,
        choices=AnonymizationTiming.choices,
        default=AnonymizationTiming.immediate,
    )
    confidence_level = models.PositiveSmallIntegerField(choices=[(95, "95%"), (99, "99%")], default=95)

    # Eligibility criteria. Empty lists mean "no criterion of this kind".
    eligible_roles = models.JSONField(blank=True, default=list)
    eligible_departments = models.JSONField(blank=True, default=list)
    allowed_member_ids = models.JSONField(blank=True, default=list)
    denied_member_ids = models.JSONField(blank=True, default=list)

    # Denormalized counters. Always derivable from the ballot set.
    total_eligible = models.PositiveIntegerField(default=0)
    total_votes = models.PositiveIntegerField(default=0)
    total_abstentions = models.PositiveIntegerField(default=0)
    total_participants = models.PositiveIntegerField(default=0)
    participation_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    quorum_reached = models.BooleanField(default=False)
    is_tie = models.BooleanField(default=False)

    result_version = models.PositiveIntegerField(default=0)
    results_calculated_at = models.DateTimeField(blank=True, null=True)

    cancellation_reason = models.TextField(blank=True, default="")
    created_by = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = VotingInstanceQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at", "id")
        constraints = [
            models.CheckConstraint(
                condition=Q(starts_at__isnull=True) | Q(ends_at__isnull=True) | Q(ends_at__gt=F("starts_at")),
                name="votinginstance_ends_after_starts",
            ),
            models.CheckConstraint(
                condition=Q(quorum_percentage__gte=0) & Q(quorum_percentage__lte=100),
                name="votinginstance_quorum_percentage_range",
            ),
            models.CheckConstraint(
                condition=Q(max_votes_per_user__gte=1),
                name="votinginstance_max_votes_positive",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "starts_at"], name="voting_status_starts"),
            models.Index(fields=["status", "ends_at"], name="voting_status_ends"),
        ]

    def __str__(self) -> str:
        return self.title

    @property
    def is_terminal(self) -> bool:
        return self.status in {self.Status.ended, self.Status.cancelled}


class VotingOption(models.Model):
    instance = models.ForeignKey(VotingInstance, on_delete=models.CASCADE, related_name="options")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    sort_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ("sort_order", "id")
        constraints = [
            models.UniqueConstraint(
                fields=["instance", "sort_order"],
                name="uniq_votingoption_instance_sort_order",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.instance_id}:{self.title}"


class BallotQuerySet(models.QuerySet["Ballot"]):
    def for_instance(self, *, instance: VotingInstance) -> BallotQuerySet:
        return self.filter(instance=instance)

    def current(self) -> BallotQuerySet:
        return self.filter(superseded_by__isnull=True)

    def counted(self) -> BallotQuerySet:
        return self.current().filter(is_abstention=False)


class Ballot(models.Model):
    class VerificationMethod(models.TextChoices):
        password = "password", "Password"
        biometric = "biometric", "Biometric"
        sms = "sms", "SMS"
        none = "none", "None"

    instance = models.ForeignKey(VotingInstance, on_delete=models.CASCADE, related_name="ballots")

    # Nullable so secret ballots can drop the member link after anonymization.
    member_id = models.CharField(max_length=255, blank=True, null=True, db_index=True)
    # HMAC of (instance, member); survives anonymization for duplicate prevention.
    voter_token = models.CharField(max_length=64)

    is_abstention = models.BooleanField(default=False)
    options = models.ManyToManyField(VotingOption, through="BallotChoice", related_name="ballots")

    verification_method = models.CharField(
        max_length=16,
        choices=VerificationMethod.choices,
        default=VerificationMethod.none,
    )
    verification_digest = models.CharField(max_length=64, blank=True, default="")
    verification_confidence = models.FloatField(blank=True, null=True)

    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, default="")
    device_id = models.CharField(max_length=255, blank=True, default="")

    ballot_hash = models.CharField(max_length=64, db_index=True)
    cast_at = models.DateTimeField()

    is_anonymized = models.BooleanField(default=False)
    anonymized_at = models.DateTimeField(blank=True, null=True)

    superseded_by = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="supersedes",
    )

    objects = BallotQuerySet.as_manager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["instance", "voter_token"],
                name="uniq_ballot_current_instance_voter",
                condition=Q(superseded_by__isnull=True),
            ),
        ]
        indexes = [
            models.Index(fields=["instance", "cast_at"], name="ballot_instance_cast_at"),
        ]

    def __str__(self) -> str:
        return f"ballot:{self.instance_id}:{self.ballot_hash[:12]}"

    @override
    def save(self, *args, **kwargs) -> None:
        # Supersession and anonymization go through queryset updates.
        if not self._state.adding:
            raise ValueError("Recorded ballots are immutable")
        super().save(*args, **kwargs)

    @classmethod
    def compute_voter_token(cls, *, instance_id: int, member_id: str) -> str:
        return hmac.new(
            key=str(settings.SECRET_KEY).encode("utf-8"),
            msg=f"voter:{instance_id}:{member_id}".encode(),
            digestmod=hashlib.sha256,
        ).hexdigest()

    @classmethod
    def compute_hash(
        cls,
        *,
        instance_id: int,
        voter_token: str,
        selection: object,
        nonce: str,
    ) -> str:
        payload: dict[str, object] = {
            "instance_id": instance_id,
            "voter_token": voter_token,
            "selection": selection,
            "nonce": nonce,
        }

        data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return hashlib.sha256(data).hexdigest()


class BallotChoice(models.Model):
    ballot = models.ForeignKey(Ballot, on_delete=models.CASCADE, related_name="choices")
    # Options stay tallyable once referenced by a ballot.
    option = models.ForeignKey(VotingOption, on_delete=models.PROTECT, related_name="choices")
    rank = models.PositiveSmallIntegerField(blank=True, null=True)

    class Meta:
        ordering = ("ballot", "rank", "id")
        constraints = [
            models.UniqueConstraint(fields=["ballot", "option"], name="uniq_ballotchoice_ballot_option"),
            models.UniqueConstraint(
                fields=["ballot", "rank"],
                name="uniq_ballotchoice_ballot_rank",
                condition=Q(rank__isnull=False),
            ),
        ]

    def __str__(self) -> str:
        return f"{self.ballot_id}:{self.option_id}"


class ResultSnapshot(models.Model):
    instance = models.ForeignKey(VotingInstance, on_delete=models.CASCADE, related_name="results")
    option = models.ForeignKey(VotingOption, on_delete=models.PROTECT, related_name="results")
    version = models.PositiveIntegerField()

    votes_count = models.PositiveIntegerField(default=0)
    percentage = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    ranking_position = models.PositiveIntegerField()
    is_winner = models.BooleanField(default=False)
    margin_of_victory = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    statistical_data = models.JSONField(blank=True, default=dict)
    is_voided = models.BooleanField(default=False)
    calculated_at = models.DateTimeField()

    class Meta:
        ordering = ("ranking_position", "option__sort_order", "option_id")
        constraints = [
            models.UniqueConstraint(
                fields=["instance", "option", "version"],
                name="uniq_resultsnapshot_instance_option_version",
            ),
        ]
        indexes = [
            models.Index(fields=["instance", "version"], name="result_instance_version"),
        ]

    def __str__(self) -> str:
        return f"{self.instance_id}:{self.option_id}@{self.version}"


class VotingAuditLogEntry(models.Model):
    # Entries outlive a deleted draft; the payload keeps its id.
    instance = models.ForeignKey(
        VotingInstance,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_log",
    )
    timestamp = models.DateTimeField(auto_now_add=True)
    event_type = models.CharField(max_length=64)
    payload = models.JSONField(blank=True, default=dict)
    is_public = models.BooleanField(default=False)

    class Meta:
        verbose_name_plural = "Voting audit log entries"
        ordering = ("timestamp", "id")
        indexes = [
            models.Index(fields=["instance", "timestamp"], name="voting_audit_inst_ts"),
            models.Index(fields=["instance", "is_public"], name="voting_audit_inst_pub"),
        ]

    def __str__(self) -> str:
        return f"{self.instance_id}:{self.event_type}"
