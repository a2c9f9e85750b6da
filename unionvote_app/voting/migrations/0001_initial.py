from decimal import Decimal

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies: list[tuple[str, str]] = []

    operations = [
        migrations.CreateModel(
            name="VotingInstance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("simple", "Simple"),
                            ("multiple", "Multiple choice"),
                            ("ranked", "Ranked"),
                            ("approval", "Approval"),
                        ],
                        default="simple",
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("scheduled", "Scheduled"),
                            ("active", "Active"),
                            ("paused", "Paused"),
                            ("ended", "Ended"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="draft",
                        max_length=16,
                    ),
                ),
                ("starts_at", models.DateTimeField(blank=True, null=True)),
                ("ends_at", models.DateTimeField(blank=True, null=True)),
                ("actual_start_at", models.DateTimeField(blank=True, null=True)),
                ("actual_end_at", models.DateTimeField(blank=True, null=True)),
                (
                    "visibility",
                    models.CharField(
                        choices=[
                            ("public", "Public"),
                            ("members_only", "Members only"),
                            ("board_only", "Board only"),
                            ("custom", "Custom"),
                        ],
                        default="members_only",
                        max_length=16,
                    ),
                ),
                ("requires_quorum", models.BooleanField(default=False)),
                (
                    "quorum_percentage",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("50.00"),
                        max_digits=5,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0")),
                            django.core.validators.MaxValueValidator(Decimal("100")),
                        ],
                    ),
                ),
                ("allow_abstention", models.BooleanField(default=True)),
                ("allow_vote_change", models.BooleanField(default=False)),
                ("is_anonymous", models.BooleanField(default=False)),
                ("is_secret", models.BooleanField(default=False)),
                ("requires_biometric", models.BooleanField(default=False)),
                (
                    "requires_step_up",
                    models.BooleanField(
                        default=False,
                        help_text=(
                            "Require any successful step-up verification (password or biometric) "
                            "before accepting a ballot."
                        ),
                    ),
                ),
                (
                    "max_votes_per_user",
                    models.PositiveSmallIntegerField(
                        default=1,
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                (
                    "ranked_method",
                    models.CharField(
                        choices=[("plurality", "First-preference plurality"), ("instant_runoff", "Instant runoff")],
                        default="plurality",
                        max_length=16,
                    ),
                ),
                (
                    "results_mode",
                    models.CharField(
                        choices=[("realtime", "Real-time"), ("on_close", "On close")],
                        default="realtime",
                        max_length=16,
                    ),
                ),
                (
                    "anonymization_timing",
                    models.CharField(
                        choices=[("immediate", "At cast time"), ("on_close", "At close")],
                        default="immediate",
                        max_length=16,
                    ),
                ),
                (
                    "confidence_level",
                    models.PositiveSmallIntegerField(choices=[(95, "95%"), (99, "99%")], default=95),
                ),
                ("eligible_roles", models.JSONField(blank=True, default=list)),
                ("eligible_departments", models.JSONField(blank=True, default=list)),
                ("allowed_member_ids", models.JSONField(blank=True, default=list)),
                ("denied_member_ids", models.JSONField(blank=True, default=list)),
                ("total_eligible", models.PositiveIntegerField(default=0)),
                ("total_votes", models.PositiveIntegerField(default=0)),
                ("total_abstentions", models.PositiveIntegerField(default=0)),
                ("total_participants", models.PositiveIntegerField(default=0)),
                (
                    "participation_rate",
                    models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5),
                ),
                ("quorum_reached", models.BooleanField(default=False)),
                ("is_tie", models.BooleanField(default=False)),
                ("result_version", models.PositiveIntegerField(default=0)),
                ("results_calculated_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                ("created_by", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ("-created_at", "id"),
                "indexes": [
                    models.Index(fields=["status", "starts_at"], name="voting_status_starts"),
                    models.Index(fields=["status", "ends_at"], name="voting_status_ends"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(starts_at__isnull=True)
                            | models.Q(ends_at__isnull=True)
                            | models.Q(ends_at__gt=models.F("starts_at"))
                        ),
                        name="votinginstance_ends_after_starts",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(quorum_percentage__gte=0) & models.Q(quorum_percentage__lte=100),
                        name="votinginstance_quorum_percentage_range",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(max_votes_per_user__gte=1),
                        name="votinginstance_max_votes_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="VotingOption",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("sort_order", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="options",
                        to="voting.votinginstance",
                    ),
                ),
            ],
            options={
                "ordering": ("sort_order", "id"),
                "constraints": [
                    models.UniqueConstraint(
                        fields=("instance", "sort_order"),
                        name="uniq_votingoption_instance_sort_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Ballot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("member_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("voter_token", models.CharField(max_length=64)),
                ("is_abstention", models.BooleanField(default=False)),
                (
                    "verification_method",
                    models.CharField(
                        choices=[
                            ("password", "Password"),
                            ("biometric", "Biometric"),
                            ("sms", "SMS"),
                            ("none", "None"),
                        ],
                        default="none",
                        max_length=16,
                    ),
                ),
                ("verification_digest", models.CharField(blank=True, default="", max_length=64)),
                ("verification_confidence", models.FloatField(blank=True, null=True)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("user_agent", models.TextField(blank=True, default="")),
                ("device_id", models.CharField(blank=True, default="", max_length=255)),
                ("ballot_hash", models.CharField(db_index=True, max_length=64)),
                ("cast_at", models.DateTimeField()),
                ("is_anonymized", models.BooleanField(default=False)),
                ("anonymized_at", models.DateTimeField(blank=True, null=True)),
                (
                    "instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ballots",
                        to="voting.votinginstance",
                    ),
                ),
                (
                    "superseded_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="supersedes",
                        to="voting.ballot",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["instance", "cast_at"], name="ballot_instance_cast_at"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(superseded_by__isnull=True),
                        fields=("instance", "voter_token"),
                        name="uniq_ballot_current_instance_voter",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BallotChoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("rank", models.PositiveSmallIntegerField(blank=True, null=True)),
                (
                    "ballot",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="choices",
                        to="voting.ballot",
                    ),
                ),
                (
                    "option",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="choices",
                        to="voting.votingoption",
                    ),
                ),
            ],
            options={
                "ordering": ("ballot", "rank", "id"),
                "constraints": [
                    models.UniqueConstraint(fields=("ballot", "option"), name="uniq_ballotchoice_ballot_option"),
                    models.UniqueConstraint(
                        condition=models.Q(rank__isnull=False),
                        fields=("ballot", "rank"),
                        name="uniq_ballotchoice_ballot_rank",
                    ),
                ],
            },
        ),
        migrations.AddField(
            model_name="ballot",
            name="options",
            field=models.ManyToManyField(
                related_name="ballots",
                through="voting.BallotChoice",
                to="voting.votingoption",
            ),
        ),
        migrations.CreateModel(
            name="ResultSnapshot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("version", models.PositiveIntegerField()),
                ("votes_count", models.PositiveIntegerField(default=0)),
                ("percentage", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                ("ranking_position", models.PositiveIntegerField()),
                ("is_winner", models.BooleanField(default=False)),
                (
                    "margin_of_victory",
                    models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5),
                ),
                ("statistical_data", models.JSONField(blank=True, default=dict)),
                ("is_voided", models.BooleanField(default=False)),
                ("calculated_at", models.DateTimeField()),
                (
                    "instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="results",
                        to="voting.votinginstance",
                    ),
                ),
                (
                    "option",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="results",
                        to="voting.votingoption",
                    ),
                ),
            ],
            options={
                "ordering": ("ranking_position", "option__sort_order", "option_id"),
                "indexes": [
                    models.Index(fields=["instance", "version"], name="result_instance_version"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("instance", "option", "version"),
                        name="uniq_resultsnapshot_instance_option_version",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="VotingAuditLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                ("event_type", models.CharField(max_length=64)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("is_public", models.BooleanField(default=False)),
                (
                    "instance",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_log",
                        to="voting.votinginstance",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Voting audit log entries",
                "ordering": ("timestamp", "id"),
                "indexes": [
                    models.Index(fields=["instance", "timestamp"], name="voting_audit_inst_ts"),
                    models.Index(fields=["instance", "is_public"], name="voting_audit_inst_pub"),
                ],
            },
        ),
    ]
