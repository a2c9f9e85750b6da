import datetime
import logging
from typing import override

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from voting.lifecycle import sweep

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Start scheduled votings whose start time has arrived and close active "
        "votings whose end time has passed. Closing computes the final results."
    )

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without changing any voting.",
        )
        parser.add_argument(
            "--now",
            default="",
            help="Evaluate the schedule at this ISO 8601 timestamp instead of the current time.",
        )

    def _parse_now(self, raw: str) -> datetime.datetime:
        if not raw:
            return timezone.now()
        parsed = parse_datetime(raw)
        if parsed is None:
            raise CommandError(f"Invalid --now timestamp: {raw}")
        if timezone.is_naive(parsed):
            parsed = timezone.make_aware(parsed, datetime.UTC)
        return parsed

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))
        now = self._parse_now(str(options.get("now") or "").strip())

        result = sweep(now=now, dry_run=dry_run)

        prefix = "[dry-run] Would " if dry_run else ""
        for instance_id in result.activated:
            self.stdout.write(f"{prefix}{'start' if dry_run else 'Started'} voting {instance_id}")
        for instance_id in result.closed:
            self.stdout.write(f"{prefix}{'close' if dry_run else 'Closed'} voting {instance_id}")
        for instance_id, error in result.failed:
            self.stderr.write(f"Failed to process voting {instance_id}: {error}")

        logger.info(
            "voting.sweep.completed activated=%d closed=%d failed=%d dry_run=%s",
            len(result.activated),
            len(result.closed),
            len(result.failed),
            dry_run,
            extra={
                "event": "voting.sweep.completed",
                "component": "voting",
                "outcome": "partial" if result.failed else "success",
            },
        )
        self.stdout.write(
            f"Sweep complete: {len(result.activated)} started, {len(result.closed)} closed, {len(result.failed)} failed."
        )
