"""Result tabulation for voting instances.

Counting rules:

- Only current, non-abstention ballots are tallied. Abstentions count toward
  participation only.
- ``percentage`` is ``votes_count / counted ballots * 100`` rounded half-up to
  two places; every option shares that denominator.
- Positions use standard competition ranking (1, 1, 3, 4). Every option at
  position 1 wins; more than one winner means the instance is tied.
- Ranked instances count first preferences unless configured for instant
  runoff, in which case ``votes_count`` is the option's tally in the last
  round it took part in and ``statistical_data["method"]`` says so. Runoff
  winners come from the deciding round, and their percentages do not add
  up to 100.
- Confidence intervals treat each option's share as an independent binomial
  proportion over the counted ballots and are only produced from 30 ballots.

Each run writes a complete snapshot set under a new ``result_version`` and
drops the previous set in the same transaction. The version bump is
conditional on the version read at the start, so two overlapping runs
cannot both commit; the loser raises ComputationConflictError and is
retried.
"""

from __future__ import annotations

import datetime
import json
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.db.models import Count, Subquery
from django.utils import timezone

from voting.exceptions import QUORUM_NOT_REACHED, ComputationConflictError, VotingError
from voting.models import Ballot, BallotChoice, ResultSnapshot, VotingInstance, VotingOption

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
HUNDRED = Decimal("100.00")
TWO_PLACES = Decimal("0.01")

MIN_BALLOTS_FOR_INTERVAL = 30
Z_SCORES: dict[int, float] = {95: 1.96, 99: 2.58}

METHOD_COUNT = "count"
METHOD_FIRST_PREFERENCE = "first_preference"
METHOD_INSTANT_RUNOFF = "instant_runoff"


@dataclass(frozen=True)
class OptionCount:
    option_id: int
    sort_order: int
    votes_count: int


@dataclass(frozen=True)
class OptionResult:
    option_id: int
    votes_count: int
    percentage: Decimal
    ranking_position: int
    is_winner: bool
    margin_of_victory: Decimal
    statistical_data: dict[str, object]


@dataclass(frozen=True)
class Participation:
    total_eligible: int
    total_votes: int
    total_abstentions: int
    total_participants: int
    participation_rate: Decimal
    quorum_required: bool
    quorum_percentage: Decimal
    quorum_reached: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "total_eligible": self.total_eligible,
            "total_votes": self.total_votes,
            "total_abstentions": self.total_abstentions,
            "total_participants": self.total_participants,
            "participation_rate": str(self.participation_rate),
            "quorum_required": self.quorum_required,
            "quorum_percentage": str(self.quorum_percentage),
            "quorum_reached": self.quorum_reached,
        }


@dataclass(frozen=True)
class RunoffOutcome:
    final_counts: dict[int, int]
    counts_by_round: dict[int, list[int]]
    eliminated_in_round: dict[int, int]
    rounds: list[dict[str, object]]
    winners: frozenset[int]


@dataclass(frozen=True)
class TabulationResult:
    instance_id: int
    version: int
    method: str
    is_tie: bool
    is_voided: bool
    winners: tuple[int, ...]
    participation: Participation
    calculated_at: datetime.datetime
    snapshots: list[ResultSnapshot] = field(default_factory=list)
    rounds: list[dict[str, object]] = field(default_factory=list)

    @property
    def notices(self) -> list[str]:
        if self.participation.quorum_required and not self.participation.quorum_reached:
            return [QUORUM_NOT_REACHED]
        return []

    def summary(self) -> dict[str, object]:
        return {
            "version": self.version,
            "method": self.method,
            "is_tie": self.is_tie,
            "is_voided": self.is_voided,
            "winners": list(self.winners),
            "notices": self.notices,
            **self.participation.as_dict(),
        }


def round_percentage(numerator: int | Decimal, denominator: int | Decimal) -> Decimal:
    if not denominator:
        return ZERO
    value = (Decimal(numerator) * Decimal(100)) / Decimal(denominator)
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _quantize(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def competition_ranking(counts: Sequence[OptionCount]) -> list[tuple[OptionCount, int]]:
    """Order options by votes (then display order) with 1,1,3-style positions."""
    ordered = sorted(counts, key=lambda c: (-c.votes_count, c.sort_order, c.option_id))
    ranked: list[tuple[OptionCount, int]] = []
    position = 0
    previous_votes: int | None = None
    for index, count in enumerate(ordered, start=1):
        if count.votes_count != previous_votes:
            position = index
            previous_votes = count.votes_count
        ranked.append((count, position))
    return ranked


def margin_of_error(*, votes_count: int, total: int, confidence_level: int) -> Decimal | None:
    """Margin of error in percentage points, or None below the sample floor."""
    if total < MIN_BALLOTS_FOR_INTERVAL:
        return None
    z = Z_SCORES.get(int(confidence_level), Z_SCORES[95])
    proportion = min(1.0, votes_count / total)
    return _quantize(z * math.sqrt(proportion * (1 - proportion) / total) * 100)


def confidence_interval(
    *,
    percentage: Decimal,
    votes_count: int,
    total: int,
    confidence_level: int,
) -> dict[str, object] | None:
    moe = margin_of_error(votes_count=votes_count, total=total, confidence_level=confidence_level)
    if moe is None:
        return None
    return {
        "lower": max(ZERO, percentage - moe),
        "upper": min(HUNDRED, percentage + moe),
        "margin_of_error": moe,
        "confidence_level": int(confidence_level),
    }


def _runoff_elimination(lowest: Sequence[int], counts_by_round: dict[int, list[int]]) -> tuple[int, str | None]:
    """Pick the single option to drop from those tied on the lowest tally.

    Ties go to the option with fewer votes in the most recent earlier round
    where the tied options differ; if they never differ, the option listed
    last is dropped.
    """
    if len(lowest) == 1:
        return lowest[0], None
    history = {oid: tuple(reversed(counts_by_round[oid][:-1])) for oid in lowest}
    fewest = min(history.values())
    candidates = [oid for oid in lowest if history[oid] == fewest]
    if len(candidates) == 1:
        return candidates[0], "earlier_rounds"
    return candidates[-1], "option_order"


def instant_runoff(*, rankings: Iterable[Sequence[int]], option_ids: Iterable[int]) -> RunoffOutcome:
    """Instant-runoff count over ordered preference lists.

    Each round a ballot counts for its highest-ranked continuing option. An
    option holding more than half of the active ballots wins. Otherwise
    exactly one option with the lowest tally is eliminated (see
    ``_runoff_elimination`` for ties). When every continuing option holds
    the same tally they are all declared winners.

    ``option_ids`` order is the listing order used for the last tie-break.
    """
    ballots = [list(r) for r in rankings]
    order = list(dict.fromkeys(option_ids))
    continuing = set(order)
    final_counts = {oid: 0 for oid in order}
    counts_by_round: dict[int, list[int]] = {oid: [] for oid in order}
    eliminated_in_round: dict[int, int] = {}
    rounds: list[dict[str, object]] = []
    winners: frozenset[int] = frozenset()

    round_number = 0
    while continuing:
        round_number += 1
        counts = {oid: 0 for oid in continuing}
        active = 0
        for ranking in ballots:
            for oid in ranking:
                if oid in continuing:
                    counts[oid] += 1
                    active += 1
                    break

        for oid, votes in counts.items():
            final_counts[oid] = votes
            counts_by_round[oid].append(votes)

        round_payload: dict[str, object] = {
            "round": round_number,
            "counts": {str(oid): counts[oid] for oid in sorted(counts)},
            "active_ballots": active,
            "eliminated": [],
        }
        rounds.append(round_payload)

        if active == 0:
            break

        top = max(counts.values())
        if top * 2 > active or len(continuing) == 1:
            winners = frozenset(oid for oid, votes in counts.items() if votes == top)
            break

        low = min(counts.values())
        lowest = [oid for oid in order if oid in continuing and counts[oid] == low]
        if len(lowest) == len(continuing):
            winners = frozenset(continuing)
            break

        dropped, tie_break = _runoff_elimination(lowest, counts_by_round)
        eliminated_in_round[dropped] = round_number
        round_payload["eliminated"] = [dropped]
        if tie_break is not None:
            round_payload["tied_lowest"] = list(lowest)
            round_payload["tie_break"] = tie_break
        continuing.discard(dropped)

    return RunoffOutcome(
        final_counts=final_counts,
        counts_by_round=counts_by_round,
        eliminated_in_round=eliminated_in_round,
        rounds=rounds,
        winners=winners,
    )


def compute_option_results(
    *,
    counts: Sequence[OptionCount],
    total_ballots: int,
    confidence_level: int,
    method: str,
    extra_data: dict[int, dict[str, object]] | None = None,
    total_selections: int | None = None,
    winner_ids: frozenset[int] | None = None,
) -> list[OptionResult]:
    """Percentages, positions, winners and margins for a list of tallies.

    Winners are the options at position 1 unless ``winner_ids`` is given,
    as for instant runoff where the last round decides.
    """
    extra_data = extra_data or {}
    ranked = competition_ranking(counts)

    percentages = {count.option_id: round_percentage(count.votes_count, total_ballots) for count, _ in ranked}
    has_votes = total_ballots > 0 and any(count.votes_count > 0 for count, _ in ranked)

    if winner_ids is None:
        winner_ids = frozenset(count.option_id for count, position in ranked if position == 1)
    if not has_votes:
        winner_ids = frozenset()

    top_percentage = max((percentages[oid] for oid in winner_ids), default=ZERO)
    runner_up = max((p for oid, p in percentages.items() if oid not in winner_ids), default=ZERO)
    top_margin = ZERO if len(winner_ids) > 1 else top_percentage - runner_up

    results: list[OptionResult] = []
    for count, position in ranked:
        percentage = percentages[count.option_id]
        is_winner = count.option_id in winner_ids
        margin = top_margin if is_winner else ZERO

        interval = confidence_interval(
            percentage=percentage,
            votes_count=count.votes_count,
            total=total_ballots,
            confidence_level=confidence_level,
        )
        data: dict[str, object] = {
            "method": method,
            "total_ballots": total_ballots,
            "proportion": round(count.votes_count / total_ballots, 6) if total_ballots else 0.0,
            "confidence_level": int(confidence_level),
            "margin_of_error": interval["margin_of_error"] if interval else None,
            "confidence_interval": interval,
        }
        if total_selections is not None:
            data["selection_share"] = round_percentage(count.votes_count, total_selections)
        if is_winner and interval is not None:
            data["is_statistically_significant"] = bool(margin > interval["margin_of_error"])
        data.update(extra_data.get(count.option_id, {}))

        results.append(
            OptionResult(
                option_id=count.option_id,
                votes_count=count.votes_count,
                percentage=percentage,
                ranking_position=position,
                is_winner=is_winner,
                margin_of_victory=margin,
                statistical_data=data,
            )
        )
    return results


def compute_participation(
    *,
    instance: VotingInstance,
    total_votes: int,
    total_abstentions: int,
) -> Participation:
    total_participants = total_votes + total_abstentions
    total_eligible = int(instance.total_eligible or 0)
    rate = min(HUNDRED, round_percentage(total_participants, total_eligible)) if total_eligible > 0 else ZERO

    quorum_percentage = Decimal(instance.quorum_percentage or 0).quantize(TWO_PLACES)
    quorum_required = bool(instance.requires_quorum)
    if quorum_required:
        quorum_reached = total_eligible > 0 and rate >= quorum_percentage
    else:
        quorum_reached = True

    return Participation(
        total_eligible=total_eligible,
        total_votes=total_votes,
        total_abstentions=total_abstentions,
        total_participants=total_participants,
        participation_rate=rate,
        quorum_required=quorum_required,
        quorum_percentage=quorum_percentage,
        quorum_reached=quorum_reached,
    )


def _jsonify(data: dict[str, object]) -> dict[str, object]:
    """Normalize Decimal values to JSON-safe types for JSONField storage."""
    normalized = json.loads(json.dumps(data, cls=DjangoJSONEncoder))
    if isinstance(normalized, dict):
        return normalized
    raise VotingError("Statistical data serialization failed")


def ballot_totals(instance: VotingInstance) -> tuple[int, int]:
    current = Ballot.objects.for_instance(instance=instance).current()
    total_votes = current.filter(is_abstention=False).count()
    total_abstentions = current.filter(is_abstention=True).count()
    return total_votes, total_abstentions


def _counted_choices(instance: VotingInstance):
    return BallotChoice.objects.filter(
        ballot__instance=instance,
        ballot__superseded_by__isnull=True,
        ballot__is_abstention=False,
    )


def _ranked_preferences(instance: VotingInstance) -> list[list[int]]:
    by_ballot: dict[int, list[int]] = {}
    rows = _counted_choices(instance).order_by("ballot_id", "rank", "id").values_list("ballot_id", "option_id")
    for ballot_id, option_id in rows:
        by_ballot.setdefault(int(ballot_id), []).append(int(option_id))
    return [by_ballot[ballot_id] for ballot_id in sorted(by_ballot)]


@dataclass(frozen=True)
class CountedOptions:
    counts: list[OptionCount]
    method: str
    extra: dict[int, dict[str, object]] = field(default_factory=dict)
    rounds: list[dict[str, object]] = field(default_factory=list)
    total_selections: int | None = None
    winner_ids: frozenset[int] | None = None


def _count_options(*, instance: VotingInstance, options: Sequence[VotingOption]) -> CountedOptions:
    # Deactivated options are still tallied; deactivation only affects casting.
    option_ids = [int(o.pk) for o in options]
    sort_order_by_id = {int(o.pk): int(o.sort_order) for o in options}

    if instance.type == VotingInstance.Type.ranked and instance.ranked_method == VotingInstance.RankedMethod.instant_runoff:
        outcome = instant_runoff(rankings=_ranked_preferences(instance), option_ids=option_ids)
        counts = [
            OptionCount(option_id=oid, sort_order=sort_order_by_id[oid], votes_count=outcome.final_counts.get(oid, 0))
            for oid in option_ids
        ]
        # Eliminated options keep the tally of the round they left in, so
        # percentages across options add up to more than 100.
        extra = {
            oid: {
                "counts_by_round": outcome.counts_by_round.get(oid, []),
                "eliminated_in_round": outcome.eliminated_in_round.get(oid),
                "percentage_basis": "last_round_tally",
                "percentages_sum_to_100": False,
            }
            for oid in option_ids
        }
        return CountedOptions(
            counts=counts,
            method=METHOD_INSTANT_RUNOFF,
            extra=extra,
            rounds=outcome.rounds,
            winner_ids=outcome.winners,
        )

    choices = _counted_choices(instance)
    method = METHOD_COUNT
    if instance.type == VotingInstance.Type.ranked:
        choices = choices.filter(rank=1)
        method = METHOD_FIRST_PREFERENCE

    tallies = {
        int(row["option_id"]): int(row["votes"])
        for row in choices.values("option_id").annotate(votes=Count("id")).order_by()
    }
    counts = [
        OptionCount(option_id=oid, sort_order=sort_order_by_id[oid], votes_count=tallies.get(oid, 0))
        for oid in option_ids
    ]

    total_selections: int | None = None
    if instance.type in {VotingInstance.Type.multiple, VotingInstance.Type.approval}:
        total_selections = sum(tallies.values())

    return CountedOptions(counts=counts, method=method, total_selections=total_selections)


def _tabulate_once(*, instance: VotingInstance, voided: bool) -> TabulationResult:
    with transaction.atomic():
        locked = VotingInstance.objects.select_for_update().get(pk=instance.pk)
        expected_version = int(locked.result_version)

        options = list(VotingOption.objects.filter(instance=locked).order_by("sort_order", "id"))
        total_votes, total_abstentions = ballot_totals(locked)
        counted = _count_options(instance=locked, options=options)

        option_results = compute_option_results(
            counts=counted.counts,
            total_ballots=total_votes,
            confidence_level=int(locked.confidence_level),
            method=counted.method,
            extra_data=counted.extra,
            total_selections=counted.total_selections,
            winner_ids=counted.winner_ids,
        )
        participation = compute_participation(
            instance=locked,
            total_votes=total_votes,
            total_abstentions=total_abstentions,
        )
        winners = tuple(r.option_id for r in option_results if r.is_winner)
        is_tie = len(winners) > 1

        calculated_at = timezone.now()
        new_version = expected_version + 1

        updated = VotingInstance.objects.filter(pk=locked.pk, result_version=expected_version).update(
            result_version=new_version,
            results_calculated_at=calculated_at,
            total_votes=participation.total_votes,
            total_abstentions=participation.total_abstentions,
            total_participants=participation.total_participants,
            participation_rate=participation.participation_rate,
            quorum_reached=participation.quorum_reached,
            is_tie=is_tie,
        )
        if updated != 1:
            raise ComputationConflictError(f"Snapshot version {expected_version} was superseded concurrently")

        snapshots = ResultSnapshot.objects.bulk_create(
            [
                ResultSnapshot(
                    instance=locked,
                    option_id=r.option_id,
                    version=new_version,
                    votes_count=r.votes_count,
                    percentage=r.percentage,
                    ranking_position=r.ranking_position,
                    is_winner=r.is_winner,
                    margin_of_victory=r.margin_of_victory,
                    statistical_data=_jsonify(r.statistical_data),
                    is_voided=voided,
                    calculated_at=calculated_at,
                )
                for r in option_results
            ]
        )
        ResultSnapshot.objects.filter(instance=locked).exclude(version=new_version).delete()

    return TabulationResult(
        instance_id=int(locked.pk),
        version=new_version,
        method=counted.method,
        is_tie=is_tie,
        is_voided=voided,
        winners=winners,
        participation=participation,
        calculated_at=calculated_at,
        snapshots=snapshots,
        rounds=counted.rounds,
    )


def tabulate(*, instance: VotingInstance, voided: bool | None = None) -> TabulationResult:
    """Recompute and atomically replace the instance's result snapshots.

    Cancelled instances produce a voided set unless ``voided`` says otherwise.
    Concurrent-run conflicts are retried up to VOTING_TABULATION_MAX_RETRIES.
    """
    if voided is None:
        voided = instance.status == VotingInstance.Status.cancelled

    max_attempts = max(1, int(settings.VOTING_TABULATION_MAX_RETRIES))
    for attempt in range(1, max_attempts + 1):
        try:
            result = _tabulate_once(instance=instance, voided=voided)
        except ComputationConflictError:
            logger.warning(
                "voting.tabulation.conflict instance_id=%s attempt=%d",
                instance.pk,
                attempt,
                extra={
                    "event": "voting.tabulation.conflict",
                    "component": "voting",
                    "outcome": "retry",
                    "instance_id": instance.pk,
                },
            )
            if attempt == max_attempts:
                raise
            continue

        instance.result_version = result.version
        instance.results_calculated_at = result.calculated_at
        instance.total_votes = result.participation.total_votes
        instance.total_abstentions = result.participation.total_abstentions
        instance.total_participants = result.participation.total_participants
        instance.participation_rate = result.participation.participation_rate
        instance.quorum_reached = result.participation.quorum_reached
        instance.is_tie = result.is_tie

        logger.debug(
            "Tabulated instance=%s version=%s votes=%s winners=%s",
            instance.pk,
            result.version,
            result.participation.total_votes,
            result.winners,
        )
        return result

    raise ComputationConflictError("Tabulation did not complete")


def current_results(*, instance: VotingInstance):
    """The committed snapshot set, read in a single statement."""
    version = VotingInstance.objects.filter(pk=instance.pk).values("result_version")[:1]
    return (
        ResultSnapshot.objects.filter(instance_id=instance.pk, version=Subquery(version))
        .select_related("option")
        .order_by("ranking_position", "option__sort_order", "option_id")
    )


def serialize_snapshot(snapshot: ResultSnapshot) -> dict[str, object]:
    return {
        "option_id": snapshot.option_id,
        "option_title": snapshot.option.title,
        "votes_count": snapshot.votes_count,
        "percentage": str(snapshot.percentage),
        "ranking_position": snapshot.ranking_position,
        "is_winner": snapshot.is_winner,
        "margin_of_victory": str(snapshot.margin_of_victory),
        "statistical_data": snapshot.statistical_data,
        "is_voided": snapshot.is_voided,
        "calculated_at": snapshot.calculated_at.isoformat(),
    }


def voting_statistics(*, instance: VotingInstance) -> dict[str, object]:
    """Participation, quorum and per-option summary for an instance."""
    snapshots = list(current_results(instance=instance))
    winners = [s.option_id for s in snapshots if s.is_winner]
    return {
        "instance_id": instance.pk,
        "status": instance.status,
        "total_eligible": instance.total_eligible,
        "total_votes": instance.total_votes,
        "total_abstentions": instance.total_abstentions,
        "total_participants": instance.total_participants,
        "participation_rate": str(instance.participation_rate),
        "requires_quorum": instance.requires_quorum,
        "quorum_percentage": str(instance.quorum_percentage),
        "quorum_reached": instance.quorum_reached,
        "is_tie": instance.is_tie,
        "winners": winners,
        "result_version": instance.result_version,
        "results_calculated_at": (
            instance.results_calculated_at.isoformat() if instance.results_calculated_at else None
        ),
        "options": [
            {
                "id": s.option_id,
                "title": s.option.title,
                "votes": s.votes_count,
                "percentage": str(s.percentage),
                "ranking_position": s.ranking_position,
            }
            for s in snapshots
        ],
    }
