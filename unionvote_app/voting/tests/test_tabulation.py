from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase, override_settings

from voting import tabulation
from voting.exceptions import QUORUM_NOT_REACHED, ComputationConflictError
from voting.models import ResultSnapshot, VotingInstance, VotingOption
from voting.tabulation import (
    OptionCount,
    competition_ranking,
    current_results,
    instant_runoff,
    margin_of_error,
    round_percentage,
    tabulate,
    voting_statistics,
)
from voting.tests.utils import add_ballot, add_ballots, make_voting


class TabulationMathTests(SimpleTestCase):
    def test_round_percentage_is_half_up(self) -> None:
        self.assertEqual(round_percentage(1, 8), Decimal("12.50"))
        self.assertEqual(round_percentage(1, 3), Decimal("33.33"))
        self.assertEqual(round_percentage(2, 3), Decimal("66.67"))
        self.assertEqual(round_percentage(1, 160), Decimal("0.63"))
        self.assertEqual(round_percentage(5, 0), Decimal("0.00"))

    def test_competition_ranking_shares_positions_and_skips(self) -> None:
        counts = [
            OptionCount(option_id=1, sort_order=1, votes_count=5),
            OptionCount(option_id=2, sort_order=2, votes_count=7),
            OptionCount(option_id=3, sort_order=3, votes_count=7),
            OptionCount(option_id=4, sort_order=4, votes_count=1),
        ]

        ranked = [(c.option_id, position) for c, position in competition_ranking(counts)]

        self.assertEqual(ranked, [(2, 1), (3, 1), (1, 3), (4, 4)])

    def test_margin_of_error_requires_thirty_ballots(self) -> None:
        self.assertIsNone(margin_of_error(votes_count=15, total=29, confidence_level=95))
        self.assertEqual(margin_of_error(votes_count=60, total=100, confidence_level=95), Decimal("9.60"))
        self.assertEqual(margin_of_error(votes_count=60, total=100, confidence_level=99), Decimal("12.64"))

    def test_instant_runoff_eliminates_lowest_and_transfers(self) -> None:
        outcome = instant_runoff(
            rankings=[[1, 2], [1, 2], [2, 1], [3, 2], [3, 2]],
            option_ids=[1, 2, 3],
        )

        self.assertEqual(outcome.winners, frozenset({1}))
        self.assertEqual(outcome.final_counts, {1: 3, 2: 1, 3: 2})
        self.assertEqual(outcome.counts_by_round[1], [2, 3])
        self.assertEqual(outcome.eliminated_in_round, {2: 1})
        self.assertEqual(len(outcome.rounds), 2)
        self.assertEqual(outcome.rounds[0]["eliminated"], [2])

    def test_instant_runoff_declares_tie_when_all_remaining_are_level(self) -> None:
        outcome = instant_runoff(rankings=[[1], [2]], option_ids=[1, 2, 3])

        # Option 3 has no support and goes first; 1 and 2 are then tied.
        self.assertEqual(outcome.eliminated_in_round, {3: 1})
        self.assertEqual(outcome.winners, frozenset({1, 2}))

    def test_instant_runoff_transfers_later_preferences(self) -> None:
        outcome = instant_runoff(
            rankings=[[1], [1], [2], [2], [3, 1]],
            option_ids=[1, 2, 3],
        )

        self.assertEqual(outcome.winners, frozenset({1}))
        self.assertEqual(outcome.final_counts[1], 3)

    def test_instant_runoff_drops_one_option_when_lowest_is_tied(self) -> None:
        rankings = [[1]] * 4 + [[2, 3]] * 3 + [[3, 2]] * 3

        outcome = instant_runoff(rankings=rankings, option_ids=[1, 2, 3])

        # 2 and 3 tie on 3 votes in the first round; dropping both would hand
        # option 1 the win with 4 of 10.
        self.assertEqual(outcome.winners, frozenset({2}))
        self.assertEqual(outcome.eliminated_in_round, {3: 1})
        self.assertEqual(outcome.rounds[0]["eliminated"], [3])
        self.assertEqual(outcome.rounds[0]["tied_lowest"], [2, 3])
        self.assertEqual(outcome.rounds[0]["tie_break"], "option_order")
        self.assertEqual(outcome.rounds[1]["counts"], {"1": 4, "2": 6})

    def test_instant_runoff_tie_break_prefers_earlier_round_tallies(self) -> None:
        rankings = [[1]] * 5 + [[2]] * 2 + [[3]] * 3 + [[4, 2]]

        outcome = instant_runoff(rankings=rankings, option_ids=[1, 2, 3, 4])

        # Round 2 leaves 2 and 3 level on 3; 2 had fewer in round 1.
        self.assertEqual(outcome.eliminated_in_round, {4: 1, 2: 2})
        self.assertEqual(outcome.rounds[1]["tie_break"], "earlier_rounds")
        self.assertNotIn("tie_break", outcome.rounds[0])
        self.assertEqual(outcome.winners, frozenset({1}))


class TabulateTests(TestCase):
    def test_sixty_forty_simple_result(self) -> None:
        instance, (yes, no) = make_voting(requires_quorum=True, quorum_percentage=Decimal("50.00"), total_eligible=100)
        add_ballots(instance, 60, yes.pk, prefix="y")
        add_ballots(instance, 40, no.pk, prefix="n")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[yes.pk].votes_count, 60)
        self.assertEqual(rows[yes.pk].percentage, Decimal("60.00"))
        self.assertEqual(rows[yes.pk].ranking_position, 1)
        self.assertTrue(rows[yes.pk].is_winner)
        self.assertEqual(rows[yes.pk].margin_of_victory, Decimal("20.00"))
        self.assertEqual(rows[no.pk].percentage, Decimal("40.00"))
        self.assertEqual(rows[no.pk].ranking_position, 2)
        self.assertFalse(rows[no.pk].is_winner)
        self.assertEqual(rows[no.pk].margin_of_victory, Decimal("0.00"))

        self.assertEqual(result.winners, (yes.pk,))
        self.assertFalse(result.is_tie)
        self.assertEqual(result.participation.participation_rate, Decimal("100.00"))
        self.assertTrue(result.participation.quorum_reached)

        data = rows[yes.pk].statistical_data
        self.assertEqual(data["method"], "count")
        self.assertEqual(data["margin_of_error"], "9.60")
        self.assertEqual(data["confidence_interval"]["lower"], "50.40")
        self.assertEqual(data["confidence_interval"]["upper"], "69.60")
        self.assertTrue(data["is_statistically_significant"])

        instance.refresh_from_db()
        self.assertEqual(instance.total_votes, 100)
        self.assertEqual(instance.result_version, 1)
        self.assertTrue(instance.quorum_reached)

    def test_exact_tie_has_multiple_winners(self) -> None:
        instance, (a, b, c) = make_voting(options=("A", "B", "C"), total_eligible=10)
        add_ballots(instance, 2, a.pk, prefix="a")
        add_ballots(instance, 2, b.pk, prefix="b")
        add_ballots(instance, 1, c.pk, prefix="c")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[a.pk].ranking_position, 1)
        self.assertEqual(rows[b.pk].ranking_position, 1)
        self.assertEqual(rows[c.pk].ranking_position, 3)
        self.assertTrue(rows[a.pk].is_winner)
        self.assertTrue(rows[b.pk].is_winner)
        self.assertFalse(rows[c.pk].is_winner)
        self.assertEqual(rows[a.pk].margin_of_victory, Decimal("0.00"))
        self.assertTrue(result.is_tie)
        instance.refresh_from_db()
        self.assertTrue(instance.is_tie)

    def test_percentages_close_to_one_hundred(self) -> None:
        instance, options = make_voting(options=("A", "B", "C"))
        for option in options:
            add_ballots(instance, 1, option.pk, prefix=f"o{option.pk}-")

        result = tabulate(instance=instance)

        total = sum((s.percentage for s in result.snapshots), Decimal("0"))
        self.assertLessEqual(abs(total - Decimal("100.00")), Decimal("0.01") * len(options))

    def test_ranking_positions_are_monotonic(self) -> None:
        instance, (a, b, c, d) = make_voting(options=("A", "B", "C", "D"))
        add_ballots(instance, 3, c.pk, prefix="c")
        add_ballots(instance, 5, a.pk, prefix="a")
        add_ballots(instance, 3, d.pk, prefix="d")

        tabulate(instance=instance)

        rows = list(current_results(instance=instance))
        for earlier, later in zip(rows, rows[1:]):
            self.assertGreaterEqual(earlier.votes_count, later.votes_count)
            self.assertLessEqual(earlier.ranking_position, later.ranking_position)
            if earlier.votes_count == later.votes_count:
                self.assertEqual(earlier.ranking_position, later.ranking_position)
        self.assertEqual([r.ranking_position for r in rows], [1, 2, 2, 4])

    def test_tabulating_twice_is_idempotent(self) -> None:
        instance, (yes, no) = make_voting()
        add_ballots(instance, 3, yes.pk, prefix="y")
        add_ballots(instance, 1, no.pk, prefix="n")

        def fingerprint() -> list[tuple]:
            return [
                (
                    s.option_id,
                    s.votes_count,
                    s.percentage,
                    s.ranking_position,
                    s.is_winner,
                    s.margin_of_victory,
                    s.statistical_data,
                    s.is_voided,
                )
                for s in current_results(instance=instance)
            ]

        tabulate(instance=instance)
        first = fingerprint()
        tabulate(instance=instance)
        second = fingerprint()

        self.assertEqual(first, second)
        instance.refresh_from_db()
        self.assertEqual(instance.result_version, 2)
        # Only the committed set is kept.
        self.assertEqual(set(ResultSnapshot.objects.filter(instance=instance).values_list("version", flat=True)), {2})

    def test_abstentions_count_toward_participation_only(self) -> None:
        instance, (yes, _no) = make_voting(total_eligible=10)
        add_ballots(instance, 3, yes.pk, prefix="y")
        add_ballot(instance, "abstainer", abstain=True)

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[yes.pk].votes_count, 3)
        self.assertEqual(rows[yes.pk].percentage, Decimal("100.00"))
        self.assertEqual(result.participation.total_votes, 3)
        self.assertEqual(result.participation.total_abstentions, 1)
        self.assertEqual(result.participation.total_participants, 4)
        self.assertEqual(result.participation.participation_rate, Decimal("40.00"))

    def test_quorum_shortfall_is_reported_as_notice(self) -> None:
        instance, (yes, no) = make_voting(requires_quorum=True, quorum_percentage=Decimal("50.00"), total_eligible=100)
        add_ballots(instance, 25, yes.pk, prefix="y")
        add_ballots(instance, 15, no.pk, prefix="n")

        result = tabulate(instance=instance)

        self.assertEqual(result.participation.participation_rate, Decimal("40.00"))
        self.assertFalse(result.participation.quorum_reached)
        self.assertEqual(result.notices, [QUORUM_NOT_REACHED])

    def test_no_ballots_means_no_winner(self) -> None:
        instance, _options = make_voting()

        result = tabulate(instance=instance)

        self.assertEqual(result.winners, ())
        self.assertFalse(result.is_tie)
        self.assertTrue(all(s.percentage == Decimal("0.00") for s in result.snapshots))
        self.assertTrue(all(s.statistical_data["confidence_interval"] is None for s in result.snapshots))

    def test_multiple_choice_counts_every_selected_option(self) -> None:
        instance, (a, b, c) = make_voting(options=("A", "B", "C"), type=VotingInstance.Type.multiple, max_votes_per_user=2)
        add_ballots(instance, 2, a.pk, b.pk, prefix="ab")
        add_ballots(instance, 1, a.pk, c.pk, prefix="ac")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[a.pk].votes_count, 3)
        self.assertEqual(rows[a.pk].percentage, Decimal("100.00"))
        self.assertEqual(rows[b.pk].percentage, Decimal("66.67"))
        self.assertEqual(rows[a.pk].statistical_data["selection_share"], "50.00")

    def test_ranked_plurality_counts_first_preferences(self) -> None:
        instance, (a, b, c) = make_voting(options=("A", "B", "C"), type=VotingInstance.Type.ranked)
        add_ballots(instance, 2, a.pk, b.pk, ranked=True, prefix="ab")
        add_ballots(instance, 1, b.pk, a.pk, ranked=True, prefix="ba")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[a.pk].votes_count, 2)
        self.assertEqual(rows[b.pk].votes_count, 1)
        self.assertEqual(rows[c.pk].votes_count, 0)
        self.assertEqual(rows[a.pk].statistical_data["method"], "first_preference")

    def test_instant_runoff_is_flagged_in_statistical_data(self) -> None:
        instance, (a, b, c) = make_voting(
            options=("A", "B", "C"),
            type=VotingInstance.Type.ranked,
            ranked_method=VotingInstance.RankedMethod.instant_runoff,
        )
        add_ballots(instance, 2, a.pk, b.pk, ranked=True, prefix="ab")
        add_ballots(instance, 1, b.pk, a.pk, ranked=True, prefix="ba")
        add_ballots(instance, 2, c.pk, b.pk, ranked=True, prefix="cb")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(result.method, "instant_runoff")
        self.assertEqual(result.winners, (a.pk,))
        self.assertEqual(rows[a.pk].votes_count, 3)
        self.assertEqual(rows[a.pk].statistical_data["method"], "instant_runoff")
        self.assertEqual(rows[a.pk].statistical_data["counts_by_round"], [2, 3])
        self.assertEqual(rows[b.pk].statistical_data["eliminated_in_round"], 1)
        self.assertEqual(len(result.rounds), 2)

    def test_instant_runoff_winner_comes_from_the_deciding_round(self) -> None:
        instance, (a, b, c) = make_voting(
            options=("A", "B", "C"),
            type=VotingInstance.Type.ranked,
            ranked_method=VotingInstance.RankedMethod.instant_runoff,
        )
        add_ballots(instance, 4, a.pk, ranked=True, prefix="a")
        add_ballots(instance, 3, b.pk, c.pk, ranked=True, prefix="bc")
        add_ballots(instance, 3, c.pk, b.pk, ranked=True, prefix="cb")

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(result.winners, (b.pk,))
        self.assertFalse(result.is_tie)
        self.assertTrue(rows[b.pk].is_winner)
        self.assertFalse(rows[a.pk].is_winner)
        self.assertEqual(rows[b.pk].votes_count, 6)
        self.assertEqual(rows[c.pk].votes_count, 3)
        self.assertEqual(rows[b.pk].percentage, Decimal("60.00"))
        self.assertGreater(sum(s.percentage for s in result.snapshots), Decimal("100.00"))
        self.assertFalse(rows[c.pk].statistical_data["percentages_sum_to_100"])
        self.assertEqual(rows[c.pk].statistical_data["percentage_basis"], "last_round_tally")

    def test_deactivated_option_is_still_tallied(self) -> None:
        instance, (yes, no) = make_voting()
        add_ballots(instance, 2, no.pk, prefix="n")
        VotingOption.objects.filter(pk=no.pk).update(is_active=False)

        result = tabulate(instance=instance)

        rows = {s.option_id: s for s in result.snapshots}
        self.assertEqual(rows[no.pk].votes_count, 2)
        self.assertTrue(rows[no.pk].is_winner)

    def test_cancelled_instance_produces_voided_snapshots(self) -> None:
        instance, (yes, _no) = make_voting(status=VotingInstance.Status.cancelled)
        add_ballots(instance, 1, yes.pk)

        result = tabulate(instance=instance)

        self.assertTrue(result.is_voided)
        self.assertTrue(all(s.is_voided for s in ResultSnapshot.objects.filter(instance=instance)))

    @override_settings(VOTING_TABULATION_MAX_RETRIES=3)
    def test_conflict_is_retried(self) -> None:
        instance, (yes, _no) = make_voting()
        add_ballots(instance, 1, yes.pk)
        real = tabulation._tabulate_once
        attempts: list[int] = []

        def flaky(**kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise ComputationConflictError("lost race")
            return real(**kwargs)

        with patch("voting.tabulation._tabulate_once", side_effect=flaky):
            result = tabulate(instance=instance)

        self.assertEqual(len(attempts), 2)
        self.assertEqual(result.version, 1)

    @override_settings(VOTING_TABULATION_MAX_RETRIES=2)
    def test_conflict_is_raised_after_retries_are_exhausted(self) -> None:
        instance, _options = make_voting()

        with (
            patch("voting.tabulation._tabulate_once", side_effect=ComputationConflictError("lost race")) as once,
            self.assertRaises(ComputationConflictError),
        ):
            tabulate(instance=instance)

        self.assertEqual(once.call_count, 2)
        self.assertFalse(ResultSnapshot.objects.filter(instance=instance).exists())

    def test_stale_version_is_rejected(self) -> None:
        instance, _options = make_voting()
        tabulate(instance=instance)

        original_filter = VotingInstance.objects.filter

        def bump_then_filter(*args, **kwargs):
            # Simulate another writer committing between the read and the swap.
            if "result_version" in kwargs:
                VotingInstance.objects.all().update(result_version=99)
            return original_filter(*args, **kwargs)

        with (
            patch.object(VotingInstance.objects, "filter", side_effect=bump_then_filter),
            self.assertRaises(ComputationConflictError),
        ):
            tabulation._tabulate_once(instance=instance, voided=False)

    def test_statistics_summary(self) -> None:
        instance, (yes, no) = make_voting(total_eligible=4)
        add_ballots(instance, 2, yes.pk, prefix="y")
        add_ballots(instance, 1, no.pk, prefix="n")
        tabulate(instance=instance)
        instance.refresh_from_db()

        stats = voting_statistics(instance=instance)

        self.assertEqual(stats["total_votes"], 3)
        self.assertEqual(stats["total_eligible"], 4)
        self.assertEqual(stats["participation_rate"], "75.00")
        self.assertEqual(stats["winners"], [yes.pk])
        self.assertEqual([o["id"] for o in stats["options"]], [yes.pk, no.pk])
