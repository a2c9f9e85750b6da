from __future__ import annotations

import datetime
from unittest.mock import Mock, patch

from django.core.cache import cache
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from voting.directory import MemberDirectoryUnavailableError
from voting.models import Ballot, VotingInstance
from voting.tests.utils import add_ballots, make_manager, make_member, make_voting

Status = VotingInstance.Status


class VotingViewsTestBase(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.manager = make_manager()
        self.member = make_member("member")

    def _post(self, name: str, payload: dict | None = None, **kwargs):
        return self.client.post(reverse(name, kwargs=kwargs), data=payload or {}, content_type="application/json")

    def _get(self, name: str, **kwargs):
        return self.client.get(reverse(name, kwargs=kwargs))


class VotingCrudViewTests(VotingViewsTestBase):
    def test_anonymous_requests_are_rejected(self) -> None:
        resp = self.client.get(reverse("votings"))

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"ok": False, "error": "Authentication required."})

    def test_manager_creates_draft_with_options(self) -> None:
        self.client.force_login(self.manager)
        starts_at = timezone.now() + datetime.timedelta(days=1)

        resp = self._post(
            "votings",
            {
                "title": "Strike vote",
                "type": "simple",
                "starts_at": starts_at.isoformat(),
                "ends_at": (starts_at + datetime.timedelta(days=2)).isoformat(),
                "eligible_roles": ["Steward", "steward"],
                "options": ["Yes", {"title": "No"}],
            },
        )

        self.assertEqual(resp.status_code, 201, resp.content)
        voting = resp.json()["voting"]
        self.assertEqual(voting["status"], "draft")
        self.assertEqual([o["title"] for o in voting["options"]], ["Yes", "No"])
        instance = VotingInstance.objects.get(pk=voting["id"])
        self.assertEqual(instance.eligible_roles, ["steward"])
        self.assertEqual(instance.created_by, "chair")
        self.assertTrue(instance.allow_abstention)

    def test_create_validates_payload(self) -> None:
        self.client.force_login(self.manager)
        now = timezone.now()

        resp = self._post(
            "votings",
            {
                "title": "",
                "starts_at": now.isoformat(),
                "ends_at": (now - datetime.timedelta(hours=1)).isoformat(),
            },
        )

        self.assertEqual(resp.status_code, 400)
        errors = resp.json()["errors"]
        self.assertIn("title", errors)
        self.assertIn("ends_at", errors)

    def test_members_cannot_create(self) -> None:
        self.client.force_login(self.member)

        resp = self._post("votings", {"title": "Mine"})

        self.assertEqual(resp.status_code, 403)
        self.assertFalse(VotingInstance.objects.exists())

    def test_drafts_are_hidden_from_members(self) -> None:
        draft, _ = make_voting(status=Status.draft)
        active, _ = make_voting()
        self.client.force_login(self.member)

        listing = self._get("votings").json()
        self.assertEqual([v["id"] for v in listing["results"]], [active.pk])
        self.assertEqual(self._get("voting-detail", voting_id=draft.pk).status_code, 404)

        self.client.force_login(self.manager)
        listing = self._get("votings").json()
        self.assertEqual({v["id"] for v in listing["results"]}, {draft.pk, active.pk})

    def test_list_filters_by_status(self) -> None:
        make_voting()
        ended, _ = make_voting(status=Status.ended)
        self.client.force_login(self.member)

        resp = self.client.get(reverse("votings"), {"status": "ended"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [ended.pk])

        resp = self.client.get(reverse("votings"), {"status": "bogus"})
        self.assertEqual(resp.status_code, 400)

    def test_list_filters_by_type_and_partial_title(self) -> None:
        make_voting(title="Strike authorization")
        ranked, _ = make_voting(title="Bargaining priorities", type=VotingInstance.Type.ranked)
        self.client.force_login(self.member)

        resp = self.client.get(reverse("votings"), {"type": "ranked"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [ranked.pk])

        resp = self.client.get(reverse("votings"), {"title": "bargain"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [ranked.pk])

        resp = self.client.get(reverse("votings"), {"type": "plurality"})
        self.assertEqual(resp.status_code, 400)

    def test_list_sorts_by_window_fields(self) -> None:
        now = timezone.now()
        later, _ = make_voting(starts_at=now - datetime.timedelta(hours=1), ends_at=now + datetime.timedelta(days=3))
        sooner, _ = make_voting(starts_at=now - datetime.timedelta(hours=2), ends_at=now + datetime.timedelta(days=1))
        self.client.force_login(self.member)

        resp = self.client.get(reverse("votings"), {"sort": "starts_at"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [sooner.pk, later.pk])

        resp = self.client.get(reverse("votings"), {"sort": "-ends_at"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [later.pk, sooner.pk])

        resp = self.client.get(reverse("votings"), {"sort": "created_at"})
        self.assertEqual([v["id"] for v in resp.json()["results"]], [later.pk, sooner.pk])

        resp = self.client.get(reverse("votings"), {"sort": "total_votes"})
        self.assertEqual(resp.status_code, 400)

    def test_manager_deletes_draft_only(self) -> None:
        draft, _ = make_voting(status=Status.draft)
        active, _ = make_voting()
        self.client.force_login(self.manager)

        resp = self._post("voting-delete", voting_id=active.pk)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "invalid_transition")

        resp = self._post("voting-delete", voting_id=draft.pk)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True, "deleted": draft.pk})
        self.assertFalse(VotingInstance.objects.filter(pk=draft.pk).exists())
        self.assertTrue(VotingInstance.objects.filter(pk=active.pk).exists())

    def test_members_cannot_delete(self) -> None:
        draft, _ = make_voting(status=Status.draft)
        active, _ = make_voting()
        self.client.force_login(self.member)

        self.assertEqual(self._post("voting-delete", voting_id=active.pk).status_code, 403)
        self.assertTrue(VotingInstance.objects.filter(pk=draft.pk).exists())

    def test_update_draft_only(self) -> None:
        draft, _ = make_voting(status=Status.draft)
        active, _ = make_voting()
        self.client.force_login(self.manager)

        resp = self._post("voting-update", {"title": "Renamed", "is_secret": True}, voting_id=draft.pk)
        self.assertEqual(resp.status_code, 200, resp.content)
        draft.refresh_from_db()
        self.assertEqual(draft.title, "Renamed")
        self.assertTrue(draft.is_secret)
        self.assertFalse(draft.allow_vote_change)

        resp = self._post("voting-update", {"title": "Late"}, voting_id=active.pk)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "invalid_transition")

    def test_option_add_and_remove(self) -> None:
        draft, (yes, _no) = make_voting(status=Status.draft)
        self.client.force_login(self.manager)

        resp = self._post("voting-option-add", {"title": "Abstain later"}, voting_id=draft.pk)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["option"]["sort_order"], 3)

        resp = self._post("voting-option-remove", voting_id=draft.pk, option_id=yes.pk)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(list(draft.options.values_list("title", flat=True)), ["No", "Abstain later"])

    def test_member_cannot_manage(self) -> None:
        instance, _ = make_voting()
        self.client.force_login(self.member)

        self.assertEqual(self._post("voting-pause", voting_id=instance.pk).status_code, 403)
        instance.refresh_from_db()
        self.assertEqual(instance.status, Status.active)


class VotingLifecycleViewTests(VotingViewsTestBase):
    def test_full_voting_flow(self) -> None:
        future = timezone.now() + datetime.timedelta(hours=2)
        instance, (yes, _no) = make_voting(
            status=Status.draft,
            starts_at=future,
            ends_at=future + datetime.timedelta(days=1),
        )

        self.client.force_login(self.manager)
        resp = self._post("voting-schedule", voting_id=instance.pk)
        self.assertEqual(resp.status_code, 200, resp.content)
        self.assertEqual(resp.json()["voting"]["status"], "scheduled")

        resp = self._post("voting-start", voting_id=instance.pk)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "invalid_transition")

        resp = self._post("voting-start", {"override": True}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["voting"]["total_eligible"], 2)

        self.client.force_login(self.member)
        resp = self._get("voting-eligibility", voting_id=instance.pk)
        self.assertEqual(
            resp.json(),
            {
                "ok": True,
                "eligible": True,
                "reason": None,
                "message": "",
                "verification_required": False,
                "verification_method": None,
            },
        )

        resp = self._post("voting-vote-submit", {"option_id": yes.pk, "device_id": "tablet"}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 201, resp.content)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(len(body["ballot_hash"]), 64)
        self.assertFalse(body["is_abstention"])
        self.assertNotIn("supersedes_ballot_hash", body)
        ballot = Ballot.objects.get(instance=instance)
        self.assertEqual(ballot.device_id, "tablet")
        self.assertEqual(ballot.ip_address, "127.0.0.1")

        resp = self._post("voting-vote-submit", {"option_id": yes.pk}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "already_voted")

        resp = self._get("voting-my-vote", voting_id=instance.pk)
        my_vote = resp.json()
        self.assertTrue(my_vote["has_voted"])
        self.assertEqual(my_vote["ballot"]["ballot_hash"], body["ballot_hash"])
        self.assertEqual(my_vote["ballot"]["choices"], [{"option_id": yes.pk, "title": "Yes", "rank": None}])
        self.assertNotIn("ip_address", my_vote["ballot"])

        resp = self._get("voting-results", voting_id=instance.pk)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["is_final"])

        self.client.force_login(self.manager)
        resp = self._post("voting-end", voting_id=instance.pk)
        self.assertEqual(resp.status_code, 200, resp.content)
        summary = resp.json()["summary"]
        self.assertEqual(summary["winners"], [yes.pk])
        self.assertEqual(summary["participation_rate"], "50.00")

        self.client.force_login(self.member)
        results = self._get("voting-results", voting_id=instance.pk).json()
        self.assertTrue(results["is_final"])
        self.assertEqual(results["results"][0]["option_id"], yes.pk)
        self.assertEqual(results["results"][0]["percentage"], "100.00")

        audit = self._get("voting-audit", voting_id=instance.pk).json()["entries"]
        event_types = [e["event_type"] for e in audit]
        self.assertIn("voting_ended", event_types)
        self.assertNotIn("ballot_submitted", event_types)

        self.client.force_login(self.manager)
        audit = self._get("voting-audit", voting_id=instance.pk).json()["entries"]
        self.assertIn("ballot_submitted", [e["event_type"] for e in audit])

    def test_pause_blocks_voting(self) -> None:
        instance, (yes, _no) = make_voting()
        self.client.force_login(self.manager)
        self.assertEqual(self._post("voting-pause", voting_id=instance.pk).status_code, 200)

        self.client.force_login(self.member)
        resp = self._post("voting-vote-submit", {"option_id": yes.pk}, voting_id=instance.pk)

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "not_active")

        self.client.force_login(self.manager)
        self.assertEqual(self._post("voting-resume", voting_id=instance.pk).status_code, 200)

    def test_cancel_requires_reason(self) -> None:
        instance, _ = make_voting()
        self.client.force_login(self.manager)

        resp = self._post("voting-cancel", {}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 400)

        resp = self._post("voting-cancel", {"reason": "Ballot misprint"}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["voting"]["status"], "cancelled")
        self.assertEqual(resp.json()["voting"]["cancellation_reason"], "Ballot misprint")

    def test_results_hidden_until_close_in_on_close_mode(self) -> None:
        instance, (yes, _no) = make_voting(results_mode=VotingInstance.ResultsMode.on_close)
        add_ballots(instance, 2, yes.pk)

        self.client.force_login(self.member)
        resp = self._get("voting-results", voting_id=instance.pk)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self._get("voting-statistics", voting_id=instance.pk).status_code, 403)

        self.client.force_login(self.manager)
        self.assertEqual(self._get("voting-statistics", voting_id=instance.pk).status_code, 200)


@override_settings(VOTING_VERIFICATION_MAX_FAILURES=1)
class VoteSubmitErrorTests(VotingViewsTestBase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(self.member)

    def test_invalid_selection_is_422(self) -> None:
        instance, _ = make_voting()

        resp = self._post("voting-vote-submit", {"option_id": "nope"}, voting_id=instance.pk)

        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["code"], "invalid_selection")

    def test_abstention_is_recorded(self) -> None:
        instance, _ = make_voting()

        resp = self._post("voting-vote-submit", {"abstain": True}, voting_id=instance.pk)

        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.json()["is_abstention"])

    def test_verification_required_and_throttled(self) -> None:
        instance, (yes, _no) = make_voting(requires_step_up=True)

        resp = self._post("voting-vote-submit", {"option_id": yes.pk}, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "verification_required")

        payload = {"option_id": yes.pk, "verification": {"method": "password", "evidence": "wrong"}}
        resp = self._post("voting-vote-submit", payload, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["failure_reason"], "rejected")

        payload["verification"]["evidence"] = "s3cret-pass"
        resp = self._post("voting-vote-submit", payload, voting_id=instance.pk)
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()["failure_reason"], "too_many_attempts")
        self.assertFalse(Ballot.objects.exists())

    def test_step_up_with_password_succeeds(self) -> None:
        instance, (yes, _no) = make_voting(requires_step_up=True)

        payload = {"option_id": yes.pk, "verification": {"method": "password", "evidence": "s3cret-pass"}}
        resp = self._post("voting-vote-submit", payload, voting_id=instance.pk)

        self.assertEqual(resp.status_code, 201, resp.content)
        self.assertEqual(Ballot.objects.get(instance=instance).verification_method, "password")

    def test_directory_outage_is_503(self) -> None:
        instance, _ = make_voting()
        directory = Mock()
        directory.get_member.side_effect = MemberDirectoryUnavailableError("Member directory is currently unavailable.")

        with patch("voting.views_votings.vote.get_member_directory", return_value=directory):
            resp = self._get("voting-eligibility", voting_id=instance.pk)

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["code"], "directory_unavailable")

    def test_ineligible_member_is_403(self) -> None:
        instance, (yes, _no) = make_voting(denied_member_ids=[str(self.member.pk)])

        resp = self._post("voting-vote-submit", {"option_id": yes.pk}, voting_id=instance.pk)

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "excluded")
