from __future__ import annotations

import datetime
import secrets

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group, Permission
from django.utils import timezone

from voting.models import Ballot, BallotChoice, VotingInstance, VotingOption


def make_voting(
    *,
    options: tuple[str, ...] = ("Yes", "No"),
    status: str = VotingInstance.Status.active,
    **fields,
) -> tuple[VotingInstance, list[VotingOption]]:
    now = timezone.now()
    defaults: dict[str, object] = {
        "title": "Strike authorization",
        "starts_at": now - datetime.timedelta(hours=1),
        "ends_at": now + datetime.timedelta(days=1),
        "status": status,
    }
    if status in {VotingInstance.Status.active, VotingInstance.Status.paused}:
        defaults["actual_start_at"] = defaults["starts_at"]
    defaults.update(fields)
    instance = VotingInstance.objects.create(**defaults)
    created = [
        VotingOption.objects.create(instance=instance, title=title, sort_order=index)
        for index, title in enumerate(options, start=1)
    ]
    return instance, created


def make_member(username: str, *, groups: tuple[str, ...] = (), is_active: bool = True, password: str = "s3cret-pass"):
    user = get_user_model().objects.create_user(username=username, password=password, is_active=is_active)
    for name in groups:
        group, _ = Group.objects.get_or_create(name=name)
        user.groups.add(group)
    return user


def make_manager(username: str = "chair"):
    user = make_member(username)
    user.user_permissions.add(
        Permission.objects.get(codename="add_votinginstance"),
        Permission.objects.get(codename="change_votinginstance"),
    )
    return get_user_model().objects.get(pk=user.pk)


def add_ballot(
    instance: VotingInstance,
    member_id: str,
    *option_ids: int,
    ranked: bool = False,
    abstain: bool = False,
) -> Ballot:
    """Insert a ballot row directly, bypassing the ledger's checks."""
    voter_token = Ballot.compute_voter_token(instance_id=instance.pk, member_id=member_id)
    ballot = Ballot.objects.create(
        instance=instance,
        member_id=member_id,
        voter_token=voter_token,
        is_abstention=abstain,
        ballot_hash=secrets.token_hex(32),
        cast_at=timezone.now(),
    )
    BallotChoice.objects.bulk_create(
        [
            BallotChoice(ballot=ballot, option_id=option_id, rank=index if ranked else None)
            for index, option_id in enumerate(option_ids, start=1)
        ]
    )
    return ballot


def add_ballots(instance: VotingInstance, count: int, *option_ids: int, prefix: str = "m", ranked: bool = False) -> None:
    start = Ballot.objects.filter(instance=instance).count()
    for n in range(count):
        add_ballot(instance, f"{prefix}{start + n}", *option_ids, ranked=ranked)
