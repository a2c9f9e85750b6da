"""Ballot selections: one variant per voting type, validated at the boundary.

Request payloads are parsed into a Selection variant with
``parse_selection`` and checked against the instance's configuration with
``validate_selection`` before anything reaches the ballot ledger.
Downstream code can rely on the variant matching ``instance.type``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from voting.exceptions import InvalidSelectionError
from voting.models import VotingInstance


@dataclass(frozen=True)
class Abstention:
    def option_ids(self) -> tuple[int, ...]:
        return ()

    def as_payload(self) -> dict[str, object]:
        return {"kind": "abstention"}


@dataclass(frozen=True)
class SingleSelection:
    option_id: int

    def option_ids(self) -> tuple[int, ...]:
        return (self.option_id,)

    def as_payload(self) -> dict[str, object]:
        return {"kind": "single", "option_id": self.option_id}


@dataclass(frozen=True)
class MultipleSelection:
    option_ids_set: frozenset[int]

    def option_ids(self) -> tuple[int, ...]:
        return tuple(sorted(self.option_ids_set))

    def as_payload(self) -> dict[str, object]:
        return {"kind": "multiple", "option_ids": list(self.option_ids())}


@dataclass(frozen=True)
class ApprovalSelection:
    option_ids_set: frozenset[int]

    def option_ids(self) -> tuple[int, ...]:
        return tuple(sorted(self.option_ids_set))

    def as_payload(self) -> dict[str, object]:
        return {"kind": "approval", "option_ids": list(self.option_ids())}


@dataclass(frozen=True)
class RankedSelection:
    # (option_id, rank) pairs ordered by rank.
    rankings: tuple[tuple[int, int], ...]

    def option_ids(self) -> tuple[int, ...]:
        return tuple(option_id for option_id, _rank in self.rankings)

    def as_payload(self) -> dict[str, object]:
        return {"kind": "ranked", "rankings": [[option_id, rank] for option_id, rank in self.rankings]}


type Selection = Abstention | SingleSelection | MultipleSelection | ApprovalSelection | RankedSelection


def _coerce_option_id(value: object) -> int:
    if isinstance(value, bool):
        raise InvalidSelectionError("Invalid selection: option ids must be integers")
    try:
        option_id = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidSelectionError("Invalid selection: option ids must be integers") from exc
    if option_id <= 0:
        raise InvalidSelectionError("Invalid selection: option ids must be positive")
    return option_id


def _coerce_option_list(raw: object) -> list[int]:
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise InvalidSelectionError("Invalid selection: expected a list of option ids")
    return [_coerce_option_id(value) for value in raw]


def _reject_duplicates(option_ids: list[int]) -> None:
    if len(set(option_ids)) != len(option_ids):
        raise InvalidSelectionError("Invalid selection: duplicate options")


def _parse_rankings(raw: object) -> RankedSelection:
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise InvalidSelectionError("Invalid selection: rankings must be a list")

    pairs: list[tuple[int, int]] = []
    for position, item in enumerate(raw, start=1):
        if isinstance(item, Mapping):
            option_id = _coerce_option_id(item.get("option_id"))
            rank_raw = item.get("rank", position)
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            option_id = _coerce_option_id(item[0])
            rank_raw = item[1]
        else:
            # A bare option id; its list position is its rank.
            option_id = _coerce_option_id(item)
            rank_raw = position

        try:
            rank = int(rank_raw)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidSelectionError("Invalid selection: ranks must be integers") from exc
        if isinstance(rank_raw, bool) or rank <= 0:
            raise InvalidSelectionError("Invalid selection: ranks must be positive integers")
        pairs.append((option_id, rank))

    option_ids = [option_id for option_id, _rank in pairs]
    _reject_duplicates(option_ids)
    ranks = [rank for _option_id, rank in pairs]
    if len(set(ranks)) != len(ranks):
        raise InvalidSelectionError("Invalid selection: duplicate ranks")

    return RankedSelection(rankings=tuple(sorted(pairs, key=lambda pair: pair[1])))


def parse_selection(*, voting_type: str, data: Mapping[str, object]) -> Selection:
    """Build the Selection variant for ``voting_type`` from a request payload.

    Accepted keys: ``abstain`` (bool), ``option_id`` (simple), ``option_ids``
    (multiple/approval), ``rankings`` or ``option_ids`` (ranked; a bare id
    list is ranked by position).
    """
    abstain = data.get("abstain", False)
    if abstain is not None and not isinstance(abstain, bool):
        raise InvalidSelectionError("Invalid selection: abstain must be a boolean")
    if abstain:
        if data.get("option_id") or data.get("option_ids") or data.get("rankings"):
            raise InvalidSelectionError("Invalid selection: an abstention cannot select options")
        return Abstention()

    if voting_type == VotingInstance.Type.simple:
        raw = data.get("option_id")
        if raw is None:
            ids = _coerce_option_list(data.get("option_ids"))
            if len(ids) != 1:
                raise InvalidSelectionError("Invalid selection: exactly one option is required")
            return SingleSelection(option_id=ids[0])
        return SingleSelection(option_id=_coerce_option_id(raw))

    if voting_type == VotingInstance.Type.multiple:
        ids = _coerce_option_list(data.get("option_ids"))
        _reject_duplicates(ids)
        return MultipleSelection(option_ids_set=frozenset(ids))

    if voting_type == VotingInstance.Type.approval:
        ids = _coerce_option_list(data.get("option_ids"))
        _reject_duplicates(ids)
        if not ids:
            # An empty approval set records participation without support.
            return Abstention()
        return ApprovalSelection(option_ids_set=frozenset(ids))

    if voting_type == VotingInstance.Type.ranked:
        raw = data.get("rankings")
        if raw is None:
            raw = data.get("option_ids")
        return _parse_rankings(raw if raw is not None else [])

    raise InvalidSelectionError(f"Invalid selection: unsupported voting type {voting_type!r}")


_VARIANT_BY_TYPE: dict[str, type] = {
    VotingInstance.Type.simple: SingleSelection,
    VotingInstance.Type.multiple: MultipleSelection,
    VotingInstance.Type.approval: ApprovalSelection,
    VotingInstance.Type.ranked: RankedSelection,
}


def validate_selection(
    *,
    instance: VotingInstance,
    selection: Selection,
    active_option_ids: Iterable[int],
) -> Selection:
    if isinstance(selection, Abstention):
        if not instance.allow_abstention:
            raise InvalidSelectionError("Invalid selection: abstention is not allowed in this voting")
        return selection

    expected = _VARIANT_BY_TYPE.get(str(instance.type))
    if expected is None or not isinstance(selection, expected):
        raise InvalidSelectionError("Invalid selection: shape does not match the voting type")

    option_ids = selection.option_ids()
    if not option_ids:
        raise InvalidSelectionError("Invalid selection: at least one option is required")

    allowed = set(active_option_ids)
    if any(option_id not in allowed for option_id in option_ids):
        raise InvalidSelectionError("Invalid selection: contains options not available in this voting")

    if isinstance(selection, MultipleSelection):
        limit = int(instance.max_votes_per_user or 1)
        if len(option_ids) > limit:
            raise InvalidSelectionError(f"Invalid selection: at most {limit} options may be selected")

    if isinstance(selection, RankedSelection):
        ranks = [rank for _option_id, rank in selection.rankings]
        # A permutation of a subset: ranks are 1..k without gaps.
        if ranks != list(range(1, len(ranks) + 1)):
            raise InvalidSelectionError("Invalid selection: ranks must be consecutive starting at 1")

    return selection
