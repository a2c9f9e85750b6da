from typing import override

from django import forms
from django.forms.models import model_to_dict

from voting.lifecycle import EDITABLE_FIELDS
from voting.models import VotingInstance

_LIST_FIELDS = ("eligible_roles", "eligible_departments", "allowed_member_ids", "denied_member_ids")


class VotingInstanceForm(forms.ModelForm):
    """Field presence and type validation for create and draft update payloads."""

    class Meta:
        model = VotingInstance
        fields = EDITABLE_FIELDS

    @override
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        for name in _LIST_FIELDS:
            self.fields[name].required = False

    @classmethod
    def from_payload(cls, payload: dict[str, object], *, instance: VotingInstance | None = None) -> "VotingInstanceForm":
        """Build a bound form; fields missing from ``payload`` keep their current (or default) values."""
        base = model_to_dict(instance if instance is not None else VotingInstance(), fields=EDITABLE_FIELDS)
        data = {**base, **{k: v for k, v in payload.items() if k in EDITABLE_FIELDS}}
        return cls(data=data, instance=instance)

    def _clean_member_list(self, name: str) -> list[str]:
        value = self.cleaned_data.get(name)
        if value in (None, ""):
            return []
        if not isinstance(value, list) or not all(isinstance(v, (str, int)) for v in value):
            raise forms.ValidationError("Must be a list of strings.")
        return sorted({str(v).strip() for v in value if str(v).strip()})

    def clean_eligible_roles(self) -> list[str]:
        return sorted({v.lower() for v in self._clean_member_list("eligible_roles")})

    def clean_eligible_departments(self) -> list[str]:
        return sorted({v.lower() for v in self._clean_member_list("eligible_departments")})

    def clean_allowed_member_ids(self) -> list[str]:
        return self._clean_member_list("allowed_member_ids")

    def clean_denied_member_ids(self) -> list[str]:
        return self._clean_member_list("denied_member_ids")

    @override
    def clean(self):
        cleaned = super().clean()
        starts_at = cleaned.get("starts_at")
        ends_at = cleaned.get("ends_at")
        if starts_at and ends_at and ends_at <= starts_at:
            self.add_error("ends_at", "End time must be after the start time.")
        return cleaned

    def changes(self) -> dict[str, object]:
        return {name: self.cleaned_data[name] for name in self.changed_data if name in EDITABLE_FIELDS}
