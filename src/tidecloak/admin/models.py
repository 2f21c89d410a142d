"""Tide change-set models for the realm admin API."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ChangeSet(BaseModel):
    """A pending user or role change awaiting admin review.

    The request listings name the identifier ``draftRecordId``; every write
    endpoint expects it as ``changeSetId``. Other server fields are kept as
    extras.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    change_set_id: str = Field(
        default="",
        validation_alias=AliasChoices(
            "draftRecordId", "changeSetId", "change_set_id"
        ),
    )
    action_type: str = Field(
        default="", validation_alias=AliasChoices("actionType", "action_type")
    )
    change_set_type: str = Field(
        default="",
        validation_alias=AliasChoices("changeSetType", "change_set_type"),
    )

    def to_wire(self) -> dict[str, str]:
        """The identifying fields every change-set endpoint takes."""
        return {
            "changeSetId": self.change_set_id,
            "actionType": self.action_type,
            "changeSetType": self.change_set_type,
        }

    def form_fields(self, **extra: str) -> dict[str, tuple[None, str]]:
        """Multipart form fields (httpx ``files`` form) for review endpoints."""
        fields = {**self.to_wire(), **extra}
        return {name: (None, value) for name, value in fields.items()}
