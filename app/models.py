from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =========================
# Shared base models (Pydantic v2)
# =========================

class StrictBaseModel(BaseModel):
    """
    Strict request model.
    - extra fields are forbidden (schema discipline)
    """
    model_config = ConfigDict(extra="forbid")


# =========================
# Referrals
# =========================

class ReferralDraft(BaseModel):
    """
    Add/edit form payload. Keys are the specialty's column keys
    (date_referral_received, patient_name, ...), plus referring_provider_id.
    Unknown keys are ignored when the row is written.
    """
    model_config = ConfigDict(extra="allow")

    referring_provider_id: str = ""
    referring_provider: str = ""
    referring_provider_practice: str = ""
    status: str = ""

    @field_validator("referring_provider_id", mode="before")
    @classmethod
    def _provider_id_as_text(cls, v: Any) -> Any:
        # Provider ids are integers in the store; the picker may send either form.
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def as_draft(self) -> Dict[str, Any]:
        return self.model_dump()


class PinnedColumnsPayload(StrictBaseModel):
    keys: List[str] = Field(default_factory=list)


# =========================
# Provider updates
# =========================

class SendUpdatePayload(StrictBaseModel):
    status: str
    provider_id: str
    week_start: Optional[str] = None  # YYYY-MM-DD; defaults to the current week
    subject: Optional[str] = None
    body: Optional[str] = None


# =========================
# Notepad
# =========================

class NotepadPayload(StrictBaseModel):
    text: str = ""


# =========================
# Provider directory
# =========================

class NewProviderPayload(StrictBaseModel):
    practice: str
    provider: str
    contact_phone: str = ""
    contact_email: str = ""
    address: str = ""


class ProviderEdit(StrictBaseModel):
    id: str
    practice: Optional[str] = None
    provider: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None

    def as_edit(self) -> Dict[str, Any]:
        # Only fields the client actually sent take part in the diff.
        return self.model_dump(exclude_none=True)


class ProviderChangesPayload(StrictBaseModel):
    rows: List[ProviderEdit] = Field(default_factory=list)


# =========================
# Insurances
# =========================

class NewInsurancePayload(StrictBaseModel):
    label: str


class InsuranceActivePayload(StrictBaseModel):
    changes: Dict[str, bool] = Field(default_factory=dict)


# =========================
# User management
# =========================

class UserAccessRow(StrictBaseModel):
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str = "guest"
    location: Optional[str] = None
    status: str = "active"


class UserAccessPayload(StrictBaseModel):
    rows: List[UserAccessRow] = Field(default_factory=list)


class InvitePayload(StrictBaseModel):
    email: str
    display_name: str = ""
    role: str = "guest"
    location: Optional[str] = None
    status: str = "active"
