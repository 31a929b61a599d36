from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from taxcalendar.core.errors import ValidationError


Frequency = Literal["MONTHLY", "QUARTERLY", "YEARLY"]
PeriodMode = Literal["MONTH", "QUARTER", "YEAR"]
EstimateSource = Literal["PAID_INVOICES", "MANUAL"]
Jurisdiction = Literal["UA"]
EntityType = Literal["FOP", "LLC", "OTHER"]
EventKind = Literal["TASK", "REPORT", "PAYMENT"]
EventStatus = Literal["UPCOMING", "IN_PROGRESS", "OVERDUE", "DONE", "SKIPPED"]

STATUS_UPCOMING = "UPCOMING"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_OVERDUE = "OVERDUE"
STATUS_DONE = "DONE"
STATUS_SKIPPED = "SKIPPED"

# Statuses the overdue sweep is allowed to promote.
SWEEPABLE_STATUSES = (STATUS_UPCOMING, STATUS_IN_PROGRESS)
TERMINAL_STATUSES = (STATUS_DONE, STATUS_SKIPPED)

ESTIMATE_PAID_INVOICES = "PAID_INVOICES"
ESTIMATED_REVENUE_META_KEY = "estimatedRevenue"

# Upper bound for template due offsets, about ten years.
MAX_DUE_OFFSET_DAYS = 3660

FREQUENCY_PERIOD_MODES: dict[str, str] = {
    "MONTHLY": "MONTH",
    "QUARTERLY": "QUARTER",
    "YEARLY": "YEAR",
}


class JurisdictionSettings(BaseModel):
    # Unknown keys are kept so admins can store jurisdiction-specific extras.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    has_employees: bool = Field(default=False, alias="hasEmployees")


class ProfileSettings(BaseModel):
    """Typed view of a profile's settings document, one section per jurisdiction."""

    model_config = ConfigDict(extra="allow")

    ua: JurisdictionSettings | None = None

    def for_jurisdiction(self, jurisdiction: str) -> JurisdictionSettings:
        section = getattr(self, jurisdiction.lower(), None)
        if isinstance(section, JurisdictionSettings):
            return section
        if isinstance(section, dict):
            return JurisdictionSettings.model_validate(section)
        return JurisdictionSettings()


class TemplateRule(BaseModel):
    """Typed view of a template's rule metadata document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    period: PeriodMode | None = None
    estimate_from: EstimateSource | None = Field(default=None, alias="estimateFrom")

    def to_document(self) -> dict[str, Any]:
        # Persist with camelCase keys and without empty fields.
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_profile_settings(document: dict[str, Any] | None) -> ProfileSettings:
    try:
        return ProfileSettings.model_validate(document or {})
    except ValueError as exc:
        raise ValidationError(f"Invalid profile settings: {exc}") from exc


def parse_template_rule(document: dict[str, Any] | None) -> TemplateRule:
    try:
        return TemplateRule.model_validate(document or {})
    except ValueError as exc:
        raise ValidationError(f"Invalid template rule: {exc}") from exc
