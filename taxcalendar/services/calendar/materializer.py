from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.config import get_settings
from taxcalendar.core.errors import ConflictError, NotFoundError, ValidationError
from taxcalendar.domain.calendar import (
    ESTIMATE_PAID_INVOICES,
    ESTIMATED_REVENUE_META_KEY,
    parse_template_rule,
)
from taxcalendar.domain.models import TaxEventTemplate
from taxcalendar.persistence.repos import instances as instances_repo
from taxcalendar.persistence.repos import profiles as profiles_repo
from taxcalendar.persistence.repos import templates as templates_repo
from taxcalendar.services.calendar.due_dates import compute_due_at
from taxcalendar.services.calendar.estimator import (
    InvoiceRevenueSource,
    RevenueSource,
    estimate_revenue,
)
from taxcalendar.services.calendar.periods import Period, enumerate_periods
from taxcalendar.services.calendar.rules import RecurrenceRule, parse_rrule


logger = logging.getLogger(__name__)

_CREATED = "created"
_SKIPPED = "skipped"
_FAILED = "failed"


@dataclass(frozen=True)
class TemplateSpec:
    """Parsed, immutable snapshot of a template used during one generation run."""

    id: str
    organization_id: str
    rule: RecurrenceRule
    period_mode: str
    due_offset_days: int
    due_time_local: str | None
    estimate_from: str | None

    @classmethod
    def from_model(cls, template: TaxEventTemplate) -> "TemplateSpec":
        rule = parse_rrule(template.rrule)
        metadata = parse_template_rule(template.rule_json)
        return cls(
            id=template.id,
            organization_id=template.organization_id,
            rule=rule,
            # Rule metadata overrides the frequency-derived period mode.
            period_mode=metadata.period or rule.period_mode,
            due_offset_days=int(template.due_offset_days or 0),
            due_time_local=template.due_time_local,
            estimate_from=metadata.estimate_from,
        )

    @property
    def estimates_paid_invoices(self) -> bool:
        return self.estimate_from == ESTIMATE_PAID_INVOICES


@dataclass
class GenerationResult:
    created: int = 0
    skipped: int = 0
    failed: int = 0
    failed_template_ids: list[str] = field(default_factory=list)

    def merge(self, other: "GenerationResult") -> None:
        self.created += other.created
        self.skipped += other.skipped
        self.failed += other.failed
        self.failed_template_ids.extend(other.failed_template_ids)

    def as_dict(self) -> dict[str, int]:
        return {"created": self.created, "skipped": self.skipped, "failed": self.failed}


class InstanceMaterializer:
    def __init__(
        self,
        *,
        revenue_source_factory: Callable[[AsyncSession], RevenueSource] | None = None,
        id_factory: Callable[[], str] | None = None,
        default_due_time_local: str | None = None,
    ) -> None:
        # Allow collaborator injection for deterministic tests.
        self._revenue_source_factory = revenue_source_factory or InvoiceRevenueSource
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._default_due_time_local = (
            default_due_time_local or get_settings().default_due_time_local
        )

    async def generate(
        self,
        session: AsyncSession,
        organization_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> GenerationResult:
        """Create at most one UPCOMING instance per (active template, period).

        Safe to call any number of times with identical or overlapping ranges:
        already-materialized periods are skipped, and a uniqueness violation
        raised by a concurrent run is treated as a skip rather than an error.
        """
        if range_start >= range_end:
            raise ValidationError("'from' must be earlier than 'to'")
        profile = await profiles_repo.get_profile_for_organization(session, organization_id)
        if profile is None:
            raise NotFoundError("Tax profile not found")
        templates = await templates_repo.list_templates(
            session, organization_id, profile.id, active_only=True
        )

        result = GenerationResult()
        specs: list[TemplateSpec] = []
        for template in templates:
            try:
                specs.append(TemplateSpec.from_model(template))
            except ValidationError as exc:
                # One broken template must not block the rest of the calendar.
                logger.warning(
                    "template_rule_invalid organization_id=%s template_id=%s error=%s",
                    organization_id,
                    template.id,
                    exc,
                )
                result.failed_template_ids.append(template.id)

        source = self._revenue_source_factory(session)
        for spec in specs:
            try:
                template_result = await self.generate_for_template(
                    session, spec, range_start, range_end, source
                )
            except Exception:  # noqa: BLE001 - one template must not abort the rest of the run.
                await session.rollback()
                logger.exception(
                    "template_generation_failed organization_id=%s template_id=%s",
                    organization_id,
                    spec.id,
                )
                template_result = GenerationResult(failed=1, failed_template_ids=[spec.id])
            result.merge(template_result)

        logger.info(
            "instances_generated organization_id=%s created=%s skipped=%s failed=%s",
            organization_id,
            result.created,
            result.skipped,
            result.failed,
        )
        return result

    async def generate_for_template(
        self,
        session: AsyncSession,
        spec: TemplateSpec,
        range_start: datetime,
        range_end: datetime,
        source: RevenueSource,
    ) -> GenerationResult:
        result = GenerationResult()
        periods = enumerate_periods(
            spec.period_mode, range_start, range_end, interval=spec.rule.interval
        )
        for period in periods:
            outcome = await self._materialize_period(session, spec, period, source)
            if outcome == _CREATED:
                result.created += 1
            elif outcome == _SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1
        if result.failed:
            result.failed_template_ids.append(spec.id)
        return result

    async def _materialize_period(
        self,
        session: AsyncSession,
        spec: TemplateSpec,
        period: Period,
        source: RevenueSource,
    ) -> str:
        # Each period is its own unit of work: commit on success, roll back only this period on failure.
        try:
            # Fast path for known periods; the unique constraint stays the real guard.
            existing = await instances_repo.find_by_period(
                session,
                template_id=spec.id,
                period_start=period.start,
                period_end=period.end,
            )
            if existing is not None:
                return _SKIPPED
            meta: dict[str, str] = {}
            if spec.estimates_paid_invoices:
                meta[ESTIMATED_REVENUE_META_KEY] = await estimate_revenue(
                    source, spec.organization_id, period
                )
            await self._insert_instance(session, spec, period, meta)
            return _CREATED
        except ConflictError:
            return _SKIPPED
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "instance_create_failed template_id=%s period_start=%s",
                spec.id,
                period.start.isoformat(),
                exc_info=exc,
            )
            return _FAILED

    async def _insert_instance(
        self,
        session: AsyncSession,
        spec: TemplateSpec,
        period: Period,
        meta: dict[str, str],
    ) -> None:
        due_at = compute_due_at(
            period.end,
            spec.due_offset_days,
            spec.due_time_local,
            default_time_local=self._default_due_time_local,
        )
        session.add(
            instances_repo.build_instance(
                instance_id=self._id_factory(),
                organization_id=spec.organization_id,
                template_id=spec.id,
                period_start=period.start,
                period_end=period.end,
                due_at=due_at,
                meta_json=meta,
            )
        )
        try:
            await session.commit()
        except IntegrityError as exc:
            # Another run materialized this period between the pre-check and the insert.
            await session.rollback()
            logger.info(
                "instance_already_materialized template_id=%s period_start=%s",
                spec.id,
                period.start.isoformat(),
            )
            raise ConflictError("instance already exists for period") from exc
