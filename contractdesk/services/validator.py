"""Draft validation for the agreement aggregate, plus the step-wise draft builder.

validate() is pure: it reads only its arguments. The budget check runs against
milestone rows the caller re-read inside the write transaction, merged with the
submitted edits, so a stale client-side total can never slip past the cap.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from contractdesk.exceptions import (
    AgreementValidationError,
    BudgetExceededError,
    FieldError,
    ImmutableAgreementError,
    NotFoundError,
)
from contractdesk.models.agreement import AgreementStatus, DurationUnit, PaymentStructure

_CENT = Decimal("0.01")
_DESCRIPTION_MAX = 255
_NAME_MAX = 255


@dataclass(frozen=True)
class MilestoneDraft:
    """A milestone as submitted. With `id` set it edits a persisted row; missing fields keep the stored value."""
    description: str | None = None
    amount: Decimal | int | float | str | None = None
    due_date: date | None = None
    id: int | None = None


@dataclass(frozen=True)
class PersistedMilestone:
    id: int
    description: str
    amount: Decimal
    due_date: date | None
    order: int


@dataclass(frozen=True)
class AgreementDraft:
    service_provider_name: str | None = None
    agreement_date: date | None = None
    service_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    duration: int | None = None
    duration_unit: str | None = None
    number_of_revisions: int | None = 0
    jurisdiction: str | None = None
    deliverables: tuple[str, ...] = ()
    payment_structure: str | None = None
    payment_method: str | None = None
    milestones: tuple[MilestoneDraft, ...] = ()


@dataclass(frozen=True)
class ValidationContext:
    """Facts read from the store inside the write transaction."""
    principal_id: int
    project_owner_id: int
    project_budget: Decimal | None
    status: str = AgreementStatus.draft.value
    agreement_id: int | None = None
    persisted_milestones: tuple[PersistedMilestone, ...] = ()


@dataclass(frozen=True)
class ValidatedMilestone:
    description: str
    amount: Decimal
    due_date: date
    order: int
    id: int | None = None


@dataclass(frozen=True)
class ValidatedAgreement:
    service_provider_name: str
    agreement_date: date
    service_type: str
    start_date: date | None
    end_date: date | None
    duration: int | None
    duration_unit: str | None
    number_of_revisions: int
    jurisdiction: str | None
    deliverables: tuple[str, ...]
    payment_structure: str
    payment_method: str | None
    milestones: tuple[ValidatedMilestone, ...] = ()

    @property
    def milestone_total(self) -> Decimal:
        return sum((m.amount for m in self.milestones), Decimal("0.00"))


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _to_amount(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _merge_milestones(
    submitted: Iterable[MilestoneDraft],
    persisted: tuple[PersistedMilestone, ...],
    errors: list[FieldError],
) -> list[ValidatedMilestone]:
    by_id = {m.id: m for m in persisted}
    seen: set[int] = set()
    result: list[ValidatedMilestone] = []
    for i, item in enumerate(submitted):
        prefix = f"payment_milestones[{i}]"
        base = None
        if item.id is not None:
            base = by_id.get(item.id)
            if base is None:
                errors.append(FieldError(f"{prefix}.id", f"unknown milestone id {item.id}"))
                continue
            if item.id in seen:
                errors.append(FieldError(f"{prefix}.id", f"milestone {item.id} listed twice"))
                continue
            seen.add(item.id)

        description = _clean(item.description) if item.description is not None else (base.description if base else None)
        raw_amount = item.amount if item.amount is not None else (base.amount if base else None)
        due_date = item.due_date if item.due_date is not None else (base.due_date if base else None)

        ok = True
        if not description:
            errors.append(FieldError(f"{prefix}.description", "must not be empty"))
            ok = False
        elif len(description) > _DESCRIPTION_MAX:
            errors.append(FieldError(f"{prefix}.description", f"must be at most {_DESCRIPTION_MAX} characters"))
            ok = False

        amount = _to_amount(raw_amount)
        if amount is None:
            errors.append(FieldError(f"{prefix}.amount", "is required and must be a number"))
            ok = False
        elif amount <= 0:
            errors.append(FieldError(f"{prefix}.amount", "must be greater than 0"))
            ok = False
        elif amount != amount.quantize(_CENT):
            errors.append(FieldError(f"{prefix}.amount", "must have at most 2 decimal places"))
            ok = False

        if due_date is None:
            errors.append(FieldError(f"{prefix}.date", "is required"))
            ok = False

        if ok:
            result.append(
                ValidatedMilestone(
                    description=description,
                    amount=amount.quantize(_CENT),
                    due_date=due_date,
                    order=i,
                    id=item.id,
                )
            )
    return result


def validate(draft: AgreementDraft, ctx: ValidationContext) -> ValidatedAgreement:
    """Validate a complete draft. Raises ImmutableAgreementError, AgreementValidationError or BudgetExceededError."""
    if ctx.project_owner_id != ctx.principal_id:
        raise NotFoundError("Project")
    if ctx.status == AgreementStatus.completed.value:
        raise ImmutableAgreementError(ctx.agreement_id or 0)

    errors: list[FieldError] = []

    provider = _clean(draft.service_provider_name)
    if not provider:
        errors.append(FieldError("service_provider_name", "must not be empty"))
    elif len(provider) > _NAME_MAX:
        errors.append(FieldError("service_provider_name", f"must be at most {_NAME_MAX} characters"))

    service_type = _clean(draft.service_type)
    if not service_type:
        errors.append(FieldError("service_type", "must not be empty"))
    elif len(service_type) > _NAME_MAX:
        errors.append(FieldError("service_type", f"must be at most {_NAME_MAX} characters"))

    if draft.agreement_date is None:
        errors.append(FieldError("agreement_date", "is required"))

    if draft.start_date and draft.end_date and draft.end_date < draft.start_date:
        errors.append(FieldError("end_date", "must be on or after start_date"))

    if draft.duration is not None:
        if draft.duration <= 0:
            errors.append(FieldError("duration", "must be greater than 0"))
        if not draft.duration_unit:
            errors.append(FieldError("duration_unit", "is required when duration is set"))
    if draft.duration_unit and draft.duration_unit not in {u.value for u in DurationUnit}:
        errors.append(FieldError("duration_unit", "must be one of days, weeks, months"))

    revisions = draft.number_of_revisions if draft.number_of_revisions is not None else 0
    if revisions < 0:
        errors.append(FieldError("number_of_revisions", "must be 0 or more"))

    deliverables: list[str] = []
    for i, text in enumerate(draft.deliverables):
        cleaned = _clean(text)
        if not cleaned:
            errors.append(FieldError(f"deliverables[{i}]", "must not be empty"))
        else:
            deliverables.append(cleaned)

    structure = draft.payment_structure
    if structure not in {s.value for s in PaymentStructure}:
        errors.append(FieldError("payment_structure", "must be one of 50-50, 100-upfront, 100-completion, milestone-based"))

    milestones: list[ValidatedMilestone] = []
    if structure == PaymentStructure.milestone_based.value:
        if not draft.milestones:
            errors.append(FieldError("payment_milestones", "at least one milestone is required"))
        else:
            milestones = _merge_milestones(draft.milestones, ctx.persisted_milestones, errors)
        if ctx.project_budget is None:
            errors.append(FieldError("payment_milestones", "project has no budget; set one before using milestone-based payments"))

    if errors:
        raise AgreementValidationError(errors)

    validated = ValidatedAgreement(
        service_provider_name=provider,
        agreement_date=draft.agreement_date,
        service_type=service_type,
        start_date=draft.start_date,
        end_date=draft.end_date,
        duration=draft.duration,
        duration_unit=draft.duration_unit if draft.duration is not None else None,
        number_of_revisions=revisions,
        jurisdiction=_clean(draft.jurisdiction),
        deliverables=tuple(deliverables),
        payment_structure=structure,
        payment_method=_clean(draft.payment_method),
        milestones=tuple(milestones),
    )
    if milestones:
        budget = Decimal(ctx.project_budget).quantize(_CENT)
        if validated.milestone_total > budget:
            raise BudgetExceededError(validated.milestone_total, budget)
    return validated


_UNSET = object()


@dataclass
class AgreementDraftBuilder:
    """Accumulates wizard steps; nothing is validated until build().

    Steps may be applied in any order and repeated; later calls overwrite
    earlier ones field by field.
    """
    _state: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_draft(cls, draft: AgreementDraft) -> "AgreementDraftBuilder":
        builder = cls()
        builder._state.update({k: getattr(draft, k) for k in AgreementDraft.__dataclass_fields__})
        return builder

    def _set(self, **values: Any) -> "AgreementDraftBuilder":
        for key, value in values.items():
            if value is not _UNSET:
                self._state[key] = value
        return self

    def basics(self, service_provider_name=_UNSET, agreement_date=_UNSET, service_type=_UNSET):
        return self._set(
            service_provider_name=service_provider_name,
            agreement_date=agreement_date,
            service_type=service_type,
        )

    def scope(self, deliverables=_UNSET):
        if deliverables is not _UNSET:
            deliverables = tuple(deliverables or ())
        return self._set(deliverables=deliverables)

    def timeline(self, start_date=_UNSET, end_date=_UNSET, duration=_UNSET, duration_unit=_UNSET):
        return self._set(start_date=start_date, end_date=end_date, duration=duration, duration_unit=duration_unit)

    def payment(self, payment_structure=_UNSET, payment_method=_UNSET, milestones=_UNSET):
        if milestones is not _UNSET:
            milestones = tuple(milestones or ())
        return self._set(payment_structure=payment_structure, payment_method=payment_method, milestones=milestones)

    def terms(self, number_of_revisions=_UNSET, jurisdiction=_UNSET):
        return self._set(number_of_revisions=number_of_revisions, jurisdiction=jurisdiction)

    def apply(self, changes: dict[str, Any]) -> "AgreementDraftBuilder":
        """Route a flat partial update (e.g. a PUT body) to the matching steps."""
        unknown = set(changes) - set(AgreementDraft.__dataclass_fields__)
        if unknown:
            raise AgreementValidationError([FieldError(k, "unknown field") for k in sorted(unknown)])

        def pick(*keys):
            return {k: changes[k] for k in keys if k in changes}

        self.basics(**pick("service_provider_name", "agreement_date", "service_type"))
        self.scope(**pick("deliverables"))
        self.timeline(**pick("start_date", "end_date", "duration", "duration_unit"))
        self.payment(**pick("payment_structure", "payment_method", "milestones"))
        self.terms(**pick("number_of_revisions", "jurisdiction"))
        return self

    def draft(self) -> AgreementDraft:
        return AgreementDraft(**self._state)

    def build(self, ctx: ValidationContext) -> ValidatedAgreement:
        return validate(self.draft(), ctx)
