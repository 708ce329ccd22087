"""
Billing engine: the single place where doctor earnings and patient quota move.

Every billable unit is one ledger credit keyed by
(session_type, session_id, unit_index). The unique constraint on that key is
what makes billing exactly-once even though lifecycle jobs are delivered
at-least-once and may run from the worker and the degraded poller at the
same time: the second writer hits the constraint and reports the unit as
already billed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consult_api.core import session_rules
from consult_api.core.clock import system_clock
from consult_api.core.structured_logging import build_log_context
from consult_api.db.enums import (
    AppointmentStatus,
    BillingSourceType,
    Modality,
    SessionStatus,
    TransactionType,
)
from consult_api.db.models import (
    Appointment,
    DoctorWallet,
    PatientSubscription,
    SessionMixin,
    WalletTransaction,
)
from consult_api.services import billing_guardrail, pricing

logger = logging.getLogger(__name__)


# =============================================================================
# Wallets and quota
# =============================================================================


def get_wallet(db: Session, doctor_id: uuid.UUID) -> DoctorWallet | None:
    return db.query(DoctorWallet).filter(DoctorWallet.doctor_id == doctor_id).first()


def get_or_create_wallet(
    db: Session, doctor_id: uuid.UUID, *, currency: str | None = None
) -> DoctorWallet:
    """Return the doctor's wallet, creating it in the configured currency."""
    wallet = get_wallet(db, doctor_id)
    if wallet:
        return wallet

    wallet = DoctorWallet(
        doctor_id=doctor_id,
        currency=currency or pricing.default_currency(),
    )
    try:
        with db.begin_nested():
            db.add(wallet)
    except IntegrityError:
        # Created concurrently by another unit of the same doctor
        wallet = get_wallet(db, doctor_id)
        if wallet is None:
            raise
    return wallet


def get_subscription(db: Session, patient_id: uuid.UUID) -> PatientSubscription | None:
    return (
        db.query(PatientSubscription)
        .filter(PatientSubscription.patient_id == patient_id)
        .first()
    )


def remaining_quota(db: Session, patient_id: uuid.UUID, modality: str) -> int:
    """Units the patient can still consume for a modality (0 without an active plan)."""
    subscription = get_subscription(db, patient_id)
    if not subscription or not subscription.is_active:
        return 0
    return subscription.remaining_for(modality)


def _debit_patient_quota(
    db: Session, patient_id: uuid.UUID, modality: str, units: int = 1
) -> None:
    """Decrement quota in one statement, never below zero."""
    column = getattr(PatientSubscription, PatientSubscription.QUOTA_COLUMNS[Modality(modality).value])
    current = db.execute(
        select(column).where(PatientSubscription.patient_id == patient_id)
    ).scalar_one_or_none()
    if current is None or current < units:
        logger.warning(
            "Patient quota short for %s (%s remaining, %s requested)",
            modality,
            current,
            units,
        )
    if current is None:
        return
    db.execute(
        update(PatientSubscription)
        .where(PatientSubscription.patient_id == patient_id)
        .values({column: case((column - units < 0, 0), else_=column - units)})
        .execution_options(synchronize_session=False)
    )


# =============================================================================
# Unit credits
# =============================================================================


def credit_unit(
    db: Session,
    *,
    doctor_id: uuid.UUID,
    patient_id: uuid.UUID,
    modality: str,
    source_type: BillingSourceType,
    source_id: uuid.UUID,
    unit_index: int,
    description: str,
    metadata: dict | None = None,
) -> bool:
    """
    Credit the doctor and debit the patient for one unit.

    Runs in a savepoint so the ledger row, the wallet increment and the quota
    decrement land together or not at all. Returns False when the unit was
    already billed. The caller commits.
    """
    wallet = get_or_create_wallet(db, doctor_id)
    amount = pricing.unit_price(modality, wallet.currency)

    try:
        with db.begin_nested():
            db.execute(
                select(DoctorWallet.id).where(DoctorWallet.id == wallet.id).with_for_update()
            )
            db.add(
                WalletTransaction(
                    wallet_id=wallet.id,
                    doctor_id=doctor_id,
                    type=TransactionType.CREDIT.value,
                    amount=amount,
                    currency=wallet.currency,
                    modality=modality,
                    description=description,
                    session_type=source_type.value,
                    session_id=source_id,
                    unit_index=unit_index,
                    metadata_json=metadata or {},
                )
            )
            db.flush()
            db.execute(
                update(DoctorWallet)
                .where(DoctorWallet.id == wallet.id)
                .values(
                    balance=DoctorWallet.balance + amount,
                    total_earned=DoctorWallet.total_earned + amount,
                )
                .execution_options(synchronize_session=False)
            )
            _debit_patient_quota(db, patient_id, modality, 1)
    except IntegrityError:
        logger.info(
            "Unit %s already billed",
            unit_index,
            extra=build_log_context(session_id=str(source_id), session_type=source_type.value),
        )
        return False

    logger.info(
        "Credited %s %s for unit %s",
        amount,
        wallet.currency,
        unit_index,
        extra=build_log_context(session_id=str(source_id), session_type=source_type.value),
    )
    return True


def _credit_session_unit(db: Session, session: SessionMixin, unit_index: int, kind: str) -> bool:
    return credit_unit(
        db,
        doctor_id=session.doctor_id,
        patient_id=session.patient_id,
        modality=session.modality,
        source_type=BillingSourceType(session.session_type.value),
        source_id=session.id,
        unit_index=unit_index,
        description=f"{session.modality.capitalize()} consultation unit {unit_index} ({kind})",
        metadata={"kind": kind, "patient_id": str(session.patient_id)},
    )


def billed_unit_indexes(db: Session, session_type: str, session_id: uuid.UUID) -> set[int]:
    rows = db.execute(
        select(WalletTransaction.unit_index).where(
            WalletTransaction.session_type == session_type,
            WalletTransaction.session_id == session_id,
            WalletTransaction.type == TransactionType.CREDIT.value,
        )
    ).scalars()
    return {index for index in rows if index is not None}


def ledger_total(db: Session, session_type: str, session_id: uuid.UUID) -> Decimal:
    """Sum of credits recorded for one session or appointment."""
    total = db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.session_type == session_type,
            WalletTransaction.session_id == session_id,
            WalletTransaction.type == TransactionType.CREDIT.value,
        )
    ).scalar_one()
    return Decimal(total)


# =============================================================================
# Session billing
# =============================================================================


def process_auto_deduction(db: Session, session: SessionMixin, *, unit_index: int) -> bool:
    """Bill one interval of a running session. Safe to call again for the same unit."""
    credited = _credit_session_unit(db, session, unit_index, "auto_deduction")
    db.commit()
    return credited


def process_session_end(
    db: Session,
    session: SessionMixin,
    *,
    is_auto_end: bool,
    now: datetime | None = None,
) -> int:
    """
    Settle an ended session.

    Bills every unit among 1..sessions_to_deduct that the ledger does not hold
    yet, then brings the session counters up to the settled totals. Units
    already credited by auto-deductions (or an earlier run of this function)
    are skipped, so re-running it is always safe. Totals are capped at the
    session's starting quota. Returns units newly credited.
    """
    now = now or system_clock.now()
    # Never bill past the quota the session started with
    quota = session.sessions_remaining_before_start or 0
    total_units = min(
        session_rules.sessions_to_deduct(session, now, is_manual_end=not is_auto_end), quota
    )
    interval_units = min(session_rules.auto_deduction_units(session, now), quota)
    context = build_log_context(session_id=str(session.id), session_type=session.session_type.value)

    billed = billed_unit_indexes(db, session.session_type.value, session.id)
    credited = 0
    for unit_index in range(1, total_units + 1):
        if unit_index in billed:
            continue
        if _credit_session_unit(db, session, unit_index, "auto_end" if is_auto_end else "manual_end"):
            credited += 1

    model = type(session)
    db.execute(
        update(model)
        .where(model.id == session.id)
        .values(
            sessions_used=case(
                (model.sessions_used < total_units, total_units), else_=model.sessions_used
            ),
            auto_deductions_processed=case(
                (model.auto_deductions_processed < interval_units, interval_units),
                else_=model.auto_deductions_processed,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    _complete_linked_appointment(db, session, now)
    db.commit()

    logger.info(
        "Session settled: %s units (%s new, auto_end=%s)",
        total_units,
        credited,
        is_auto_end,
        extra=context,
    )
    return credited


def _complete_linked_appointment(db: Session, session: SessionMixin, now: datetime) -> None:
    if session.appointment_id is None:
        return
    db.execute(
        update(Appointment)
        .where(
            Appointment.id == session.appointment_id,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        )
        .values(status=AppointmentStatus.COMPLETED.value)
        .execution_options(synchronize_session=False)
    )


def reconcile_session_billing(
    db: Session, session: SessionMixin, *, now: datetime | None = None
) -> int:
    """
    Repair a session whose counters ran ahead of its ledger.

    A committed auto-deduction counter update whose credit never landed (crash
    between the two commits) leaves sessions_used > credited units. Missing
    units are credited, then settled sessions are re-settled.
    """
    now = now or system_clock.now()
    billed = billed_unit_indexes(db, session.session_type.value, session.id)
    repaired = 0
    for unit_index in range(1, session.sessions_used + 1):
        if unit_index not in billed:
            if _credit_session_unit(db, session, unit_index, "reconcile"):
                repaired += 1
    db.commit()

    if session.ended_at is not None and session.status in (
        SessionStatus.ENDED.value,
        SessionStatus.EXPIRED.value,
    ):
        repaired += process_session_end(
            db, session, is_auto_end=not session.manual_deduction_applied, now=now
        )

    if repaired:
        logger.warning(
            "Reconciled %s missing units",
            repaired,
            extra=build_log_context(session_id=str(session.id), session_type=session.session_type.value),
        )
    return repaired


# =============================================================================
# Legacy appointment billing
# =============================================================================


def process_appointment_end(
    db: Session,
    appointment: Appointment,
    *,
    endpoint: str,
    enforce: bool | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Bill a legacy appointment once, on completion.

    The guardrail runs before any ledger mutation; a refused appointment
    leaves no transaction behind.
    """
    billing_guardrail.check_appointment_billing_guardrail(appointment, endpoint, enforce)

    now = now or system_clock.now()
    credited = credit_unit(
        db,
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
        modality=appointment.appointment_type,
        source_type=BillingSourceType.APPOINTMENT,
        source_id=appointment.id,
        unit_index=1,
        description=f"{appointment.appointment_type.capitalize()} appointment",
        metadata={"endpoint": endpoint},
    )
    appointment.status = AppointmentStatus.COMPLETED.value
    if appointment.billed_at is None:
        appointment.billed_at = now
    db.commit()
    return credited
