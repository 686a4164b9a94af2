from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import and_, func, or_, select

from .auth_models import Role, User
from .auth_security import normalize_email
from .auth_service import _create_user
from .db import Base, db_session, engine
from .exceptions import BusinessRuleError, NotFoundError, PermissionDeniedError
from .logger import get_logger
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    ConsultationStatus,
    MedicalRecord,
    NotificationType,
    Prescription,
    PrescriptionBillingStatus,
    PrescriptionItem,
    PrescriptionStatus,
)
from .notifications import _notify, _notify_role

# registers every table on Base.metadata
from . import billing_models, inventory_models  # noqa: F401

logger = get_logger(__name__)

DEFAULT_DURATION_MINUTES = 30


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Create the tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


def reset_db() -> None:
    """Drop and recreate every table."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class BookingResult:
    ok: bool
    appointment_id: str | None
    patient_id: str | None
    created_patient: bool
    message: str


def _now() -> datetime:
    # appointment times are clinic wall-clock times
    return datetime.now().replace(microsecond=0)


def _local(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def _get_appointment(s, appointment_id: str) -> Appointment:
    app = s.get(Appointment, appointment_id)
    if not app:
        raise NotFoundError("Appointment not found.")
    return app


def _get_doctor(s, doctor_id: str) -> User:
    doc = s.get(User, doctor_id)
    if not doc or doc.role != Role.DOCTOR or not doc.is_active:
        raise NotFoundError("Doctor not found.")
    return doc


def appointment_flat(a: Appointment) -> dict:
    doctor = a.doctor
    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "patient_name": a.patient.full_name,
        "patient_email": a.patient.email,
        "patient_phone": a.patient.phone,
        "doctor_id": a.doctor_id,
        "doctor_name": doctor.full_name if doctor else None,
        "specialization": doctor.doctor_profile.specialization if doctor and doctor.doctor_profile else None,
        "scheduled_at": a.scheduled_at,
        "ends_at": a.ends_at,
        "duration_minutes": a.duration_minutes,
        "service": a.service,
        "reason": a.reason,
        "status": a.status.value,
        "consultation_status": a.consultation_status.value,
        "cancellation_reason": a.cancellation_reason,
        "admin_notes": a.admin_notes,
        "created_at": a.created_at,
    }


def record_flat(r: MedicalRecord) -> dict:
    return {
        "id": r.id,
        "appointment_id": r.appointment_id,
        "patient_id": r.patient_id,
        "doctor_id": r.doctor_id,
        "doctor_name": r.doctor.full_name if r.doctor else None,
        "chief_complaint": r.chief_complaint,
        "symptoms": r.symptoms,
        "diagnosis": r.diagnosis,
        "final_diagnosis": r.final_diagnosis,
        "vitals": r.vitals,
        "notes": r.notes,
        "created_at": r.created_at,
        "updated_at": r.updated_at,
    }


def prescription_flat(p: Prescription) -> dict:
    return {
        "id": p.id,
        "appointment_id": p.appointment_id,
        "patient_id": p.patient_id,
        "patient_name": p.patient.full_name,
        "doctor_id": p.doctor_id,
        "doctor_name": p.doctor.full_name,
        "notes": p.notes,
        "status": p.status.value,
        "billing_status": p.billing_status.value,
        "invoice_id": p.invoice_id,
        "dispensed_at": p.dispensed_at,
        "dispensed_by": p.dispensed_by,
        "created_at": p.created_at,
        "items": [
            {
                "id": i.id,
                "medication_name": i.medication_name,
                "dosage": i.dosage,
                "frequency": i.frequency,
                "duration": i.duration,
                "quantity": i.quantity,
                "instructions": i.instructions,
                "inventory_item_id": i.inventory_item_id,
                "is_billable": i.is_billable,
                "unit_price": i.unit_price,
            }
            for i in p.items
        ],
    }


# =========================
# Doctors / patients
# =========================
def list_doctors_flat() -> list[dict]:
    with db_session() as s:
        doctors = s.scalars(
            select(User).where(User.role == Role.DOCTOR, User.is_active.is_(True)).order_by(User.full_name)
        )
        return [
            {
                "id": d.id,
                "full_name": d.full_name,
                "specialization": d.doctor_profile.specialization if d.doctor_profile else None,
                "qualification": d.doctor_profile.qualification if d.doctor_profile else None,
                "experience_years": d.doctor_profile.experience_years if d.doctor_profile else None,
                "consultation_fee": d.doctor_profile.consultation_fee if d.doctor_profile else None,
            }
            for d in doctors
        ]


def list_patients_flat(search: str | None = None) -> list[dict]:
    with db_session() as s:
        visits = (
            select(Appointment.patient_id, func.count(Appointment.id).label("n"), func.max(Appointment.scheduled_at).label("last"))
            .group_by(Appointment.patient_id)
            .subquery()
        )
        q = (
            select(User, visits.c.n, visits.c.last)
            .outerjoin(visits, visits.c.patient_id == User.id)
            .where(User.role == Role.PATIENT)
        )
        if search:
            like = f"%{search.strip()}%"
            q = q.where(or_(User.full_name.ilike(like), User.email.ilike(like), User.phone.ilike(like)))
        rows = s.execute(q.order_by(User.full_name)).all()
        return [
            {
                "id": u.id,
                "full_name": u.full_name,
                "email": u.email,
                "phone": u.phone,
                "age": u.age,
                "sex": u.sex,
                "is_active": u.is_active,
                "appointments": n or 0,
                "last_visit": last,
            }
            for u, n, last in rows
        ]


# =========================
# Availability
# =========================
def _doctor_is_free(s, doctor_id: str, start: datetime, end: datetime, exclude_id: str | None = None) -> bool:
    """No approved/rescheduled appointment of the doctor overlaps [start, end)."""
    overlap = (
        select(Appointment.id)
        .where(
            and_(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                Appointment.scheduled_at < end,
                Appointment.ends_at > start,
            )
        )
        .limit(1)
    )
    if exclude_id:
        overlap = overlap.where(Appointment.id != exclude_id)
    return s.execute(overlap).first() is None


# =========================
# Booking (use case core)
# =========================
def _book(
    s,
    patient: User,
    scheduled_at: datetime,
    doctor_id: str | None,
    service: str | None,
    reason: str | None,
    duration_minutes: int,
) -> Appointment:
    scheduled_at = _local(scheduled_at)
    if scheduled_at <= _now():
        raise BusinessRuleError("The appointment must be scheduled in the future.")
    if doctor_id:
        _get_doctor(s, doctor_id)

    app = Appointment(
        patient_id=patient.id,
        doctor_id=doctor_id,
        scheduled_at=scheduled_at,
        ends_at=scheduled_at + timedelta(minutes=duration_minutes),
        duration_minutes=duration_minutes,
        service=service,
        reason=reason,
        status=AppointmentStatus.PENDING,
    )
    s.add(app)
    s.flush()

    _notify_role(
        s,
        Role.ADMIN,
        NotificationType.APPOINTMENT_REQUEST,
        "New appointment request",
        f"{patient.full_name} requested an appointment for {scheduled_at.strftime('%d/%m/%Y %H:%M')}.",
        related_type="appointment",
        related_id=app.id,
    )
    return app


def book_public_appointment(
    first_name: str,
    last_name: str,
    email: str,
    phone: str,
    scheduled_at: datetime,
    age: int | None = None,
    sex: str | None = None,
    service: str | None = None,
    reason: str | None = None,
    doctor_id: str | None = None,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> BookingResult:
    """
    Booking without login:
    - find the patient by email, or create it on the fly
    - refresh phone / age when they changed
    - create a pending appointment and notify the admins
    """
    if not (first_name or "").strip() or not (last_name or "").strip():
        raise BusinessRuleError("First and last name are required.")
    if not (phone or "").strip():
        raise BusinessRuleError("Phone is required.")

    email = normalize_email(email)
    with db_session() as s:
        patient = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        created = False
        if patient is None:
            patient = _create_user(
                s, email, f"{first_name.strip()} {last_name.strip()}", Role.PATIENT,
                phone=phone.strip(), age=age, sex=sex,
            )
            created = True
        else:
            if patient.role != Role.PATIENT:
                raise BusinessRuleError("This email belongs to a staff account.")
            if not patient.is_active:
                raise PermissionDeniedError("Account is disabled.")
            if phone and patient.phone != phone.strip():
                patient.phone = phone.strip()
            if age is not None and patient.age != age:
                patient.age = age

        app = _book(s, patient, scheduled_at, doctor_id, service, reason, duration_minutes)
        logger.info("Public booking %s for %s (new patient: %s)", app.id, email, created)
        return BookingResult(True, app.id, patient.id, created, "Appointment requested. The clinic will confirm it.")


def book_patient_appointment(
    patient_id: str,
    scheduled_at: datetime,
    doctor_id: str | None = None,
    service: str | None = None,
    reason: str | None = None,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> BookingResult:
    with db_session() as s:
        patient = s.get(User, patient_id)
        if not patient or patient.role != Role.PATIENT:
            raise NotFoundError("Patient not found.")
        app = _book(s, patient, scheduled_at, doctor_id, service, reason, duration_minutes)
        return BookingResult(True, app.id, patient.id, False, "Appointment requested.")


# =========================
# Appointment workflow (admin)
# =========================
def approve_appointment(appointment_id: str, doctor_id: str | None = None, notes: str | None = None) -> dict:
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if app.status not in (AppointmentStatus.PENDING, AppointmentStatus.RESCHEDULED):
            raise BusinessRuleError(f"Cannot approve an appointment that is {app.status.value}.")

        doctor_id = doctor_id or app.doctor_id
        if not doctor_id:
            raise BusinessRuleError("Assign a doctor before approving.")
        doctor = _get_doctor(s, doctor_id)

        if not _doctor_is_free(s, doctor.id, app.scheduled_at, app.ends_at, exclude_id=app.id):
            raise BusinessRuleError("The doctor already has an appointment in this slot.")

        app.doctor_id = doctor.id
        app.status = AppointmentStatus.APPROVED
        if notes:
            app.admin_notes = notes

        _notify(
            s,
            app.patient_id,
            NotificationType.APPOINTMENT_APPROVED,
            "Appointment confirmed",
            f"Your appointment with Dr. {doctor.full_name} is confirmed for "
            f"{app.scheduled_at.strftime('%d/%m/%Y %H:%M')}.",
            related_type="appointment",
            related_id=app.id,
        )
        _notify(
            s,
            doctor.id,
            NotificationType.APPOINTMENT_APPROVED,
            "New appointment",
            f"{app.patient.full_name} on {app.scheduled_at.strftime('%d/%m/%Y %H:%M')}.",
            related_type="appointment",
            related_id=app.id,
        )
        s.flush()
        logger.info("Appointment %s approved with doctor %s", app.id, doctor.id)
        return appointment_flat(app)


def reject_appointment(appointment_id: str, reason: str | None = None) -> dict:
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if app.status not in (AppointmentStatus.PENDING, AppointmentStatus.RESCHEDULED):
            raise BusinessRuleError(f"Cannot reject an appointment that is {app.status.value}.")
        app.status = AppointmentStatus.REJECTED
        app.cancellation_reason = reason
        _notify(
            s,
            app.patient_id,
            NotificationType.APPOINTMENT_REJECTED,
            "Appointment not available",
            f"Your appointment request could not be accepted. Reason: {reason or 'n/a'}",
            related_type="appointment",
            related_id=app.id,
        )
        return appointment_flat(app)


def cancel_appointment(appointment_id: str, reason: str | None = None, patient_id: str | None = None) -> dict:
    """
    Cancel an appointment. When patient_id is given the appointment must
    belong to that patient (self-service cancellation).
    """
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if patient_id and app.patient_id != patient_id:
            raise NotFoundError("Appointment not found.")
        if app.status in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED):
            raise BusinessRuleError(f"Cannot cancel an appointment that is {app.status.value}.")

        app.status = AppointmentStatus.CANCELLED
        app.consultation_status = ConsultationStatus.CANCELLED
        app.cancellation_reason = reason

        _notify(
            s,
            app.patient_id,
            NotificationType.APPOINTMENT_CANCELLED,
            "Appointment cancelled",
            f"Appointment of {app.scheduled_at.strftime('%d/%m/%Y %H:%M')} cancelled. Reason: {reason or 'n/a'}",
            related_type="appointment",
            related_id=app.id,
        )
        if app.doctor_id:
            _notify(
                s,
                app.doctor_id,
                NotificationType.APPOINTMENT_CANCELLED,
                "Appointment cancelled",
                f"{app.patient.full_name} on {app.scheduled_at.strftime('%d/%m/%Y %H:%M')} was cancelled.",
                related_type="appointment",
                related_id=app.id,
            )
        return appointment_flat(app)


def reschedule_appointment(appointment_id: str, scheduled_at: datetime, reason: str | None = None) -> dict:
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if app.status in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED):
            raise BusinessRuleError(f"Cannot reschedule an appointment that is {app.status.value}.")
        scheduled_at = _local(scheduled_at)
        if scheduled_at <= _now():
            raise BusinessRuleError("The appointment must be scheduled in the future.")

        end = scheduled_at + timedelta(minutes=app.duration_minutes)
        if app.doctor_id and not _doctor_is_free(s, app.doctor_id, scheduled_at, end, exclude_id=app.id):
            raise BusinessRuleError("The doctor already has an appointment in this slot.")

        old = app.scheduled_at
        app.scheduled_at = scheduled_at
        app.ends_at = end
        app.status = AppointmentStatus.RESCHEDULED
        if reason:
            app.admin_notes = reason

        _notify(
            s,
            app.patient_id,
            NotificationType.APPOINTMENT_RESCHEDULED,
            "Appointment rescheduled",
            f"Your appointment moved from {old.strftime('%d/%m/%Y %H:%M')} "
            f"to {scheduled_at.strftime('%d/%m/%Y %H:%M')}.",
            related_type="appointment",
            related_id=app.id,
        )
        return appointment_flat(app)


# =========================
# Queries
# =========================
def list_appointments(
    status: AppointmentStatus | None = None,
    doctor_id: str | None = None,
    patient_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    conds = []
    if status:
        conds.append(Appointment.status == status)
    if doctor_id:
        conds.append(Appointment.doctor_id == doctor_id)
    if patient_id:
        conds.append(Appointment.patient_id == patient_id)
    if date_from:
        conds.append(Appointment.scheduled_at >= datetime.combine(date_from, datetime.min.time()))
    if date_to:
        conds.append(Appointment.scheduled_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time()))

    page = max(page, 1)
    with db_session() as s:
        total = s.scalar(select(func.count(Appointment.id)).where(*conds)) or 0
        rows = s.scalars(
            select(Appointment)
            .where(*conds)
            .order_by(Appointment.scheduled_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {"items": [appointment_flat(a) for a in rows], "total": total, "page": page, "limit": limit}


def get_appointment(appointment_id: str, doctor_id: str | None = None, patient_id: str | None = None) -> dict:
    """Appointment with its medical record and prescriptions."""
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if doctor_id and app.doctor_id != doctor_id:
            raise NotFoundError("Appointment not found.")
        if patient_id and app.patient_id != patient_id:
            raise NotFoundError("Appointment not found.")
        data = appointment_flat(app)
        data["medical_record"] = record_flat(app.medical_record) if app.medical_record else None
        data["prescriptions"] = [prescription_flat(p) for p in app.prescriptions]
        return data


def doctor_agenda_flat(doctor_id: str, day: date) -> list[dict]:
    """
    'Flat' day agenda of a doctor: serializable dicts, cancelled and
    rejected appointments left out.
    """
    start_day = datetime.combine(day, datetime.min.time())
    end_day = start_day + timedelta(days=1)

    with db_session() as s:
        rows = s.execute(
            select(
                Appointment.id,
                Appointment.scheduled_at,
                Appointment.ends_at,
                Appointment.status,
                Appointment.consultation_status,
                Appointment.reason,
                User.full_name.label("patient_name"),
            )
            .join(User, User.id == Appointment.patient_id)
            .where(
                and_(
                    Appointment.doctor_id == doctor_id,
                    Appointment.scheduled_at >= start_day,
                    Appointment.scheduled_at < end_day,
                    Appointment.status.not_in((AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED)),
                )
            )
            .order_by(Appointment.scheduled_at.asc())
        ).all()
        return [
            {
                "id": r.id,
                "start": r.scheduled_at.strftime("%H:%M"),
                "end": r.ends_at.strftime("%H:%M"),
                "status": r.status.value,
                "consultation_status": r.consultation_status.value,
                "reason": r.reason,
                "patient": r.patient_name,
            }
            for r in rows
        ]


def doctor_dashboard(doctor_id: str, today: date | None = None) -> dict:
    today = today or date.today()
    with db_session() as s:
        by_status = dict(
            s.execute(
                select(Appointment.status, func.count(Appointment.id))
                .where(Appointment.doctor_id == doctor_id)
                .group_by(Appointment.status)
            ).all()
        )
        patients = s.scalar(
            select(func.count(func.distinct(Appointment.patient_id))).where(Appointment.doctor_id == doctor_id)
        ) or 0
    return {
        "today": doctor_agenda_flat(doctor_id, today),
        "by_status": {st.value: by_status.get(st, 0) for st in AppointmentStatus},
        "patients": patients,
    }


# =========================
# Consultation (doctor)
# =========================
_RECORD_FIELDS = ("chief_complaint", "symptoms", "diagnosis", "final_diagnosis", "vitals", "notes")
_RX_ITEM_FIELDS = (
    "medication_name", "dosage", "frequency", "duration", "quantity",
    "instructions", "inventory_item_id", "is_billable", "unit_price",
)


def save_consultation(
    appointment_id: str,
    doctor_id: str,
    record: dict | None = None,
    prescription: dict | None = None,
    complete: bool = False,
) -> dict:
    """
    Use case: the doctor writes up a visit.
    - upsert the medical record of the appointment
    - upsert the prescription, replacing its items while still pending and unbilled
    - complete=True closes the appointment and notifies pharmacy and admins
    """
    with db_session() as s:
        app = _get_appointment(s, appointment_id)
        if app.doctor_id != doctor_id:
            raise PermissionDeniedError("This appointment is assigned to another doctor.")
        if app.status not in (*ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus.COMPLETED):
            raise BusinessRuleError(f"Cannot record a consultation for a {app.status.value} appointment.")
        if complete and app.status == AppointmentStatus.COMPLETED:
            raise BusinessRuleError("Consultation already completed.")

        if record:
            mr = app.medical_record
            if mr is None:
                mr = MedicalRecord(patient_id=app.patient_id, doctor_id=doctor_id)
                app.medical_record = mr
            for f in _RECORD_FIELDS:
                if f in record:
                    setattr(mr, f, record[f])

        rx = app.prescriptions[0] if app.prescriptions else None
        if prescription is not None:
            items = prescription.get("items") or []
            if rx is not None and (
                rx.status != PrescriptionStatus.PENDING or rx.billing_status != PrescriptionBillingStatus.UNBILLED
            ):
                raise BusinessRuleError("The prescription is already being processed by the pharmacy.")
            if rx is None and items:
                rx = Prescription(patient_id=app.patient_id, doctor_id=doctor_id)
                app.prescriptions.append(rx)
            if rx is not None:
                rx.notes = prescription.get("notes")
                rx.items.clear()
                for item in items:
                    if not (item.get("medication_name") or "").strip():
                        raise BusinessRuleError("Every prescription item needs a medication name.")
                    rx.items.append(PrescriptionItem(**{f: item[f] for f in _RX_ITEM_FIELDS if item.get(f) is not None}))

        if app.consultation_status == ConsultationStatus.PENDING:
            app.consultation_status = ConsultationStatus.IN_PROGRESS

        if complete:
            app.status = AppointmentStatus.COMPLETED
            app.consultation_status = ConsultationStatus.COMPLETED
            s.flush()
            if rx is not None and rx.items:
                _notify_role(
                    s,
                    Role.PHARMACIST,
                    NotificationType.PRESCRIPTION_READY,
                    "New prescription",
                    f"Prescription for {app.patient.full_name} ({len(rx.items)} items) is ready.",
                    related_type="prescription",
                    related_id=rx.id,
                )
            _notify_role(
                s,
                Role.ADMIN,
                NotificationType.CONSULTATION_COMPLETED,
                "Consultation completed",
                f"Dr. {app.doctor.full_name} completed the consultation of {app.patient.full_name}.",
                related_type="appointment",
                related_id=app.id,
            )
            logger.info("Consultation completed for appointment %s", app.id)

        s.flush()
        data = appointment_flat(app)
        data["medical_record"] = record_flat(app.medical_record) if app.medical_record else None
        data["prescriptions"] = [prescription_flat(p) for p in app.prescriptions]
        return data


# =========================
# Patient records
# =========================
def patient_records(patient_id: str) -> list[dict]:
    """Medical records of a patient, newest first, each with its prescriptions."""
    with db_session() as s:
        if not s.get(User, patient_id):
            raise NotFoundError("Patient not found.")
        records = s.scalars(
            select(MedicalRecord)
            .where(MedicalRecord.patient_id == patient_id)
            .order_by(MedicalRecord.created_at.desc())
        )
        out = []
        for r in records:
            data = record_flat(r)
            data["scheduled_at"] = r.appointment.scheduled_at if r.appointment else None
            data["prescriptions"] = [prescription_flat(p) for p in r.appointment.prescriptions] if r.appointment else []
            out.append(data)
        return out
