from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .auth_models import User, new_uuid
from .db import Base, utcnow
from .inventory_models import InventoryItem


class AppointmentStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PrescriptionStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DISPENSED = "dispensed"
    CANCELLED = "cancelled"


class PrescriptionBillingStatus(enum.Enum):
    UNBILLED = "unbilled"
    INVOICED = "invoiced"
    PARTIAL = "partial"
    PAID = "paid"


class NotificationType(enum.Enum):
    APPOINTMENT_REQUEST = "appointment_request"
    APPOINTMENT_APPROVED = "appointment_approved"
    APPOINTMENT_REJECTED = "appointment_rejected"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    CONSULTATION_COMPLETED = "consultation_completed"
    PRESCRIPTION_READY = "prescription_ready"
    PRESCRIPTION_DISPENSED = "prescription_dispensed"
    OTP = "otp"
    GENERAL = "general"


# Appointments that hold a doctor's time slot
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.APPROVED, AppointmentStatus.RESCHEDULED)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    service: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), default=AppointmentStatus.PENDING, nullable=False
    )
    consultation_status: Mapped[ConsultationStatus] = mapped_column(
        Enum(ConsultationStatus), default=ConsultationStatus.PENDING, nullable=False
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    doctor: Mapped["User | None"] = relationship(foreign_keys=[doctor_id])
    medical_record: Mapped["MedicalRecord | None"] = relationship(
        back_populates="appointment", uselist=False, cascade="all, delete-orphan"
    )
    prescriptions: Mapped[list["Prescription"]] = relationship(back_populates="appointment")


class MedicalRecord(Base):
    __tablename__ = "medical_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), unique=True, nullable=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)

    chief_complaint: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptoms: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    vitals: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # bp, pulse, temperature, weight...
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointment: Mapped["Appointment | None"] = relationship(back_populates="medical_record")
    doctor: Mapped["User"] = relationship(foreign_keys=[doctor_id])


class Prescription(Base):
    __tablename__ = "prescriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), nullable=True, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[PrescriptionStatus] = mapped_column(
        Enum(PrescriptionStatus), default=PrescriptionStatus.PENDING, nullable=False
    )
    billing_status: Mapped[PrescriptionBillingStatus] = mapped_column(
        Enum(PrescriptionBillingStatus), default=PrescriptionBillingStatus.UNBILLED, nullable=False
    )
    invoice_id: Mapped[str | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)

    dispensed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dispensed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointment: Mapped["Appointment | None"] = relationship(back_populates="prescriptions")
    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    doctor: Mapped["User"] = relationship(foreign_keys=[doctor_id])
    items: Mapped[list["PrescriptionItem"]] = relationship(
        back_populates="prescription", cascade="all, delete-orphan", order_by="PrescriptionItem.id"
    )


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prescription_id: Mapped[str] = mapped_column(ForeignKey("prescriptions.id"), nullable=False)

    medication_name: Mapped[str] = mapped_column(String(160), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(80), nullable=True)
    frequency: Mapped[str | None] = mapped_column(String(80), nullable=True)
    duration: Mapped[str | None] = mapped_column(String(80), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    inventory_item_id: Mapped[str | None] = mapped_column(ForeignKey("inventory_items.id"), nullable=True)
    is_billable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    prescription: Mapped["Prescription"] = relationship(back_populates="items")
    inventory_item: Mapped["InventoryItem | None"] = relationship()


class Notification(Base):
    """
    In-app notification. Rows with sent_at NULL are also the outbox for
    external delivery (e-mail), drained by the CLI.
    """
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # optional link to the entity the notification is about
    related_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    related_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship()
