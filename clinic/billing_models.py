from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .auth_models import User, new_uuid
from .db import Base, utcnow
from .inventory_models import InventoryItem
from .models import Appointment

ZERO = Decimal("0")


def _money() -> Numeric:
    return Numeric(12, 2)


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BillType(enum.Enum):
    STANDARD = "standard"
    QUICK = "quick"
    PHARMACY = "pharmacy"
    COMBINED = "combined"


class InvoiceItemType(enum.Enum):
    CONSULTATION = "consultation"
    MEDICATION = "medication"
    SUPPLY = "supply"
    PROCEDURE = "procedure"
    LAB_TEST = "lab_test"
    SERVICE = "service"
    OTHER = "other"


# Line types that move stock when the invoice is paid
STOCK_ITEM_TYPES = (InvoiceItemType.MEDICATION, InvoiceItemType.SUPPLY)


class PaymentMethod(enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    ONLINE = "online"
    CHEQUE = "cheque"
    OTHER = "other"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CreditNoteStatus(enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    APPLIED = "applied"
    CANCELLED = "cancelled"


class LedgerEntryType(enum.Enum):
    INVOICE = "invoice"
    PAYMENT = "payment"
    CREDIT_NOTE = "credit_note"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    OPENING_BALANCE = "opening_balance"


class AuditAction(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    PAYMENT = "payment"
    REFUND = "refund"
    CANCEL = "cancel"
    PRINT = "print"
    EMAIL = "email"


class AuditEntityType(enum.Enum):
    INVOICE = "invoice"
    INVOICE_ITEM = "invoice_item"
    PAYMENT = "payment"
    REFUND = "refund"
    CREDIT_NOTE = "credit_note"
    TREATMENT_CASE = "treatment_case"
    BILLING_SETTING = "billing_setting"
    LEDGER_ENTRY = "ledger_entry"


class TreatmentCaseStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class BillingSetting(Base):
    __tablename__ = "billing_settings"

    key: Mapped[str] = mapped_column(String(60), primary_key=True)
    value: Mapped[object] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class TreatmentCase(Base):
    """Groups the invoices of one course of treatment."""
    __tablename__ = "treatment_cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    case_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TreatmentCaseStatus] = mapped_column(
        Enum(TreatmentCaseStatus), default=TreatmentCaseStatus.ACTIVE, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    estimated_cost: Mapped[Decimal | None] = mapped_column(_money(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    doctor: Mapped["User | None"] = relationship(foreign_keys=[doctor_id])
    invoices: Mapped[list["Invoice"]] = relationship(back_populates="treatment_case")


class Invoice(Base):
    """
    Patient invoice.

    Amounts are stored denormalized and recomputed from the lines on every
    change. amount_paid is always completed payments minus completed refunds;
    ledger_amount is what is currently debited to the patient's ledger for
    this invoice.
    """
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    invoice_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), nullable=True, index=True)
    treatment_case_id: Mapped[str | None] = mapped_column(ForeignKey("treatment_cases.id"), nullable=True)

    bill_type: Mapped[BillType] = mapped_column(Enum(BillType), default=BillType.STANDARD, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), default=InvoiceStatus.DRAFT, nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    extra_discount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    cgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    sgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    igst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    ledger_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)

    is_igst: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    place_of_supply: Mapped[str | None] = mapped_column(String(60), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    appointment: Mapped["Appointment | None"] = relationship()
    treatment_case: Mapped["TreatmentCase | None"] = relationship(back_populates="invoices")
    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="InvoiceItem.sort_order"
    )
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="Payment.created_at"
    )
    credit_notes: Mapped[list["CreditNote"]] = relationship(back_populates="invoice", cascade="all, delete-orphan")

    @property
    def amount_due(self) -> Decimal:
        due = Decimal(self.total_amount) - Decimal(self.amount_paid)
        return due if due > 0 else ZERO


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    item_type: Mapped[InvoiceItemType] = mapped_column(Enum(InvoiceItemType), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    hsn_code: Mapped[str | None] = mapped_column(String(10), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=ZERO, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=ZERO, nullable=False)
    cgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    sgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    igst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)

    inventory_item_id: Mapped[str | None] = mapped_column(ForeignKey("inventory_items.id"), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(ForeignKey("inventory_batches.id"), nullable=True)
    prescription_item_id: Mapped[int | None] = mapped_column(ForeignKey("prescription_items.id"), nullable=True)

    stock_deducted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stock_deducted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stock_restored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    restored_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_restored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")
    inventory_item: Mapped["InventoryItem | None"] = relationship()


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.COMPLETED, nullable=False
    )
    reference_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    payment_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="payments")
    refunds: Mapped[list["PaymentRefund"]] = relationship(back_populates="payment", cascade="all, delete-orphan")


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[PaymentMethod | None] = mapped_column(Enum(PaymentMethod), nullable=True)
    status: Mapped[RefundStatus] = mapped_column(Enum(RefundStatus), default=RefundStatus.COMPLETED, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    refunded_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    payment: Mapped["Payment"] = relationship(back_populates="refunds")


class CreditNote(Base):
    __tablename__ = "credit_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    credit_note_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CreditNoteStatus] = mapped_column(
        Enum(CreditNoteStatus), default=CreditNoteStatus.ISSUED, nullable=False
    )

    subtotal: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    cgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    sgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    igst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)

    issued_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="credit_notes")
    items: Mapped[list["CreditNoteItem"]] = relationship(
        back_populates="credit_note", cascade="all, delete-orphan", order_by="CreditNoteItem.id"
    )


class CreditNoteItem(Base):
    __tablename__ = "credit_note_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credit_note_id: Mapped[str] = mapped_column(ForeignKey("credit_notes.id"), nullable=False)
    invoice_item_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_items.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=ZERO, nullable=False)
    cgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    sgst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    igst_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)

    credit_note: Mapped["CreditNote"] = relationship(back_populates="items")


class LedgerEntry(Base):
    """Append-only receivable journal; balance is the patient's running balance."""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(Enum(LedgerEntryType), nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    debit: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    credit: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    balance: Mapped[Decimal] = mapped_column(_money(), default=ZERO, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "billing_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[AuditEntityType] = mapped_column(Enum(AuditEntityType), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    entity_identifier: Mapped[str | None] = mapped_column(String(60), nullable=True)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # "metadata" is reserved by SQLAlchemy

    performed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
