from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .auth_service import CurrentUser
from .deps import require_pharmacy
from .models import PrescriptionBillingStatus, PrescriptionStatus
from .pharmacy import can_dispense, dispense_prescription, get_prescription, list_prescriptions, start_processing
from .prescription_billing import create_invoice_from_prescription

router = APIRouter(prefix="/api/pharmacist", tags=["pharmacy"])


class InvoiceFromPrescriptionIn(BaseModel):
    include_consultation: bool = False


@router.get("/prescriptions")
def queue(
    status: PrescriptionStatus | None = None,
    billing_status: PrescriptionBillingStatus | None = None,
    limit: int = 100,
    user: CurrentUser = Depends(require_pharmacy),
) -> list[dict]:
    return list_prescriptions(status, billing_status, limit)


@router.get("/prescriptions/{prescription_id}")
def detail(prescription_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return get_prescription(prescription_id)


@router.post("/prescriptions/{prescription_id}/process")
def process(prescription_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return {"ok": True, "prescription": start_processing(prescription_id)}


@router.get("/prescriptions/{prescription_id}/can-dispense")
def check(prescription_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return asdict(can_dispense(prescription_id))


@router.post("/prescriptions/{prescription_id}/dispense")
def dispense(prescription_id: str, user: CurrentUser = Depends(require_pharmacy)) -> dict[str, Any]:
    return {"ok": True, "prescription": dispense_prescription(prescription_id, user.id)}


@router.post("/prescriptions/{prescription_id}/invoice")
def invoice(
    prescription_id: str, payload: InvoiceFromPrescriptionIn, user: CurrentUser = Depends(require_pharmacy)
) -> dict[str, Any]:
    return {"ok": True, **create_invoice_from_prescription(prescription_id, payload.include_consultation, user.id)}
