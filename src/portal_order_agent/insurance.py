from __future__ import annotations

from typing import Mapping, Optional

from .models import Patient


# Utah Medicaid managed-care plans and fee-for-service programs, matched as case-insensitive substrings.
MEDICAID_MCOS: tuple[str, ...] = (
    "Healthy U",
    "University of Utah Health Plans",
    "Molina Healthcare",
    "Select Health",
    "Health Choice Utah",
    "Anthem",
)

MEDICAID_FFS: tuple[str, ...] = (
    "Targeted Adult Medicaid",
    "Traditional Medicaid",
    "Utah Medicaid",
)

PAYOR_CODES: Mapping[str, str] = {
    "Medicaid": "UT",
    "Healthy U": "UT",
    "Molina Healthcare of Utah": "UT",
    "Select Health Community Care": "UT",
    "Health Choice Utah": "UT",
    "Targeted Adult Medicaid": "UT",
    "Medicare": "05",
}

MEDICAID_PAYOR_CODE = "UT"
MEDICARE_PAYOR_CODE = "05"


def is_medicaid(insurance_name: str = "", medicaid_id: str = "") -> bool:
    if medicaid_id:
        return True
    name = (insurance_name or "").lower()
    if not name:
        return False
    if "medicaid" in name:
        return True
    return any(p.lower() in name for p in MEDICAID_MCOS + MEDICAID_FFS)


def is_medicare(insurance_name: str = "", medicare_id: str = "") -> bool:
    if medicare_id:
        return True
    return "medicare" in (insurance_name or "").lower()


def payer_code(insurance_name: str = "", medicaid_id: str = "") -> Optional[str]:
    if is_medicaid(insurance_name, medicaid_id):
        return MEDICAID_PAYOR_CODE
    if is_medicare(insurance_name):
        return MEDICARE_PAYOR_CODE
    if not insurance_name:
        return None
    if insurance_name in PAYOR_CODES:
        return PAYOR_CODES[insurance_name]
    for name, code in PAYOR_CODES.items():
        if name in insurance_name:
            return code
    return None


def bill_method(patient: Patient) -> str:
    """
    How the portal should bill the order.

    Medicare wins over Medicaid for dual-eligible patients, matching how the portals route claims.
    """
    if is_medicare(patient.insurance_provider, patient.medicare_id):
        return "Medicare"
    if is_medicaid(patient.insurance_provider, patient.medicaid_id):
        return "Medicaid"
    if patient.insurance_provider and patient.insurance_id:
        return "Private Insurance"
    return "Client"


def patient_payer_code(patient: Patient) -> str:
    """Payer code for the portal, consistent with `bill_method` (Medicare wins for dual-eligible patients)."""
    method = bill_method(patient)
    if method == "Medicare":
        return MEDICARE_PAYOR_CODE
    if method == "Medicaid":
        return MEDICAID_PAYOR_CODE
    return payer_code(patient.insurance_provider) or ""


def verification_payer_id(patient: Patient) -> Optional[str]:
    """The payer identifier to send to the eligibility oracle, or None when the patient is not verifiable."""
    if patient.medicaid_id:
        return patient.medicaid_id
    if is_medicaid(patient.insurance_provider) and patient.insurance_id:
        return patient.insurance_id
    return None


def member_id(patient: Patient) -> str:
    """The identifier typed into the portal's insurance id field."""
    if is_medicare(patient.insurance_provider, patient.medicare_id) and patient.medicare_id:
        return patient.medicare_id
    if patient.medicaid_id:
        return patient.medicaid_id
    return patient.insurance_id
