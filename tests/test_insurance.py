from __future__ import annotations

import pytest

from fakes import make_order
from portal_order_agent.insurance import (
    bill_method,
    is_medicaid,
    member_id,
    patient_payer_code,
    payer_code,
    verification_payer_id,
)


@pytest.mark.parametrize(
    ("name", "medicaid_id", "expected"),
    [
        ("Healthy U", "", True),
        ("MOLINA HEALTHCARE OF UTAH", "", True),
        ("Targeted Adult Medicaid", "", True),
        ("Blue Cross", "", False),
        ("", "0123456789", True),
        ("", "", False),
    ],
)
def test_is_medicaid(name: str, medicaid_id: str, expected: bool) -> None:
    assert is_medicaid(name, medicaid_id) is expected


def test_payer_codes() -> None:
    assert payer_code("Select Health Community Care") == "UT"
    assert payer_code("Medicare Part B") == "05"
    assert payer_code("Aetna") is None
    assert payer_code("") is None


def test_bill_method_precedence() -> None:
    plain = make_order().patient
    assert bill_method(plain) == "Client"

    private = plain.model_copy(update={"insurance_provider": "Aetna", "insurance_id": "W123"})
    assert bill_method(private) == "Private Insurance"

    medicaid = make_order(medicaid_id="0123456789").patient
    assert bill_method(medicaid) == "Medicaid"

    dual = medicaid.model_copy(update={"medicare_id": "1EG4-TE5-MK73"})
    assert bill_method(dual) == "Medicare"
    assert member_id(dual) == "1EG4-TE5-MK73"


def test_verification_payer_id() -> None:
    assert verification_payer_id(make_order().patient) is None
    assert verification_payer_id(make_order(medicaid_id="0123456789").patient) == "0123456789"

    mco = make_order(insurance_provider="Healthy U").patient.model_copy(update={"insurance_id": "HU-77"})
    assert verification_payer_id(mco) == "HU-77"
    assert member_id(mco) == "HU-77"


def test_patient_payer_code_follows_bill_method() -> None:
    plain = make_order().patient
    assert patient_payer_code(plain) == ""

    medicare_only = plain.model_copy(update={"medicare_id": "1EG4-TE5-MK73"})
    assert bill_method(medicare_only) == "Medicare"
    assert member_id(medicare_only) == "1EG4-TE5-MK73"
    assert patient_payer_code(medicare_only) == "05"

    dual = make_order(medicaid_id="0123456789").patient.model_copy(update={"medicare_id": "1EG4-TE5-MK73"})
    assert patient_payer_code(dual) == "05"
    assert patient_payer_code(make_order(medicaid_id="0123456789").patient) == "UT"

    private = plain.model_copy(update={"insurance_provider": "Aetna", "insurance_id": "W123"})
    assert patient_payer_code(private) == ""
