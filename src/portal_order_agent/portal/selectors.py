from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Mapping, Optional


@dataclass(frozen=True)
class FieldSpec:
    candidates: tuple[str, ...]
    kind: str = "text"  # text | select | checkbox | textarea
    required: bool = True
    label_hints: tuple[str, ...] = ()


@dataclass(frozen=True)
class ElementQuery:
    """What to look for: a semantic field name plus everything the resolver may use to find it."""

    field: str
    candidates: tuple[str, ...] = ()
    kind: str = "text"
    required: bool = True
    label_hints: tuple[str, ...] = ()


# Order portals are web apps whose markup changes without notice.
# Keep every locator and text hook here; the navigator only ever refers to semantic field names.
GENERIC_FIELDS: Mapping[str, FieldSpec] = {
    # Login
    "login.username": FieldSpec(
        candidates=(
            "#okta-signin-username",
            'input[name="identifier"]',
            'input[name="username"]',
            "#username",
            'input[autocomplete="username"]',
            'input[name="j_username"]',
            'input[type="email"]',
        ),
        label_hints=("username", "user id", "email"),
    ),
    "login.password": FieldSpec(
        candidates=(
            "#okta-signin-password",
            'input[name="credentials.passcode"]',
            'input[name="password"]',
            "#password",
            'input[autocomplete="current-password"]',
            'input[type="password"]',
        ),
        label_hints=("password", "passcode"),
    ),
    # Patient search (mandatory before "create patient" enables)
    "patient_search.last_name": FieldSpec(
        candidates=('input[name="searchLastName"]', 'input[name="patientLastName"]', 'input[placeholder*="Last Name" i]'),
        label_hints=("last name", "patient last name"),
    ),
    "patient_search.first_name": FieldSpec(
        candidates=('input[name="searchFirstName"]', 'input[name="patientFirstName"]'),
        required=False,
        label_hints=("first name",),
    ),
    "patient_search.dob": FieldSpec(
        candidates=('input[name="searchDob"]', 'input[name="patientDob"]'),
        required=False,
        label_hints=("date of birth", "dob", "birth date"),
    ),
    # New patient form
    "patient.first_name": FieldSpec(
        candidates=('input[name="firstName"]', "#firstName", 'input[aria-label="First Name"]'),
        label_hints=("first name",),
    ),
    "patient.last_name": FieldSpec(
        candidates=('input[name="lastName"]', "#lastName", 'input[aria-label="Last Name"]'),
        label_hints=("last name",),
    ),
    "patient.dob": FieldSpec(
        candidates=('input[name="dateOfBirth"]', "#dateOfBirth", 'input[name="dob"]'),
        label_hints=("date of birth", "dob", "birth"),
    ),
    "patient.sex": FieldSpec(
        candidates=('select[name="gender"]', 'select[name="sex"]', "#gender"),
        kind="select",
        required=False,
        label_hints=("sex", "gender"),
    ),
    "patient.address_line1": FieldSpec(
        candidates=('input[name="address"]', 'input[name="address1"]', 'input[name="addressLine1"]'),
        label_hints=("address", "street", "address line 1"),
    ),
    "patient.address_line2": FieldSpec(
        candidates=('input[name="address2"]', 'input[name="addressLine2"]'),
        required=False,
        label_hints=("address line 2", "apt", "suite"),
    ),
    "patient.city": FieldSpec(
        candidates=('input[name="city"]', "#city"),
        label_hints=("city",),
    ),
    "patient.state": FieldSpec(
        candidates=('select[name="state"]', "#state"),
        kind="select",
        label_hints=("state",),
    ),
    "patient.zip": FieldSpec(
        candidates=('input[name="zip"]', 'input[name="zipCode"]', 'input[name="postalCode"]'),
        label_hints=("zip", "zip code", "postal code"),
    ),
    "patient.phone": FieldSpec(
        candidates=('input[name="phone"]', 'input[name="phoneNumber"]', 'input[type="tel"]'),
        required=False,
        label_hints=("phone", "phone number"),
    ),
    "patient.phone_type": FieldSpec(
        candidates=('select[name="phoneType"]',),
        kind="select",
        required=False,
        label_hints=("phone type",),
    ),
    "patient.bill_method": FieldSpec(
        candidates=('select[name="billMethod"]', 'select[name="billTo"]'),
        kind="select",
        required=False,
        label_hints=("bill method", "bill to", "billing"),
    ),
    "patient.insurance_id": FieldSpec(
        candidates=('input[name="insuranceId"]', 'input[name="memberId"]', 'input[name="medicaidId"]'),
        required=False,
        label_hints=("member id", "insurance id", "subscriber id", "medicaid id"),
    ),
    "patient.payer_code": FieldSpec(
        candidates=('select[name="payor"]', 'select[name="payer"]', 'input[name="payorCode"]'),
        kind="select",
        required=False,
        label_hints=("payor", "payer", "payor code"),
    ),
    # Order details
    "order.provider": FieldSpec(
        candidates=('select[name="orderingProvider"]', 'select[name="provider"]', "#orderingProvider"),
        kind="select",
        required=False,
        label_hints=("ordering provider", "provider", "physician"),
    ),
    "order.provider_npi_search": FieldSpec(
        candidates=('input[name="npi"]', 'input[name="providerNpi"]', 'input[placeholder*="NPI"]'),
        label_hints=("npi",),
    ),
    "order.test_search": FieldSpec(
        candidates=('input[name="testSearch"]', 'input[placeholder*="test" i]', 'input[aria-label*="test" i]'),
        label_hints=("test", "test search", "add test"),
    ),
    "order.diagnosis_search": FieldSpec(
        candidates=('input[name="diagnosisSearch"]', 'input[placeholder*="diagnosis" i]', 'input[placeholder*="ICD" i]'),
        label_hints=("diagnosis", "icd", "icd-10"),
    ),
    "order.user_initials": FieldSpec(
        candidates=('input[name="userInitials"]', 'input[name="initials"]'),
        required=False,
        label_hints=("initials", "user initials"),
    ),
    "order.collection_date": FieldSpec(
        candidates=('input[name="collectionDate"]', 'input[name="specimenDate"]'),
        required=False,
        label_hints=("collection date", "specimen date"),
    ),
    "order.special_instructions": FieldSpec(
        candidates=('textarea[name="comments"]', 'textarea[name="specialInstructions"]', 'textarea[name="notes"]'),
        kind="textarea",
        required=False,
        label_hints=("comments", "special instructions", "notes"),
    ),
}

# Portal-specific candidates, tried before the generic ones.
PORTAL_FIELDS: Mapping[str, Mapping[str, FieldSpec]] = {
    "labcorp": {
        "patient_search.last_name": FieldSpec(
            candidates=('input[placeholder*="patient" i]', 'input[name="lastName"][form="patientSearch"]'),
            label_hints=("last name", "patient"),
        ),
    },
    "quest": {
        "login.username": FieldSpec(
            candidates=('input[name="username"]', 'input[name="user"]', "#username"),
            label_hints=("username", "user id"),
        ),
    },
}


@dataclass(frozen=True)
class PortalSelectors:
    """
    Text hooks and container selectors for one portal, plus its resolved field catalog.
    """

    fields: Mapping[str, FieldSpec] = field(default_factory=lambda: dict(GENERIC_FIELDS))

    # Login
    # Some portals land on a marketing page that needs a "Sign In" click before fields appear.
    login_entry_texts: tuple[str, ...] = ("Sign In", "Sign in", "Log In", "Log in", "Login")
    login_continue_texts: tuple[str, ...] = ("Next", "Continue")
    login_submit_texts: tuple[str, ...] = ("Sign In", "Sign in", "Log In", "Log in", "Login", "Submit", "Verify")

    # Navigation
    new_order_texts: tuple[str, ...] = ("New Order", "Create Order", "Lab Order", "Order Entry")

    # Patient
    # Matched exactly: "Search" must not hit "Search by NPI".
    patient_search_texts: tuple[str, ...] = ("Search", "Search Patients", "Find Patient")
    create_patient_texts: tuple[str, ...] = ("Create New Patient", "Add New Patient", "New Patient", "Create Patient")
    confirm_patient_texts: tuple[str, ...] = ("Select Patient", "Use This Patient", "Use Patient")
    save_patient_texts: tuple[str, ...] = ("Save Patient", "Save", "Continue")
    address_confirm_texts: tuple[str, ...] = (
        "Use Address as Entered",
        "Use Entered Address",
        "Use Suggested Address",
        "Confirm Address",
    )
    patient_result_row: str = "table.patient-results tbody tr, .patient-results [role='row'], .patient-result"

    # Order details
    npi_search_texts: tuple[str, ...] = ("Search by NPI", "NPI Search", "Find by NPI")
    autocomplete_option: str = "[role='option'], .autocomplete-item, .ui-menu-item, .typeahead-result"

    # Validation / submission
    validate_texts: tuple[str, ...] = ("Validate", "Review Order", "Review", "Check Order")
    submit_texts: tuple[str, ...] = ("Submit Order", "Place Order", "Send Order", "Submit")
    validation_message: str = ".validation-error, .error-message, .alert-danger, [role='alert'], .field-error"

    def query(self, name: str) -> ElementQuery:
        spec = self.fields.get(name)
        if spec is None:
            raise KeyError(f"No field catalog entry for {name!r}")
        return ElementQuery(
            field=name,
            candidates=spec.candidates,
            kind=spec.kind,
            required=spec.required,
            label_hints=spec.label_hints,
        )


def catalog_for(
    portal: str,
    overrides: Optional[Mapping[str, list[str]]] = None,
    required_overrides: Optional[Mapping[str, bool]] = None,
) -> PortalSelectors:
    """
    Build the selector set for `portal`: configured overrides first, then portal-specific, then generic.
    """
    merged: dict[str, FieldSpec] = dict(GENERIC_FIELDS)
    for name, spec in (PORTAL_FIELDS.get(portal) or {}).items():
        base = merged.get(name)
        if base is None:
            merged[name] = spec
            continue
        merged[name] = replace(
            base,
            candidates=_dedupe(spec.candidates + base.candidates),
            label_hints=_dedupe(spec.label_hints + base.label_hints),
        )

    for name, extra in (overrides or {}).items():
        base = merged.get(name) or FieldSpec(candidates=())
        merged[name] = replace(base, candidates=_dedupe(tuple(extra) + base.candidates))

    for name, required in (required_overrides or {}).items():
        if name in merged:
            merged[name] = replace(merged[name], required=bool(required))

    return PortalSelectors(fields=merged)


def _dedupe(items: tuple[str, ...]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return tuple(out)
