from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Protocol

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import OracleUnavailable
from .insurance import verification_payer_id
from .models import Address, EnrichedPatient, OrderRequest, Patient, Verification


logger = logging.getLogger(__name__)


class EligibilityRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str
    date_of_birth: date
    payer_id: str


class CanonicalDemographics(BaseModel):
    """Demographics exactly as the payer has them on file."""

    first_name: str = ""
    last_name: str = ""
    date_of_birth: Optional[date] = None
    address: Optional[Address] = None
    phone: str = ""


class EligibilityResponse(BaseModel):
    is_eligible: bool = False
    # None when the payer found no matching member.
    demographics: Optional[CanonicalDemographics] = None


class EligibilityOracle(Protocol):
    def check(self, request: EligibilityRequest) -> EligibilityResponse:
        """Raise OracleUnavailable when the payer cannot be asked."""


class HttpEligibilityOracle:
    """
    JSON-over-HTTP adapter in front of the clearinghouse that speaks X12 270/271.

    POSTs {first_name, last_name, date_of_birth, payer_id} and expects
    {is_eligible, demographics: {...} | null} back.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self._api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def check(self, request: EligibilityRequest) -> EligibilityResponse:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            resp = self._session.post(
                self.endpoint,
                json=request.model_dump(mode="json"),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise OracleUnavailable(f"Eligibility oracle unreachable: {type(e).__name__}") from e

        if resp.status_code >= 400:
            raise OracleUnavailable(f"Eligibility oracle returned HTTP {resp.status_code}")

        try:
            return EligibilityResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise OracleUnavailable("Eligibility oracle returned an unreadable response") from e

    def ping(self) -> bool:
        """Reachability probe for `preflight`; any HTTP answer counts as reachable."""
        try:
            self._session.head(self.endpoint, timeout=self.timeout_seconds)
            return True
        except requests.RequestException:
            return False


class DemographicReconciler:
    """
    Replace caller-supplied demographics with the payer's canonical copy when coverage is active.

    Portals reject Medicaid orders whose name or address differ from what the state has on file,
    so the payer record wins. The input is never mutated and reconcile() never raises.
    """

    def __init__(self, oracle: Optional[EligibilityOracle]) -> None:
        self.oracle = oracle

    def reconcile(self, patient: Patient) -> EnrichedPatient:
        payer_id = verification_payer_id(patient)
        if not payer_id:
            return EnrichedPatient(patient=patient, verification=Verification.NOT_APPLICABLE)

        if self.oracle is None:
            return EnrichedPatient(
                patient=patient,
                verification=Verification.UNVERIFIED,
                note="no eligibility oracle configured",
            )

        req = EligibilityRequest(
            first_name=patient.first_name,
            last_name=patient.last_name,
            date_of_birth=patient.date_of_birth,
            payer_id=payer_id,
        )
        try:
            resp = self.oracle.check(req)
        except OracleUnavailable as e:
            logger.warning("Eligibility check skipped: %s", e)
            return EnrichedPatient(patient=patient, verification=Verification.UNVERIFIED, note=str(e))
        except Exception as e:
            logger.warning("Eligibility oracle failed unexpectedly; using submitted demographics.", exc_info=True)
            return EnrichedPatient(patient=patient, verification=Verification.UNVERIFIED, note=type(e).__name__)

        if resp.demographics is None:
            logger.info("Eligibility oracle found no matching member.")
            return EnrichedPatient(
                patient=patient,
                verification=Verification.UNVERIFIED,
                is_eligible=resp.is_eligible,
                note="no matching member",
            )

        if not resp.is_eligible:
            logger.info("Member found but coverage is not active; keeping submitted demographics.")
            return EnrichedPatient(patient=patient, verification=Verification.VERIFIED, is_eligible=False)

        updated, replaced = _apply_canonical(patient, resp.demographics)
        if replaced:
            logger.info("Applied canonical demographics from payer: %s", ", ".join(replaced))
        return EnrichedPatient(
            patient=updated,
            verification=Verification.VERIFIED,
            is_eligible=True,
            replaced_fields=tuple(replaced),
        )

    def reconcile_order(self, order: OrderRequest) -> tuple[OrderRequest, EnrichedPatient]:
        enriched = self.reconcile(order.patient)
        if enriched.patient is order.patient:
            return order, enriched
        return order.model_copy(update={"patient": enriched.patient}), enriched


def _apply_canonical(patient: Patient, canon: CanonicalDemographics) -> tuple[Patient, list[str]]:
    update: dict = {}
    if canon.first_name and canon.first_name != patient.first_name:
        update["first_name"] = canon.first_name
    if canon.last_name and canon.last_name != patient.last_name:
        update["last_name"] = canon.last_name
    if canon.date_of_birth and canon.date_of_birth != patient.date_of_birth:
        update["date_of_birth"] = canon.date_of_birth
    if canon.address is not None and not canon.address.is_empty() and canon.address != patient.address:
        update["address"] = canon.address
    if not update:
        return patient, []
    return patient.model_copy(update=update), list(update)
