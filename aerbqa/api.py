# aerbqa/api.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

from aerbqa.header import normalize_header
from aerbqa.modalities import Modality, evaluate_report, get_modality
from aerbqa.results import TestResult

logger = logging.getLogger(__name__)

HEADER_PATH = "/service-report/report-header/{service_id}"
TEST_PATH = "/service-report/{modality}/{test}/{service_id}"


# =============================================================================
# Errors
# =============================================================================
class ApiError(RuntimeError):
    """Report backend could not be reached or answered unexpectedly."""


class ReportNotFoundError(ApiError):
    """No report header exists for the service id."""


# =============================================================================
# Report bundle
# =============================================================================
@dataclass
class ServiceReport:
    service_id: str
    modality: Modality
    header: Dict[str, Any]
    documents: Dict[str, Any] = field(default_factory=dict)
    results: List[TestResult] = field(default_factory=list)

    @property
    def report_number(self) -> str:
        n = str(self.header.get("testReportNumber") or "").strip()
        return n if n and n != "N/A" else "report"

    @property
    def pdf_name(self) -> str:
        stem = self.modality.slug.upper().replace("-", "_")
        return f"{stem}-Report-{self.report_number}.pdf".replace("/", "-").replace(" ", "_")


def build_report(
    service_id: str,
    modality: str | Modality,
    header_data: Optional[Mapping],
    documents: Optional[Mapping[str, Any]],
) -> ServiceReport:
    """Offline path: header + stored test records -> evaluated report."""
    mod = modality if isinstance(modality, Modality) else get_modality(modality)
    docs = dict(documents or {})
    return ServiceReport(
        service_id=str(service_id),
        modality=mod,
        header=normalize_header(header_data, nomenclature=mod.nomenclature),
        documents=docs,
        results=evaluate_report(mod, docs),
    )


# =============================================================================
# Client
# =============================================================================
class ReportApiClient:
    """Thin REST client for stored service reports."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    @classmethod
    def from_settings(cls, settings) -> "ReportApiClient":
        return cls(settings.API_URL, token=settings.API_TOKEN, timeout=settings.API_TIMEOUT)

    def _get(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("GET %s", url)
        resp = self.session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError(f"GET {url}: response is not JSON") from e

    def get_report_header(self, service_id: str) -> Dict[str, Any]:
        """
        Raw header record. The backend answers {"exists": bool, "data": {...}};
        a missing header or a 404 raises ReportNotFoundError.
        """
        if not str(service_id or "").strip():
            raise ReportNotFoundError("No service id given.")

        path = HEADER_PATH.format(service_id=service_id)
        try:
            payload = self._get(path)
        except requests.exceptions.HTTPError as e:
            status = getattr(e.response, "status_code", None)
            if status == 404:
                raise ReportNotFoundError(f"No report header for service {service_id}.") from e
            raise ApiError(f"Report header request failed ({status}): {e}") from e
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Report backend unreachable: {e}") from e

        if not isinstance(payload, Mapping) or not payload.get("exists") or not payload.get("data"):
            raise ReportNotFoundError(f"No report header for service {service_id}.")
        return dict(payload["data"])

    def get_test_document(self, modality: Modality, api_path: str, service_id: str) -> Optional[Dict[str, Any]]:
        """
        One stored test record, or None when it is missing or the request
        fails. A single failing test does not abort the report.
        """
        path = TEST_PATH.format(modality=modality.slug, test=api_path, service_id=service_id)
        try:
            payload = self._get(path)
        except (requests.exceptions.RequestException, ApiError) as e:
            logger.warning("%s: %s unavailable for service %s: %s", modality.name, api_path, service_id, e)
            return None

        if isinstance(payload, Mapping) and isinstance(payload.get("data"), Mapping):
            return dict(payload["data"])
        if isinstance(payload, Mapping) and "data" not in payload:
            return dict(payload)
        return None

    def fetch_report(self, service_id: str, modality: str | Modality) -> ServiceReport:
        mod = modality if isinstance(modality, Modality) else get_modality(modality)
        header = self.get_report_header(service_id)

        documents: Dict[str, Any] = {}
        for t in mod.tests:
            if t.document_key in documents:
                continue
            documents[t.document_key] = self.get_test_document(mod, t.api_path, service_id)

        found = sum(1 for d in documents.values() if d)
        logger.info("Service %s (%s): %d of %d test records found", service_id, mod.name, found, len(documents))
        return build_report(service_id, mod, header, documents)
