import json

import pytest
import requests

from aerbqa.api import ApiError, ReportApiClient, ReportNotFoundError, build_report
from aerbqa.config import Settings


def _response(status, payload=None, text=None):
    r = requests.Response()
    r.status_code = status
    r.url = "http://qa.test"
    r._content = (text if text is not None else json.dumps(payload)).encode("utf-8")
    return r


class FakeBackend:
    """Routes GET urls to canned responses and records the calls."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, url, timeout=None):
        self.calls.append((url, timeout))
        for suffix, resp in self.routes.items():
            if url.endswith(suffix):
                return resp
        return _response(404, {"message": "not found"})


@pytest.fixture
def client():
    session = requests.Session()
    return ReportApiClient("http://qa.test/api/", token="tok", timeout=3, session=session)


def test_client_headers(client):
    assert client.base_url == "http://qa.test/api"
    assert client.session.headers["Authorization"] == "Bearer tok"


def test_header_found(client, monkeypatch, header_data):
    backend = FakeBackend({"/report-header/SVC-1": _response(200, {"exists": True, "data": header_data})})
    monkeypatch.setattr(client.session, "get", backend)

    assert client.get_report_header("SVC-1")["customerName"] == "City Diagnostics"
    assert backend.calls == [("http://qa.test/api/service-report/report-header/SVC-1", 3.0)]


@pytest.mark.parametrize(
    "resp",
    [_response(404, {"message": "missing"}), _response(200, {"exists": False}), _response(200, {"exists": True, "data": {}})],
)
def test_header_not_found(client, monkeypatch, resp):
    monkeypatch.setattr(client.session, "get", FakeBackend({"/report-header/SVC-1": resp}))
    with pytest.raises(ReportNotFoundError):
        client.get_report_header("SVC-1")


def test_header_server_error_and_bad_json(client, monkeypatch):
    monkeypatch.setattr(client.session, "get", FakeBackend({"/report-header/SVC-1": _response(500, {})}))
    with pytest.raises(ApiError) as exc:
        client.get_report_header("SVC-1")
    assert not isinstance(exc.value, ReportNotFoundError)

    monkeypatch.setattr(client.session, "get", FakeBackend({"/report-header/SVC-1": _response(200, text="<html>")}))
    with pytest.raises(ApiError, match="not JSON"):
        client.get_report_header("SVC-1")


def test_blank_service_id(client):
    with pytest.raises(ReportNotFoundError):
        client.get_report_header("  ")


def test_fetch_report_tolerates_missing_tests(client, monkeypatch, header_data, bmd_documents):
    routes = {"/report-header/SVC-1": _response(200, {"exists": True, "data": header_data})}
    routes["/bmd/reproducibility-of-radiation-output/SVC-1"] = _response(
        200, {"data": bmd_documents["reproducibilityOfRadiationOutput"]}
    )
    routes["/bmd/tube-housing-leakage/SVC-1"] = _response(200, bmd_documents["tubeHousingLeakage"])
    monkeypatch.setattr(client.session, "get", FakeBackend(routes))

    report = client.fetch_report("SVC-1", "BMD")
    assert [r.key for r in report.results] == ["reproducibilityOfRadiationOutput", "tubeHousingLeakage"]
    assert report.documents["maxRadiationLevel"] is None
    assert report.header["nomenclature"] == "BMD/DEXA"


def test_unreachable_backend(client, monkeypatch):
    def boom(url, timeout=None):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(client.session, "get", boom)
    with pytest.raises(ApiError, match="unreachable"):
        client.get_report_header("SVC-1")


def test_from_settings(monkeypatch):
    monkeypatch.setenv("AERBQA_API_URL", "http://reports.local/api/")
    monkeypatch.setenv("AERBQA_API_TIMEOUT", "not-a-number")
    monkeypatch.delenv("AERBQA_API_TOKEN", raising=False)
    c = ReportApiClient.from_settings(Settings())
    assert c.base_url == "http://reports.local/api"
    assert c.timeout == 10.0
    assert "Authorization" not in c.session.headers


def test_report_names(header_data, bmd_documents):
    report = build_report("SVC-1", "bmd", header_data, bmd_documents)
    assert report.report_number == "TR-2024-07"
    assert report.pdf_name == "BMD-Report-TR-2024-07.pdf"
    assert build_report("SVC-2", "CT Scan", {}, {}).pdf_name == "CT_SCAN-Report-report.pdf"
