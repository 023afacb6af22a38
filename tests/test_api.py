from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from docrender import main as app_main
from docrender.auth import AccessKeyRegistry
from docrender.capture import ArtifactStore
from docrender.service import GenerationResult, RenderJob

AUTH = {"Authorization": "Bearer secret"}


class StubRenderer:
    def __init__(self, result: GenerationResult, store: ArtifactStore | None = None) -> None:
        self.result = result
        self.store = store
        self.jobs: list[RenderJob] = []

    async def generate_pdf(self, job: RenderJob) -> GenerationResult:
        self.jobs.append(job)
        return self.result

    async def generate_html(self, job: RenderJob) -> GenerationResult:
        self.jobs.append(job)
        return self.result


def get_client(monkeypatch, renderer: StubRenderer) -> TestClient:
    monkeypatch.setattr(app_main, "RENDERER_FACTORY", lambda settings: renderer)
    monkeypatch.setattr(app_main.app.state, "access_keys", AccessKeyRegistry(lambda: "secret:Tester"))
    return TestClient(app_main.app)


def _failed(output: str) -> GenerationResult:
    return GenerationResult(success=False, output=output, duration_ms=12, error="Navigation to x failed: boom")


def test_pdf_requires_authorization(monkeypatch):
    renderer = StubRenderer(_failed("pdf"))
    client = get_client(monkeypatch, renderer)

    response = client.post("/api/pdf/url-to-pdf", json={"url": "https://example.com"})

    assert response.status_code == 401
    assert renderer.jobs == []

    response = client.post(
        "/api/pdf/url-to-pdf",
        json={"url": "https://example.com"},
        headers={"Authorization": "Bearer nope"},
    )
    assert response.status_code == 401


def test_pdf_requires_url(monkeypatch):
    client = get_client(monkeypatch, StubRenderer(_failed("pdf")))

    response = client.post("/api/pdf/url-to-pdf", json={"reportId": "1"}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "URL is required"


def test_pdf_streams_and_discards_artifact(monkeypatch, tmp_path: Path):
    store = ArtifactStore(tmp_path)
    artifact = store.persist(b"%PDF-1.4 body", "Plan-42-1.pdf")
    renderer = StubRenderer(
        GenerationResult(
            success=True,
            output="pdf",
            duration_ms=40,
            file_path=artifact,
            filename="Plan-42-1.pdf",
            size=13,
        ),
        store=store,
    )
    client = get_client(monkeypatch, renderer)

    response = client.post(
        "/api/pdf/url-to-pdf",
        json={"url": "https://example.com/r/42", "reportId": "42", "reportTitle": "Plan"},
        headers={**AUTH, "x-pdf-access-token": "tok"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert "Plan-42-1.pdf" in response.headers["content-disposition"]
    assert response.content == b"%PDF-1.4 body"
    assert not artifact.exists()

    (job,) = renderer.jobs
    assert job.report_id == "42"
    assert job.report_title == "Plan"
    assert job.auth_headers == {"x-pdf-access-token": "tok"}


def test_pdf_failure_payload(monkeypatch):
    client = get_client(monkeypatch, StubRenderer(_failed("pdf")))

    response = client.post("/api/pdf/url-to-pdf", json={"url": "https://down.example"}, headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to generate PDF",
        "message": "Navigation to x failed: boom",
        "duration": 12,
    }


def test_html_success(monkeypatch):
    html = "<html><body>rendered</body></html>"
    renderer = StubRenderer(GenerationResult(success=True, output="html", duration_ms=5, html=html, size=len(html)))
    client = get_client(monkeypatch, renderer)

    response = client.post(
        "/api/html/url-to-html",
        json={"url": "https://example.com", "waitForSelector": "#app", "waitTime": 250},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.text == html
    assert response.headers["content-type"].startswith("text/html")
    (job,) = renderer.jobs
    assert job.output == "html"
    assert job.wait_for_selector == "#app"
    assert job.wait_time_ms == 250


def test_html_failure_and_validation(monkeypatch):
    client = get_client(monkeypatch, StubRenderer(_failed("html")))

    response = client.post("/api/html/url-to-html", json={"url": "https://down.example"}, headers=AUTH)
    assert response.status_code == 500
    assert response.json()["error"] == "Failed to generate HTML"

    response = client.post("/api/html/url-to-html", json={"url": "https://x", "waitTime": -1}, headers=AUTH)
    assert response.status_code == 422


def test_health_reports_browser(monkeypatch):
    async def _check(self):  # noqa: ARG001
        return True, "130.0.0.0", "/usr/bin/chromium"

    monkeypatch.setattr(app_main.BrowserManager, "check_browser", _check)
    client = TestClient(app_main.app)

    payload = client.get("/api/health").json()

    assert payload["status"] == "ok"
    assert payload["browserConnected"] is True
    assert payload["browserVersion"] == "130.0.0.0"
    assert payload["endpoints"]["pdf"] == "/api/pdf/url-to-pdf"


def test_health_without_browser(monkeypatch):
    async def _check(self):  # noqa: ARG001
        return False, None, None

    monkeypatch.setattr(app_main.BrowserManager, "check_browser", _check)
    payload = TestClient(app_main.app).get("/api/health").json()

    assert payload["browserConnected"] is False
    assert "browserVersion" not in payload


def test_index_lists_endpoints():
    payload = TestClient(app_main.app).get("/").json()
    assert payload["endpoints"]["html"] == "/api/html/url-to-html"
    assert "urlToPdf" in payload["documentation"]
