import pytest

from formtester.core.exceptions import ExternalServiceError, ValidationError
from formtester.services.discovery import FieldDiscoveryService

EMAIL_FIELD = {
    "name": "email",
    "type": "email",
    "tagName": "input",
    "required": True,
    "pattern": None,
    "maxLength": 120,
    "minLength": None,
    "placeholder": "you@example.com",
}


@pytest.fixture
def discovery(settings, page_factory):
    return FieldDiscoveryService(settings, page_factory=page_factory)


@pytest.mark.asyncio
async def test_fetch_fields_lists_page_controls(discovery, page):
    page.evaluate_result = [EMAIL_FIELD]

    fields = await discovery.fetch_fields("https://x.test/signup")

    assert fields == [EMAIL_FIELD]
    assert page.actions == [("goto", "https://x.test/signup"), ("evaluate",)]
    assert page.closed

@pytest.mark.asyncio
async def test_fetch_fields_requires_url(discovery, page):
    with pytest.raises(ValidationError):
        await discovery.fetch_fields("")
    assert page.actions == []

@pytest.mark.asyncio
async def test_fetch_fields_browser_failure(discovery, page, timeout_error):
    page.fail["goto"] = timeout_error
    with pytest.raises(ExternalServiceError):
        await discovery.fetch_fields("https://x.test/slow")
    assert page.closed


def test_fetch_fields_route(client, page):
    page.evaluate_result = [EMAIL_FIELD]
    response = client.post("/fetch-fields", json={"url": "https://x.test/signup"})
    assert response.status_code == 200
    assert response.json() == {"success": True, "fields": [EMAIL_FIELD]}

def test_fetch_fields_route_without_url(client):
    response = client.post("/fetch-fields", json={})
    assert response.status_code == 400
    assert response.json()["message"] == "URL is required"

def test_fetch_fields_route_browser_failure(client, page):
    page.fail["evaluate"] = RuntimeError("page crashed")
    response = client.post("/fetch-fields", json={"url": "https://x.test/signup"})
    assert response.status_code == 500
