from typing import Any, Optional
import logging

from formtester.core.config import get_settings
from formtester.core.exceptions import ExternalServiceError, ValidationError
from formtester.services.runner import PageFactory, chromium_page

logger = logging.getLogger(__name__)

# Runs in the page; one entry per input, select and textarea in document order
FIELD_SCAN_SCRIPT = """
() => Array.from(document.querySelectorAll('input, select, textarea')).map(el => ({
    name: el.name || el.id,
    type: el.type || el.tagName.toLowerCase(),
    tagName: el.tagName.toLowerCase(),
    required: Boolean(el.required),
    pattern: el.pattern || null,
    maxLength: el.maxLength >= 0 ? el.maxLength : null,
    minLength: el.minLength >= 0 ? el.minLength : null,
    placeholder: el.placeholder || null,
}))
"""


class FieldDiscoveryService:
    """Lists the fillable fields of a live page as a starting point for a formConfig."""

    def __init__(self, settings=None, page_factory: Optional[PageFactory] = None):
        self.settings = settings or get_settings()
        self.page_factory = page_factory or (lambda: chromium_page(self.settings))

    async def fetch_fields(self, url: Optional[str]) -> list[dict[str, Any]]:
        """Opens ``url`` headlessly and describes every form control on it.

        Raises:
            ValidationError: no url given.
            ExternalServiceError: the browser could not load or inspect the page.
        """
        if not url:
            raise ValidationError("URL is required")

        try:
            async with self.page_factory() as page:
                await page.goto(url, wait_until="networkidle", timeout=self.settings.NAVIGATION_TIMEOUT_MS)
                fields = await page.evaluate(FIELD_SCAN_SCRIPT)
        except Exception as e:
            logger.error(f"Failed to fetch fields from {url}: {e}")
            raise ExternalServiceError(f"Failed to fetch fields: {e}")

        logger.info(f"Found {len(fields)} field(s) on {url}")
        return fields
