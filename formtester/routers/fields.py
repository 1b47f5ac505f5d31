from fastapi import APIRouter, Body, Depends
from typing import Any, Optional

from formtester.dependencies import get_field_discovery
from formtester.services import FieldDiscoveryService

router = APIRouter()

@router.post("/fetch-fields")
async def fetch_fields(
    body: Optional[dict[str, Any]] = Body(default=None),
    service: FieldDiscoveryService = Depends(get_field_discovery),
) -> dict[str, Any]:
    """Lists the inputs, selects and textareas found on a page.

    Args:
        body: JSON object with the page ``url``.
        service: Injected FieldDiscoveryService.

    Returns:
        ``success`` flag and the discovered fields.
    """
    fields = await service.fetch_fields((body or {}).get("url"))
    return {"success": True, "fields": fields}
