import base64
import binascii
import json
from typing import Any, Optional

from formtester.core.exceptions import ValidationError


def encode_token(key: Optional[dict[str, Any]]) -> Optional[str]:
    """Wraps a store pagination key into an opaque base64 continuation token."""
    if not key:
        return None
    return base64.urlsafe_b64encode(json.dumps(key).encode("utf-8")).decode("ascii")


def decode_token(token: Optional[str]) -> Optional[dict[str, Any]]:
    if not token:
        return None
    try:
        key = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        raise ValidationError("Invalid pagination token")
    if not isinstance(key, dict):
        raise ValidationError("Invalid pagination token")
    return key
