import uuid
from collections.abc import Mapping
from typing import Any

REQUEST_ID_HEADER = b"x-request-id"


def get_request_id_from_scope(scope: Mapping[str, Any]) -> str:
    """Reuses an incoming X-Request-ID header or mints a new id."""
    for name, value in scope.get("headers") or ():
        if name.lower() == REQUEST_ID_HEADER and value:
            return value.decode("latin-1")
    return uuid.uuid4().hex
