"""
Pending response cookies.

Cookie writes made while handling a request (transient values, session
updates) are collected here and attached to whatever response is finally
sent, including error responses produced by exception handlers.
"""

from typing import Any, Dict, Optional, Tuple

from starlette.responses import Response


class CookieJar:
    """Ordered set of cookie operations; the last operation per name wins."""

    def __init__(self):
        self._operations: Dict[str, Tuple[str, Optional[str], Dict[str, Any]]] = {}

    def set(self, key: str, value: str, **attributes: Any) -> None:
        self._operations.pop(key, None)
        self._operations[key] = ("set", value, attributes)

    def delete(self, key: str, **attributes: Any) -> None:
        self._operations.pop(key, None)
        self._operations[key] = ("delete", None, attributes)

    def pending(self, key: str) -> Optional[Tuple[str, Optional[str]]]:
        """Return (operation, value) queued for a cookie name, if any."""
        entry = self._operations.get(key)
        if entry is None:
            return None
        return entry[0], entry[1]

    def apply(self, response: Response) -> None:
        """Write every queued operation to the response headers."""
        for key, (operation, value, attributes) in self._operations.items():
            if operation == "set":
                response.set_cookie(key, value, **attributes)
            else:
                response.delete_cookie(key, **attributes)
