"""Authenticated cloud API backend."""
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from notekeeper.backends.http import HttpBackend
from notekeeper.exceptions import AuthenticationRequiredError
from notekeeper.models.schema import ApiSession, EntityKind
from notekeeper.observability import timed_operation

logger = logging.getLogger(__name__)

# Route segment for GET /api/sync/<segment>
ROUTE_FOR_KIND: Dict[EntityKind, str] = {
    EntityKind.NOTES: "notes",
    EntityKind.FOLDERS: "folders",
    EntityKind.TAGS: "tags",
    EntityKind.NOTE_TAGS: "note-tags",
}

# Body key for POST /api/sync
PAYLOAD_KEY_FOR_KIND: Dict[EntityKind, str] = {
    EntityKind.NOTES: "notes",
    EntityKind.FOLDERS: "folders",
    EntityKind.TAGS: "tags",
    EntityKind.NOTE_TAGS: "noteTags",
}


class RemoteApiBackend(HttpBackend):
    """Talks to the note app's sync API with a bearer token.

    The server scopes every collection to the session's user.
    """

    name = "remote-api"

    def __init__(
        self,
        base_url: str,
        session: ApiSession,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not session.is_authenticated:
            raise AuthenticationRequiredError(backend=self.name)
        client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {session.token}"},
            timeout=timeout,
            transport=transport,
        )
        super().__init__(client, max_retries=max_retries, retry_delay=retry_delay)
        self.session = session

    def _credentials_rejected(self, response: httpx.Response, operation: str) -> Exception:
        logger.warning(f"{operation} rejected with HTTP {response.status_code}")
        return AuthenticationRequiredError(
            "The remote API rejected the session; log in again", backend=self.name
        )

    def _json(self, response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise self._payload_error(
                operation, "Remote API returned malformed JSON", original_error=e
            )

    def initialize(self) -> None:
        """Check that the API is reachable and accepts the session."""
        operation = "GET /api/sync/test"
        with timed_operation("remote_api.initialize", user_id=self.session.user_id):
            response = self._request("GET", "/api/sync/test", operation=operation)
            body = self._json(response, operation)
            if not isinstance(body, dict) or not body.get("success"):
                message = body.get("error") if isinstance(body, dict) else None
                raise self._payload_error(
                    operation, message or "Remote API connection test failed"
                )
        logger.info(f"Remote API connection established for user {self.session.user_id}")

    def fetch_all(self, kind: Union[str, EntityKind]) -> List[Dict[str, Any]]:
        kind = EntityKind.parse(kind)
        path = f"/api/sync/{ROUTE_FOR_KIND[kind]}"
        operation = f"GET {path}"
        with timed_operation("remote_api.fetch_all", kind=kind.value) as op:
            response = self._request("GET", path, operation=operation)
            data = self._json(response, operation)
            if data is None:
                data = []
            if not isinstance(data, list):
                raise self._payload_error(operation, f"Expected a list of {kind.value}")
            op["record_count"] = len(data)
            return data

    def write_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        kind = EntityKind.parse(kind)
        payload = {PAYLOAD_KEY_FOR_KIND[kind]: self.serialize(records)}
        with timed_operation("remote_api.write_all", kind=kind.value) as op:
            self._request(
                "POST",
                "/api/sync",
                expected=(200, 201, 204),
                operation=f"POST /api/sync ({kind.value})",
                json=payload,
            )
            op["record_count"] = len(records)
