"""WebDAV document-store backend.

Layout on the server (relative to the configured root, ``/notekeeper`` by
default)::

    /notekeeper/connection-test.json
    /notekeeper/data/notes.json
    /notekeeper/data/folders.json
    /notekeeper/data/tags.json
    /notekeeper/data/note-tags.json

Each data file holds one JSON array of camelCase records.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from notekeeper.backends.http import HttpBackend
from notekeeper.models.schema import EntityKind, WebDAVSettings, utc_now
from notekeeper.observability import timed_operation

logger = logging.getLogger(__name__)

FILE_FOR_KIND: Dict[EntityKind, str] = {
    EntityKind.NOTES: "notes.json",
    EntityKind.FOLDERS: "folders.json",
    EntityKind.TAGS: "tags.json",
    EntityKind.NOTE_TAGS: "note-tags.json",
}

_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/></d:prop></d:propfind>'
)


class WebDAVBackend(HttpBackend):
    """Stores one JSON document per entity kind on a WebDAV server.

    Uploads go to a temporary sibling and are then MOVEd over the target,
    so a reader never sees a half-written collection.
    """

    name = "webdav"

    def __init__(
        self,
        settings: WebDAVSettings,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        auth = None
        if settings.username:
            auth = httpx.BasicAuth(settings.username, settings.password or "")
        client = httpx.Client(
            base_url=settings.url,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )
        super().__init__(client, max_retries=max_retries, retry_delay=retry_delay)
        self.settings = settings

    def path_for(self, kind: Union[str, EntityKind]) -> str:
        return f"{self.settings.data_dir}/{FILE_FOR_KIND[EntityKind.parse(kind)]}"

    def _absolute_url(self, path: str) -> str:
        return str(self._client.base_url.join(path.lstrip("/")))

    def exists(self, path: str) -> bool:
        response = self._request(
            "PROPFIND",
            path,
            expected=(200, 207, 404),
            headers={"Depth": "0", "Content-Type": "application/xml"},
            content=_PROPFIND_BODY,
        )
        return response.status_code != 404

    def _ensure_collection(self, path: str) -> None:
        if not self.exists(path):
            # 405 means the collection appeared in the meantime
            self._request("MKCOL", path, expected=(201, 405))
            logger.info(f"Created WebDAV collection {path}")

    def initialize(self) -> None:
        """Create the folder structure and prove the endpoint accepts writes."""
        with timed_operation("webdav.initialize", url=self.settings.url):
            self._ensure_collection(self.settings.root)
            self._ensure_collection(self.settings.data_dir)
            marker = json.dumps({"test": "connection", "timestamp": utc_now().isoformat()})
            self._request(
                "PUT",
                self.settings.connection_test_path,
                expected=(200, 201, 204),
                content=marker,
                headers={"Content-Type": "application/json"},
            )
        logger.info("WebDAV connection established")

    def fetch_all(self, kind: Union[str, EntityKind]) -> List[Dict[str, Any]]:
        """Download one collection; a missing file is an empty collection."""
        kind = EntityKind.parse(kind)
        path = self.path_for(kind)
        with timed_operation("webdav.fetch_all", kind=kind.value) as op:
            response = self._request("GET", path, expected=(200, 404))
            if response.status_code == 404 or not response.content.strip():
                op["record_count"] = 0
                return []
            try:
                data = response.json()
            except ValueError as e:
                raise self._payload_error(
                    f"GET {path}", f"Malformed JSON in {path}", original_error=e
                )
            if data is None:
                data = []
            if not isinstance(data, list):
                raise self._payload_error(
                    f"GET {path}", f"Expected a JSON array in {path}"
                )
            op["record_count"] = len(data)
            return data

    def write_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        """Upload the complete collection for ``kind``."""
        kind = EntityKind.parse(kind)
        path = self.path_for(kind)
        temp_path = f"{path}.tmp"
        body = json.dumps(self.serialize(records))
        with timed_operation("webdav.write_all", kind=kind.value) as op:
            self._request(
                "PUT",
                temp_path,
                expected=(200, 201, 204),
                content=body,
                headers={"Content-Type": "application/json"},
            )
            self._request(
                "MOVE",
                temp_path,
                expected=(201, 204),
                headers={"Destination": self._absolute_url(path), "Overwrite": "T"},
            )
            op["record_count"] = len(records)
