"""Storage mode controller.

Owns the current storage mode, the credentials each remote mode needs, and
the reconciliation pass that runs when a mode is entered or a sync is
requested.
"""
import datetime
import logging
import threading
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from notekeeper.backends.base import BackendAdapter
from notekeeper.backends.remote_api import RemoteApiBackend
from notekeeper.backends.webdav import WebDAVBackend
from notekeeper.config import config
from notekeeper.exceptions import (
    AuthenticationRequiredError,
    ErrorCode,
    NotekeeperError,
    RemoteNotConfiguredError,
    SyncInProgressError,
    ValidationError,
)
from notekeeper.models.schema import ApiSession, StorageMode, WebDAVSettings, utc_now
from notekeeper.observability import timed_operation
from notekeeper.services.reconciler import MergeReport, reconcile_dataset
from notekeeper.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)

MODE_KEY = "storage-mode"
WEBDAV_CONFIG_KEY = "webdav-config"
SESSION_KEY = "api-session"
LAST_SYNC_KEY = "last-sync:{mode}"

AdapterFactory = Callable[[StorageMode], BackendAdapter]


def _parse_mode(value: Union[str, StorageMode]) -> StorageMode:
    if isinstance(value, StorageMode):
        return value
    try:
        return StorageMode(value)
    except ValueError:
        raise ValidationError(
            f"Unknown storage mode '{value}'",
            field="mode",
            value=value,
            code=ErrorCode.INVALID_STORAGE_MODE,
        )


class StorageModeController:
    """Switches between local, WebDAV and remote API storage.

    The local entity store is always the working copy. In a remote mode the
    remote medium is brought in line with it (and vice versa) by a sync
    pass: fetch, merge, write remote, then write local in one transaction.
    Only one pass runs at a time; a concurrent request is rejected rather
    than queued. A mode or credential change made while a pass is running
    wins over the mode that pass was entering.
    """

    def __init__(
        self,
        store: EntityStore,
        api_base_url: Optional[str] = None,
        webdav_settings: Optional[WebDAVSettings] = None,
        session: Optional[ApiSession] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        sync_on_start: Optional[bool] = None,
    ):
        """Initialize the controller and restore the persisted mode.

        Args:
            store: The local entity store.
            api_base_url: Base URL of the remote API. Defaults to the config.
            webdav_settings: WebDAV settings. Falls back to settings saved in
                the store, then to the config.
            session: An authenticated API session. Falls back to the session
                saved in the store, then to the config.
            adapter_factory: Builds the backend for a remote mode. Defaults to
                the WebDAV and remote API adapters.
            sync_on_start: Run a sync pass now if the restored mode is remote.
        """
        self.store = store
        self.api_base_url = api_base_url or config.api_base_url
        self._adapter_factory = adapter_factory or self._build_adapter
        self._sync_lock = threading.Lock()
        # Bumped by every mode or credential change
        self._generation = 0
        self._restore_error: Optional[NotekeeperError] = None

        saved = store.get_metadata(WEBDAV_CONFIG_KEY)
        if webdav_settings is None and saved:
            webdav_settings = WebDAVSettings.model_validate(saved)
        self._webdav_settings = webdav_settings or config.webdav_settings()

        saved = store.get_metadata(SESSION_KEY)
        if session is None and saved:
            session = ApiSession.model_validate(saved)
        self._session = session or config.api_session()

        self._mode = self._restore_mode()
        logger.info(f"Storage mode: {self._mode.value}")

        if sync_on_start is None:
            sync_on_start = config.sync_on_start
        if sync_on_start and self._mode is not StorageMode.LOCAL:
            try:
                self.request_sync()
            except NotekeeperError as e:
                logger.warning(f"Sync on start failed, continuing with local data: {e}")

    def _restore_mode(self) -> StorageMode:
        raw = self.store.get_metadata(MODE_KEY, config.storage_mode)
        try:
            mode = _parse_mode(raw)
        except ValidationError:
            logger.warning(f"Ignoring unknown persisted storage mode '{raw}'")
            return StorageMode.LOCAL
        try:
            self._check_preconditions(mode)
        except NotekeeperError as e:
            logger.warning(f"Cannot restore {mode.value} storage ({e}); using local")
            self._restore_error = e
            return StorageMode.LOCAL
        return mode

    # =========================================================================
    # State
    # =========================================================================

    def get_mode(self) -> StorageMode:
        return self._mode

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def session(self) -> Optional[ApiSession]:
        return self._session

    @property
    def webdav_settings(self) -> Optional[WebDAVSettings]:
        return self._webdav_settings

    def get_last_sync_time(
        self, mode: Optional[Union[str, StorageMode]] = None
    ) -> Optional[datetime.datetime]:
        """When the last successful sync pass for ``mode`` (default: current) finished."""
        mode = _parse_mode(mode) if mode is not None else self._mode
        value = self.store.get_metadata(LAST_SYNC_KEY.format(mode=mode.value))
        return datetime.datetime.fromisoformat(value) if value else None

    @staticmethod
    def _validate_session(session: Union[ApiSession, Dict[str, Any]]) -> ApiSession:
        try:
            return ApiSession.model_validate(session)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid session: {e.errors()[0]['msg']}",
                field="session",
                code=ErrorCode.CONFIG_INVALID,
            )

    @staticmethod
    def _validate_webdav_settings(
        settings: Union[WebDAVSettings, Dict[str, Any]]
    ) -> WebDAVSettings:
        try:
            return WebDAVSettings.model_validate(
                settings.model_dump() if isinstance(settings, WebDAVSettings) else settings
            )
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(
                f"Invalid WebDAV settings: {first['msg']}",
                field=".".join(str(p) for p in first.get("loc", ())) or None,
                code=ErrorCode.CONFIG_INVALID,
            )

    def set_session(self, session: Union[ApiSession, Dict[str, Any]]) -> None:
        """Record an authenticated API session and keep it for later runs."""
        self._session = self._validate_session(session)
        self._generation += 1
        self.store.set_metadata(SESSION_KEY, self._session.model_dump())
        logger.info(f"Session set for user {self._session.user_id}")

    def clear_session(self) -> None:
        """Forget the session. Remote API storage falls back to local."""
        self._session = None
        self._generation += 1
        self.store.set_metadata(SESSION_KEY, None)
        if self._mode is StorageMode.REMOTE_API:
            logger.info("Session cleared while using remote API storage; switching to local")
            self._commit_mode(StorageMode.LOCAL)

    def configure_remote_document(
        self, settings: Union[WebDAVSettings, Dict[str, Any]], verify: bool = True
    ) -> WebDAVSettings:
        """Validate and save WebDAV settings.

        Args:
            settings: Endpoint, credentials and optional root collection.
            verify: Initialize the endpoint before saving.

        Raises:
            ValidationError: If the settings are malformed.
            ConnectivityError: If ``verify`` is set and the endpoint fails.
        """
        settings = self._validate_webdav_settings(settings)

        previous = self._webdav_settings
        self._webdav_settings = settings
        if verify:
            adapter = self._adapter_factory(StorageMode.REMOTE_DOCUMENT)
            try:
                adapter.initialize()
            except NotekeeperError:
                self._webdav_settings = previous
                raise
            finally:
                adapter.close()

        self._generation += 1
        self.store.set_metadata(WEBDAV_CONFIG_KEY, settings.model_dump())
        logger.info(f"WebDAV configured at {settings.url}")
        return settings

    # =========================================================================
    # Transitions
    # =========================================================================

    def _check_preconditions(self, mode: StorageMode) -> None:
        if mode is StorageMode.REMOTE_API:
            if self._session is None or not self._session.is_authenticated:
                raise AuthenticationRequiredError(backend=mode.value)
        elif mode is StorageMode.REMOTE_DOCUMENT:
            if self._webdav_settings is None:
                raise RemoteNotConfiguredError(config_key="NOTEKEEPER_WEBDAV_URL")

    def _build_adapter(self, mode: StorageMode) -> BackendAdapter:
        if mode is StorageMode.REMOTE_DOCUMENT:
            return WebDAVBackend(
                self._webdav_settings,
                timeout=config.http_timeout,
                max_retries=config.http_max_retries,
            )
        if mode is StorageMode.REMOTE_API:
            if not self.api_base_url:
                raise RemoteNotConfiguredError(
                    "Remote API URL is not configured", config_key="NOTEKEEPER_API_URL"
                )
            return RemoteApiBackend(
                self.api_base_url,
                self._session,
                timeout=config.http_timeout,
                max_retries=config.http_max_retries,
            )
        raise ValidationError(
            f"No remote backend for {mode.value} storage",
            field="mode",
            value=mode.value,
            code=ErrorCode.INVALID_STORAGE_MODE,
        )

    def _commit_mode(self, mode: StorageMode) -> None:
        self._mode = mode
        self._generation += 1
        self._restore_error = None
        self.store.set_metadata(MODE_KEY, mode.value)

    def _save_credentials(self, mode: StorageMode) -> None:
        if mode is StorageMode.REMOTE_API:
            self.store.set_metadata(SESSION_KEY, self._session.model_dump())
        else:
            self.store.set_metadata(WEBDAV_CONFIG_KEY, self._webdav_settings.model_dump())

    def request_mode_change(
        self,
        target: Union[str, StorageMode],
        credentials: Optional[Union[ApiSession, WebDAVSettings, Dict[str, Any]]] = None,
    ) -> StorageMode:
        """Switch storage mode.

        Entering a remote mode initializes its backend and runs a full sync
        pass before the switch is committed. Switching to local never
        contacts a remote. Credentials passed here are only kept once the
        switch succeeds.

        If the mode or credentials change while the pass runs (the user
        switches to local, or logs out), that change stands and the switch
        is not committed.

        Args:
            target: The requested mode.
            credentials: A session for ``remote-api`` or WebDAV settings for
                ``remote-document``, used for this attempt.

        Returns:
            The mode in effect afterwards.

        Raises:
            AuthenticationRequiredError: Remote API without a session.
            RemoteNotConfiguredError: WebDAV without settings.
            ConnectivityError: The backend failed. The mode is unchanged,
                except that a failed first-time setup falls back to local.
            SyncInProgressError: Another pass is running.
        """
        target = _parse_mode(target)
        if target is StorageMode.LOCAL:
            if self._mode is not StorageMode.LOCAL:
                logger.info(f"Switching from {self._mode.value} to local storage")
            self._commit_mode(StorageMode.LOCAL)
            return self._mode

        if credentials is not None:
            if target is StorageMode.REMOTE_API:
                credentials = self._validate_session(credentials)
            else:
                credentials = self._validate_webdav_settings(credentials)

        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgressError(mode=target.value)
        try:
            previous = (self._session, self._webdav_settings)
            if isinstance(credentials, ApiSession):
                self._session = credentials
            elif credentials is not None:
                self._webdav_settings = credentials
            generation = self._generation
            first_time = self.get_last_sync_time(target) is None
            try:
                self._check_preconditions(target)
                adapter = self._adapter_factory(target)
                try:
                    adapter.initialize()
                    report = self._sync_pass(target, adapter)
                finally:
                    adapter.close()
            except NotekeeperError as e:
                logger.error(f"Switching to {target.value} storage failed: {e}")
                if self._generation == generation:
                    self._session, self._webdav_settings = previous
                    if first_time and self._mode is not StorageMode.LOCAL:
                        logger.warning("First-time remote setup failed; falling back to local")
                        self._commit_mode(StorageMode.LOCAL)
                raise

            if self._generation != generation:
                logger.warning(
                    f"Storage changed during the switch to {target.value}; "
                    f"staying in {self._mode.value}"
                )
                return self._mode
            if credentials is not None:
                self._save_credentials(target)
            self._commit_mode(target)
            logger.info(f"Storage mode is now {target.value}: {report.to_dict()}")
            return self._mode
        finally:
            self._sync_lock.release()

    def request_sync(self) -> Optional[MergeReport]:
        """Run one sync pass against the current remote backend.

        Returns:
            The merge report, or None in local mode where there is nothing
            to reconcile.

        Raises:
            AuthenticationRequiredError: The persisted mode is the remote API
                but no session was available to restore it.
            RemoteNotConfiguredError: The persisted mode is WebDAV but its
                settings are gone.
            SyncInProgressError: Another pass is running.
            ConnectivityError: The backend failed; local data is untouched.
        """
        mode = self._mode
        if mode is StorageMode.LOCAL:
            if self._restore_error is not None:
                raise self._restore_error
            logger.debug("Local storage, nothing to sync")
            return None
        self._check_preconditions(mode)

        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgressError(mode=mode.value)
        try:
            adapter = self._adapter_factory(mode)
            try:
                return self._sync_pass(mode, adapter)
            finally:
                adapter.close()
        finally:
            self._sync_lock.release()

    def _sync_pass(self, mode: StorageMode, adapter: BackendAdapter) -> MergeReport:
        """Fetch, merge, write remote, then write local. Caller holds the lock."""
        report = MergeReport()
        with timed_operation("sync_pass", mode=mode.value) as op:
            local = self.store.load_dataset()
            remote = adapter.fetch_dataset()
            merged = reconcile_dataset(local, remote, report)
            # Both sides must see the same identifiers
            merged = self.store.resolve_pending_ids(merged)
            adapter.write_dataset(merged)
            self.store.replace_dataset(merged)
            op.update(merged.counts())

        self.store.set_metadata(
            LAST_SYNC_KEY.format(mode=mode.value), utc_now().isoformat()
        )
        logger.info(f"Synced with {adapter.name}: {report.to_dict()}")
        return report
