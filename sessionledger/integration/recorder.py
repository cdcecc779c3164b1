# sessionledger/integration/recorder.py
import uuid
from typing import Any, Dict, Optional

import structlog

from sessionledger import __version__
from sessionledger.chain.session import SessionLedger
from sessionledger.config import DaemonSettings, LedgerPaths
from sessionledger.core.result import OpResult
from sessionledger.daemon.client import DaemonClient, DaemonError
from sessionledger.daemon.supervisor import DaemonSupervisor, EnsureOptions
from sessionledger.storage import StorageBackend, create_storage

logger = structlog.get_logger(__name__)


class SessionRecorder:
    """
    Front door for tools that want to record a session.

    connect() ensures a daemon and records through it. If no daemon can be
    brought up it degrades to an in-process SessionLedger writing the same
    chain files, so recording never stops because the daemon is missing.
    """

    def __init__(
        self,
        client_name: str,
        paths: Optional[LedgerPaths] = None,
        settings: Optional[DaemonSettings] = None,
        external_id: Optional[str] = None,
        supervisor: Optional[DaemonSupervisor] = None,
        daemon_client: Optional[DaemonClient] = None,
    ):
        self.client_name = client_name
        self.paths = paths or LedgerPaths.from_env()
        self.settings = settings or DaemonSettings.from_env()
        self.external_id = external_id or str(uuid.uuid4())
        self._supervisor = supervisor
        self._client = daemon_client
        self._local: Optional[SessionLedger] = None
        self._storage: Optional[StorageBackend] = None

    @property
    def is_local(self) -> bool:
        return self._local is not None

    @property
    def local_ledger(self) -> Optional[SessionLedger]:
        return self._local

    def _ensure_daemon(self) -> bool:
        # A daemon left over from before an upgrade is replaced, not reused
        options = EnsureOptions(require_version=__version__)
        if self._supervisor is not None:
            return self._supervisor.ensure_daemon(options)
        with DaemonSupervisor(self.paths, self.settings) as supervisor:
            return supervisor.ensure_daemon(options)

    def connect(self) -> OpResult:
        if self._client is None and self._ensure_daemon():
            self._client = DaemonClient(self.settings.base_url)

        if self._client is not None:
            try:
                self._client.open_session(self.external_id, client=self.client_name)
                return OpResult.ok("recording through daemon")
            except DaemonError as e:
                logger.warning("daemon_open_failed", error=str(e))
                self._client.close()
                self._client = None

        self.paths.ensure_dirs()
        self._storage = create_storage(self.paths.storage_uri)
        self._local = SessionLedger(
            storage=self._storage,
            keystore_path=self.paths.keystore_file,
            client_name=self.client_name,
            external_session_id=self.external_id,
        )
        self._local.initialize_keystore()
        logger.warning("recording_locally", session_id=self._local.session_id)
        return OpResult.degraded("daemon unavailable; recording locally")

    def _require_connected(self) -> None:
        if self._client is None and self._local is None:
            raise RuntimeError("SessionRecorder.connect() must be called first")

    def start(self, task_type: Optional[str] = None, title: Optional[str] = None, **metadata: Any) -> Dict[str, Any]:
        self._require_connected()
        if self._client is not None:
            return self._client.start(
                self.external_id, client=self.client_name, task_type=task_type, title=title, metadata=metadata
            )
        ledger = self._local
        if ledger.is_sealed:
            ledger.reset()
        if task_type:
            ledger.set_task_type(task_type)
        if title:
            ledger.set_title(title)
        return ledger.start(**metadata).to_dict()

    def milestone(self, **data: Any) -> Dict[str, Any]:
        self._require_connected()
        if self._client is not None:
            return self._client.record_event(self.external_id, "milestone", data)
        return self._local.append_to_chain("milestone", data).to_dict()

    def heartbeat(self, **data: Any) -> Dict[str, Any]:
        self._require_connected()
        if self._client is not None:
            return self._client.heartbeat(self.external_id, data)
        return self._local.heartbeat(**data).to_dict()

    def end(self, title: Optional[str] = None) -> Dict[str, Any]:
        """Seal the session; returns the seal."""
        self._require_connected()
        if self._client is not None:
            return self._client.end(self.external_id, title)
        if title:
            self._local.set_title(title)
        return self._local.seal().to_dict()

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close_session(self.external_id)
            except DaemonError as e:
                logger.warning("daemon_close_failed", error=str(e))
            self._client.close()
            self._client = None
        if self._storage is not None:
            self._storage.close()
            self._storage = None

    def __enter__(self) -> "SessionRecorder":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
