"""
Client for the status service that tracks which date ranges are already
consistent for every asset of every tracked set.

The service speaks JSON over a websocket: requests are {"id", "method", "payload"}
and every answer echoes the request id next to either "data" or "error".
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from archiver_errors import StatusServiceError
from archiver_settings import LOGGER_NAME, STATUS_RPC_TIMEOUT_SEC, STATUS_SERVER_URL

METHOD_FETCH_STATUS = "fetchStatus"
METHOD_FETCH_AVAILABLE_SETS = "fetchAvailableSets"


class ConsistencyRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timeframe: int = 0  # ms
    range: Tuple[int, int] = (0, 0)  # inclusive [min, max], epoch ms


class AssetDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_id: str = Field(alias="assetID")
    consistency_range: Optional[Tuple[int, int]] = Field(default=None, alias="consistencyRange")
    consistencies: List[ConsistencyRange] = Field(default_factory=list)
    consistency_max_lookback_days: Optional[int] = Field(default=None, alias="consistencyMaxLookbackDays")

    def find_consistency(self, timeframe: Optional[int] = None) -> Optional[Tuple[int, int]]:
        """Consistent [min, max] window at the given timeframe, falling back to the flat range."""
        for c in self.consistencies:
            if timeframe is None or c.timeframe == timeframe:
                return c.range
        return self.consistency_range


class SetDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: List[str]
    assets: List[AssetDescriptor] = Field(default_factory=list)

    @property
    def set_id(self) -> str:
        return "".join(p.strip() for p in self.id).upper()

    @property
    def pair(self) -> Tuple[str, ...]:
        return tuple(p.strip().upper() for p in self.id)

    def find_asset(self, asset_id: str) -> Optional[AssetDescriptor]:
        for asset in self.assets:
            if asset.asset_id == asset_id:
                return asset
        return None


class ServerStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    min_timeframe: int = Field(alias="minTimeframe")


class StatusClient:
    """Thread-safe request/response client over one persistent websocket.

    The connection is opened lazily and re-opened on the next call after a failure.
    """

    def __init__(
        self,
        url: str = STATUS_SERVER_URL,
        timeout: float = STATUS_RPC_TIMEOUT_SEC,
        logger: Optional[logging.Logger] = None,
        connector: Callable[..., Any] = connect,
    ):
        self.url = url
        self.timeout = timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._connector = connector
        self._conn = None
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._drop_connection()

    def _drop_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except (OSError, WebSocketException):
                pass
            self._conn = None

    def _ensure_connection(self):
        if self._conn is None:
            self._conn = self._connector(self.url, open_timeout=self.timeout)
            self.logger.info(f"Connected to status service at {self.url}")
        return self._conn

    def request(self, method: str, payload: Optional[dict] = None) -> Any:
        request_id = uuid.uuid4().hex
        message = json.dumps({"id": request_id, "method": method, "payload": payload or {}})
        with self._lock:
            try:
                conn = self._ensure_connection()
                conn.send(message)
                while True:
                    raw = conn.recv(timeout=self.timeout)
                    answer = json.loads(raw)
                    if answer.get("id") == request_id:
                        break
                    # answer to an abandoned request (previous timeout)
                    self.logger.debug(f"Discarding stale status answer id={answer.get('id')}")
            except (OSError, TimeoutError, WebSocketException, ValueError) as exc:
                self._drop_connection()
                raise StatusServiceError(f"Status service call {method} failed: {exc}") from exc
        if answer.get("error"):
            raise StatusServiceError(f"Status service call {method} returned an error", detail=str(answer["error"]), payload=answer)
        return answer.get("data")

    def fetch_status(self) -> ServerStatus:
        return ServerStatus.model_validate(self.request(METHOD_FETCH_STATUS))

    def fetch_available_sets(self) -> List[SetDescriptor]:
        data = self.request(METHOD_FETCH_AVAILABLE_SETS) or []
        return [SetDescriptor.model_validate(item) for item in data]
