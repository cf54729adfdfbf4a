import threading
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from loguru import logger
from websocket import WebSocketApp

from ..core.crypto.keys import random_hash
from ..core.json_rpc.base import (
    JSONRPCErrorResponse,
    JSONRPCMethods,
    JSONRPCNotficationParams,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCSubscribeParams,
    JSONRPCSubscriptionKinds,
    JSONRPCUnsubscribeParams,
)
from ..core.settings import settings
from .errors import SubscriptionError


def websocket_url(url: str) -> str:
    parsed = urlparse(url)
    hostname = parsed.hostname
    if parsed.port:
        hostname = f"{hostname}:{parsed.port}"
    ws_scheme = "wss" if parsed.scheme == "https" else "ws"
    path = parsed.path.rstrip("/")
    return f"{ws_scheme}://{hostname}{path}/v1/ws"


class SubscriptionManager:
    """NUT-17 websocket client of one mint.

    The socket runs in a daemon thread, so every callback is called from that
    thread. Subscriptions are sent again whenever the socket reconnects.
    """

    url: str
    websocket: WebSocketApp

    def __init__(
        self,
        url: str,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_reconnect: Optional[Callable[[], None]] = None,
    ):
        self.url = websocket_url(url)
        self.on_error = on_error
        self.on_reconnect = on_reconnect
        self.id_counter = 0
        self.callback_map: Dict[str, Callable] = {}
        self.subscriptions: Dict[str, JSONRPCSubscribeParams] = {}
        # request id -> subId, to map error responses to a subscription
        self.pending_requests: Dict[int, str] = {}
        self._lock = threading.RLock()
        self._open = False
        self._opened_before = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self.websocket = WebSocketApp(
            self.url,
            on_open=self._on_open,
            on_message=self._on_message,
            on_error=self._on_error,
            on_close=self._on_close,
        )

    def _next_id(self) -> int:
        self.id_counter += 1
        return self.id_counter

    def _send_subscribe(self, params: JSONRPCSubscribeParams):
        req = JSONRPCRequest(
            method=JSONRPCMethods.SUBSCRIBE.value,
            params=params.model_dump(mode="json"),
            id=self._next_id(),
        )
        self.pending_requests[req.id] = params.subId
        logger.trace(f"Subscribing: {req.model_dump_json()}")
        self.websocket.send(req.model_dump_json())

    def _on_open(self, ws):
        with self._lock:
            reconnected = self._opened_before
            self._opened_before = True
            for params in self.subscriptions.values():
                self._send_subscribe(params)
            self._open = True
        logger.debug(f"Websocket connected: {self.url}")
        if reconnected and self.on_reconnect:
            self.on_reconnect()

    def _on_close(self, ws, close_status_code, close_msg):
        with self._lock:
            self._open = False
        logger.debug(f"Websocket closed: {self.url} ({close_status_code})")

    def _on_error(self, ws, error):
        logger.warning(f"Websocket error on {self.url}: {error}")
        if self.on_error and not self._closed:
            self.on_error(
                error if isinstance(error, Exception) else SubscriptionError(str(error))
            )

    def _on_message(self, ws, message):
        logger.trace(f"Received message: {message}")
        try:
            # return if message is a response
            resp = JSONRPCResponse.model_validate_json(message)
            self.pending_requests.pop(resp.id, None)
            return
        except Exception:
            pass

        try:
            error = JSONRPCErrorResponse.model_validate_json(message)
            sub_id = self.pending_requests.pop(error.id, None) if error.id else None
            logger.warning(f"Subscription {sub_id} rejected: {error.error.message}")
            if self.on_error:
                self.on_error(SubscriptionError(error.error.message))
            return
        except Exception:
            pass

        try:
            msg = JSONRPCNotification.model_validate_json(message)
            logger.debug(f"Received notification: {msg}")
        except Exception as e:
            logger.error(f"Error parsing notification: {e}")
            return
        try:
            params = JSONRPCNotficationParams.model_validate(msg.params)
            logger.trace(f"Notification params: {params}")
        except Exception as e:
            logger.error(f"Error parsing notification params: {e}")
            return

        callback = self.callback_map.get(params.subId)
        if callback is None:
            logger.trace(f"No callback for subscription {params.subId}")
            return
        callback(params)

    def connect(self):
        self.websocket.run_forever(
            ping_interval=settings.claim_websocket_ping_interval,
            ping_timeout=5,
            reconnect=5,
        )

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(
                target=self.connect, name="SubscriptionManager", daemon=True
            )
            self._thread.start()

    def subscribe(
        self, kind: JSONRPCSubscriptionKinds, filters: List[str], callback: Callable
    ) -> str:
        """Subscribes to updates of `filters`. Returns the subscription id."""
        if self._closed:
            raise SubscriptionError("Subscription manager is closed")
        subId = random_hash()
        params = JSONRPCSubscribeParams(kind=kind, filters=filters, subId=subId)
        with self._lock:
            self.callback_map[subId] = callback
            self.subscriptions[subId] = params
            # otherwise sent by _on_open
            if self._open:
                self._send_subscribe(params)
        self.start()
        return subId

    def unsubscribe(self, subId: str):
        with self._lock:
            self.callback_map.pop(subId, None)
            if self.subscriptions.pop(subId, None) is None or not self._open:
                return
            req = JSONRPCRequest(
                method=JSONRPCMethods.UNSUBSCRIBE.value,
                params=JSONRPCUnsubscribeParams(subId=subId).model_dump(),
                id=self._next_id(),
            )
            logger.trace(f"Unsubscribing: {req.model_dump_json()}")
            self.websocket.send(req.model_dump_json())

    def close(self):
        # unsubscribe from all subscriptions
        for subId in list(self.subscriptions.keys()):
            self.unsubscribe(subId)
        self._closed = True
        self.websocket.keep_running = False
        self.websocket.close()
