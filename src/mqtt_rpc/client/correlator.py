"""
RPC Request Correlation.

The `RPCCorrelator` allocates request ids, publishes requests and keeps
track of every request that is still waiting for its response. The
pending map is the only state shared with the response dispatcher;
`claim()` is the single point where an entry leaves it, so exactly one of
{response, timeout, cancellation} wins for any given id.
"""
import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, Optional

from mqtt_rpc import topics
from mqtt_rpc.client.connection import Transport
from mqtt_rpc.exceptions import RPCCancelledError, RPCTimeoutError, TransportError
from mqtt_rpc.models import PendingRequest, Request, Response

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class RPCCorrelator:
    transport: Transport
    request_topic: str
    default_timeout: float
    _pending: Dict[int, PendingRequest]

    """
    Issues RPC requests over a transport and correlates them with responses by id.
    """
    def __init__(self, transport: Transport, request_topic: str = topics.DEFAULT_REQUEST_TOPIC,
                 default_timeout: float = DEFAULT_TIMEOUT):
        if default_timeout <= 0:
            raise ValueError(f"default_timeout must be > 0, got {default_timeout}")
        self.transport = transport
        self.request_topic = topics.validate_template(request_topic)
        self.default_timeout = default_timeout
        self._ids = itertools.count(1)  # never reset, also not across reconnects
        self._pending = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._pending

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Response:
        """
        Publishes `method(params)` and waits for the matching response.

        Raises TransportError if the request could not be published and
        RPCTimeoutError if no response arrived within `timeout` seconds.
        """
        timeout = self._check_timeout(timeout)
        pending = await self.submit(method, params)
        return await self.wait(pending, timeout)

    async def submit(self, method: str, params: Any = None) -> PendingRequest:
        """
        Publishes a request and registers it as pending without waiting for the
        response. The entry is registered before publishing so that a response
        racing the publish acknowledgement still finds it.
        """
        if not isinstance(method, str) or not method:
            raise ValueError("method must be a non-empty string")
        loop = asyncio.get_running_loop()

        with self._lock:
            request = Request(id=next(self._ids), method=method, params={} if params is None else params)
        try:
            payload = request.to_bytes()
        except (TypeError, ValueError) as e:
            raise ValueError(f"params of '{method}' are not JSON serializable: {e}") from e

        pending = PendingRequest(request=request, completion=loop.create_future())
        with self._lock:
            self._pending[request.id] = pending

        topic = topics.topic_for(self.request_topic, request.id)
        try:
            await self.transport.publish(topic, payload)
        except TransportError as e:
            self.claim(request.id)
            logger.error(f"Request {request.id} ('{method}') could not be published: {e}")
            raise
        except BaseException:
            self.claim(request.id)
            raise
        logger.debug(f"Request {request.id} published to '{topic}': {request.to_json()}")
        return pending

    async def wait(self, pending: PendingRequest, timeout: Optional[float] = None) -> Response:
        """
        Suspends until `pending` is settled or `timeout` elapses.
        If the response claimed the entry just as the timeout fired, the response wins.
        """
        timeout = self._check_timeout(timeout)
        try:
            return await asyncio.wait_for(asyncio.shield(pending.completion), timeout)
        except asyncio.TimeoutError:
            if self.claim(pending.id) is None:
                # Settled by whoever claimed it; the settle is already scheduled
                return await pending.completion
            pending.completion.cancel()
            logger.warning(f"Request {pending.id} ('{pending.request.method}') timed out after {timeout}s")
            raise RPCTimeoutError(f"No response to request {pending.id} ('{pending.request.method}') within {timeout}s") from None
        except asyncio.CancelledError:
            if self.claim(pending.id) is not None:
                pending.completion.cancel()
                logger.info(f"Request {pending.id} abandoned by its caller")
            raise

    def claim(self, request_id: int) -> Optional[PendingRequest]:
        """
        Atomically removes and returns the pending entry for `request_id`.
        Whoever gets the entry must settle it; everyone else gets None.
        """
        with self._lock:
            return self._pending.pop(request_id, None)

    def cancel(self, request_id: int) -> bool:
        pending = self.claim(request_id)
        if pending is None:
            return False
        pending.settle(error=RPCCancelledError(f"Request {request_id} was cancelled"))
        logger.info(f"Request {request_id} cancelled")
        return True

    def close(self, reason: str = "connection closed"):
        """Fails every outstanding request with a TransportError."""
        with self._lock:
            outstanding = list(self._pending.values())
            self._pending.clear()
        for pending in outstanding:
            pending.settle(error=TransportError(f"Request {pending.id} aborted: {reason}"))
        if outstanding:
            logger.warning(f"Aborted {len(outstanding)} pending request(s): {reason}")

    def _check_timeout(self, timeout: Optional[float]) -> float:
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        return timeout
