"""Dashboard client: local reconciliation of snapshots and updates."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import protocol
from .models import WorkItem, validate_kind
from .ordering import sort_items

logger = logging.getLogger("specboard.client")

CollectionKey = Tuple[str, str]
ChangeListener = Callable[[str, str, List[WorkItem]], None]

INITIAL_RECONNECT_DELAY = 1.0
RECONNECT_MULTIPLIER = 1.5
MAX_RECONNECT_DELAY = 30.0


class ClientReconciler:
    """Keep per ``(project_path, kind)`` ordered lists in sync with the server.

    Every list is re-sorted with the shared comparator after each update, so
    the local order is always the one a fresh snapshot would have.
    """

    def __init__(self, on_change: Optional[ChangeListener] = None):
        self.collections: Dict[CollectionKey, List[WorkItem]] = {}
        self.versions: Dict[Tuple[str, str, str], int] = {}
        self.errors: List[str] = []
        self.on_change = on_change

    def items(self, project_path: str, kind: str) -> List[WorkItem]:
        return list(self.collections.get((project_path, validate_kind(kind)), []))

    def slugs(self, project_path: str, kind: str) -> List[str]:
        return [item.slug for item in self.items(project_path, kind)]

    def apply_snapshot(self, message: protocol.Message) -> List[WorkItem]:
        """Replace one collection wholesale. Raises ProtocolError if invalid."""
        items = protocol.parse_snapshot(message)
        project_path, kind = message["project_path"], message["kind"]
        ordered = sort_items(items)
        self.collections[(project_path, kind)] = ordered
        # Versions restart whenever the server does
        for version_key in [k for k in self.versions if k[:2] == (project_path, kind)]:
            del self.versions[version_key]
        logger.debug(f"Snapshot for {project_path} {kind}: {len(ordered)} items")
        self._notify(project_path, kind, ordered)
        return ordered

    def apply_update(self, message: protocol.Message) -> bool:
        """Upsert or remove one item and re-sort. Returns False for stale updates."""
        item = protocol.parse_update(message)
        project_path, kind, slug = message["project_path"], message["kind"], message["slug"]
        version = message["version"]

        version_key = (project_path, kind, slug)
        if version < self.versions.get(version_key, 0):
            logger.debug(f"Ignoring stale update v{version} for {kind} '{slug}'")
            return False
        self.versions[version_key] = version

        current = [existing for existing in self.collections.get((project_path, kind), []) if existing.slug != slug]
        if item is not None:
            current.append(item)
        ordered = sort_items(current)
        self.collections[(project_path, kind)] = ordered
        self._notify(project_path, kind, ordered)
        return True

    def handle_message(self, message: protocol.Message) -> None:
        message_type = message["type"]
        if message_type == protocol.SNAPSHOT:
            self.apply_snapshot(message)
        elif message_type == protocol.UPDATE:
            self.apply_update(message)
        elif message_type == protocol.ERROR:
            text = str(message.get("message", ""))
            logger.warning(f"Server reported an error: {text}")
            self.errors.append(text)
        else:
            raise protocol.ProtocolError(f"Servers do not send '{message_type}' messages")

    def handle_raw(self, raw: str | bytes) -> Optional[protocol.Message]:
        """Apply one frame from the server.

        Returns a ``resync`` request to send back when the frame was
        malformed and had to be dropped, otherwise None.
        """
        try:
            self.handle_message(protocol.decode(raw))
        except protocol.ProtocolError as e:
            logger.warning(f"Dropping malformed message, requesting resync: {e}")
            return protocol.resync_message()
        return None

    def _notify(self, project_path: str, kind: str, items: List[WorkItem]) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(project_path, kind, list(items))
        except Exception as e:
            logger.error(f"Change listener failed: {e}")


def reconnect_delay(
    attempt: int,
    initial: float = INITIAL_RECONNECT_DELAY,
    multiplier: float = RECONNECT_MULTIPLIER,
    maximum: float = MAX_RECONNECT_DELAY,
) -> float:
    """Delay before reconnect attempt ``attempt`` (0-based), capped at ``maximum``."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(initial * multiplier ** attempt, maximum)


class DashboardClient:
    """Connect to a dashboard server and keep a reconciler up to date."""

    def __init__(
        self,
        url: str,
        reconciler: Optional[ClientReconciler] = None,
        *,
        projects: Optional[List[str]] = None,
        initial_delay: float = INITIAL_RECONNECT_DELAY,
        multiplier: float = RECONNECT_MULTIPLIER,
        max_delay: float = MAX_RECONNECT_DELAY,
        max_attempts: Optional[int] = None,
    ):
        self.url = url
        self.reconciler = reconciler or ClientReconciler()
        self.projects = projects
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.connected = False

    def next_delay(self, attempt: int) -> float:
        return reconnect_delay(attempt, self.initial_delay, self.multiplier, self.max_delay)

    async def _session(self, websocket) -> None:
        if self.projects is not None:
            await websocket.send(protocol.encode(protocol.subscribe_message(self.projects)))
        async for raw in websocket:
            reply = self.reconciler.handle_raw(raw)
            if reply is not None:
                await websocket.send(protocol.encode(reply))

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Connect, consume messages and reconnect until ``stop`` is set.

        Raises ConnectionError once ``max_attempts`` consecutive connection
        attempts have failed.
        """
        stop = stop or asyncio.Event()
        failures = 0
        while not stop.is_set():
            try:
                async with websockets.connect(self.url) as websocket:
                    logger.info(f"Connected to {self.url}")
                    self.connected = True
                    failures = 0
                    await self._session(websocket)
                logger.info(f"Server at {self.url} closed the connection")
            except (OSError, asyncio.TimeoutError, ConnectionClosed, WebSocketException) as e:
                failures += 1
                logger.warning(f"Connection to {self.url} failed ({failures}): {e}")
            finally:
                self.connected = False

            if stop.is_set():
                break
            if self.max_attempts is not None and failures >= self.max_attempts:
                raise ConnectionError(f"Could not reach {self.url} after {failures} attempts")

            delay = self.next_delay(max(failures - 1, 0))
            logger.info(f"Reconnecting in {delay:.1f}s")
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
