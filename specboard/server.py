"""WebSocket synchronization server.

Holds the parsed items of every watched project in memory, turns watcher
ChangeEvents into version-stamped ``update`` broadcasts and serves ordered
``snapshot`` messages to dashboard clients.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from . import protocol
from .collection import CollectionAssembler
from .config import DashboardConfig
from .models import CHANGE_REMOVED, ITEM_KINDS, ChangeEvent, WorkItem
from .ordering import sort_items
from .specboard_logging import (
    log_client_event,
    log_error_with_context,
    log_operation,
    log_update_broadcast,
    setup_logging,
)
from .watcher import ProjectWatcher

logger = logging.getLogger("specboard.server")

ItemKey = Tuple[str, str]


@dataclass(frozen=True)
class ResyncRequest:
    """Queue marker: send fresh snapshots instead of a queued message.

    ``None`` filters mean every subscribed project / every kind.
    """

    project_path: Optional[str] = None
    kind: Optional[str] = None


FULL_RESYNC = ResyncRequest()


def normalize_project_path(path: str | Path) -> str:
    return str(Path(str(path).replace("\\", "/")).expanduser().resolve())


class ProjectState:
    """In-memory view of one project: parsed items, versions, watcher."""

    def __init__(self, project_root: Path | str, config: DashboardConfig):
        self.assembler = CollectionAssembler(project_root, base_dir=config.base_dir)
        self.project_path = str(self.assembler.project_root)
        self.config = config
        self.items: Dict[ItemKey, WorkItem] = {}
        self.subscribers: Set[str] = set()
        self.watcher: Optional[ProjectWatcher] = None
        self.loaded = False
        self._next_version: Dict[ItemKey, int] = {}
        self._applied_version: Dict[ItemKey, int] = {}
        # Items updated by events while the initial load was running
        self._touched_while_loading: Set[ItemKey] = set()
        self._load_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.watcher is not None

    def stamp(self, key: ItemKey) -> int:
        """Assign the next version for ``key``, in event-arrival order."""
        version = self._next_version.get(key, 0) + 1
        self._next_version[key] = version
        return version

    def is_stale(self, key: ItemKey, version: int) -> bool:
        return version < self._applied_version.get(key, 0)

    def apply(self, key: ItemKey, version: int, item: Optional[WorkItem]) -> None:
        self._applied_version[key] = version
        if not self.loaded:
            self._touched_while_loading.add(key)
        if item is None:
            self.items.pop(key, None)
        else:
            self.items[key] = item

    def ordered(self, kind: str) -> List[WorkItem]:
        return sort_items(item for (item_kind, _), item in self.items.items() if item_kind == kind)

    async def ensure_loaded(self) -> None:
        async with self._load_lock:
            if self.loaded:
                return
            with log_operation("load_project", project=self.project_path):
                collections = await asyncio.to_thread(self.assembler.collect_all)
            for items in collections.values():
                for item in items:
                    if item.key not in self._touched_while_loading:
                        self.items[item.key] = item
            self._touched_while_loading.clear()
            self.loaded = True

    def reset(self) -> None:
        self.items.clear()
        self._touched_while_loading.clear()
        self.loaded = False


class ClientSession:
    """One connected dashboard client and its bounded outgoing queue."""

    def __init__(self, websocket: Any, queue_size: int):
        self.websocket = websocket
        self.client_id = uuid.uuid4().hex[:8]
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.projects: Set[str] = set()
        self.overflows = 0

    def enqueue(self, message: Any) -> bool:
        """Queue ``message`` without blocking.

        On overflow every queued message is dropped and replaced by a full
        resync marker. Returns False in that case.
        """
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            pass

        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(FULL_RESYNC)
        self.overflows += 1
        logger.warning(f"Client {self.client_id} fell behind; dropped queued messages and scheduled a resync")
        log_client_event("resync", self.client_id, reason="overflow")
        return False


class SyncServer:
    """Fan parsed work items out to connected dashboard clients."""

    def __init__(self, config: DashboardConfig, *, observe: bool = True):
        self.config = config
        # False leaves raw event intake to callers of ProjectWatcher.notify_path
        self.observe = observe
        self.projects: Dict[str, ProjectState] = {}
        for project in config.projects:
            state = ProjectState(project, config)
            self.projects[state.project_path] = state
        self.sessions: Dict[str, ClientSession] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Projects and subscriptions
    # ------------------------------------------------------------------

    def resolve_project(self, path: str) -> ProjectState:
        state = self.projects.get(path) or self.projects.get(normalize_project_path(path))
        if state is None:
            raise ValueError(f"Unknown project '{path}'")
        return state

    async def _activate(self, state: ProjectState) -> None:
        if state.watcher is None:
            state.watcher = ProjectWatcher(
                state.project_path,
                self.handle_change,
                base_dir=self.config.base_dir,
                debounce=self.config.debounce_seconds,
            )
            state.watcher.start(observe=self.observe)
        await state.ensure_loaded()

    def _deactivate(self, state: ProjectState) -> None:
        if state.watcher is not None:
            state.watcher.stop()
            state.watcher = None
        state.reset()
        logger.info(f"No subscribers left for {state.project_path}; watcher stopped")

    async def subscribe(self, session: ClientSession, project_paths: Optional[Iterable[str]] = None) -> None:
        """Replace the session's subscriptions and queue fresh snapshots."""
        if project_paths is None:
            wanted = set(self.projects)
        else:
            wanted = {self.resolve_project(path).project_path for path in project_paths}

        for path in sorted(session.projects - wanted):
            self._remove_subscriber(session, self.projects[path])
        for path in sorted(wanted - session.projects):
            state = self.projects[path]
            state.subscribers.add(session.client_id)
            session.projects.add(path)
            await self._activate(state)

        session.enqueue(FULL_RESYNC)

    def _remove_subscriber(self, session: ClientSession, state: ProjectState) -> None:
        state.subscribers.discard(session.client_id)
        session.projects.discard(state.project_path)
        if not state.subscribers:
            self._deactivate(state)

    def unsubscribe_all(self, session: ClientSession) -> None:
        for path in sorted(session.projects):
            self._remove_subscriber(session, self.projects[path])

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def build_snapshots(self, session: ClientSession, request: ResyncRequest = FULL_RESYNC) -> List[Dict[str, Any]]:
        """Snapshot messages for the session's projects matching ``request``."""
        if request.project_path is not None:
            paths = [self.resolve_project(request.project_path).project_path]
        else:
            paths = sorted(session.projects)
        kinds = [request.kind] if request.kind is not None else list(ITEM_KINDS)

        messages = []
        for path in paths:
            if path not in session.projects:
                continue
            state = self.projects[path]
            for kind in kinds:
                messages.append(protocol.snapshot_message(state.project_path, kind, state.ordered(kind)))
        return messages

    # ------------------------------------------------------------------
    # Change propagation
    # ------------------------------------------------------------------

    def handle_change(self, event: ChangeEvent) -> None:
        """Watcher callback: stamp the event and re-parse the item off-loop."""
        state = self.projects.get(event.project_path)
        if state is None or not state.active:
            logger.debug(f"Ignoring change for inactive project {event.project_path}")
            return
        version = state.stamp((event.kind, event.slug))
        task = asyncio.get_running_loop().create_task(self.process_change(state, event, version))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process_change(self, state: ProjectState, event: ChangeEvent, version: int) -> Optional[Dict[str, Any]]:
        """Re-parse one item, apply it unless stale and broadcast the update."""
        key = (event.kind, event.slug)
        change_type = event.change_type
        item: Optional[WorkItem] = None
        if change_type != CHANGE_REMOVED:
            # load_item never raises; failures come back as degraded items
            item = await asyncio.to_thread(state.assembler.load_item, event.kind, event.slug)
            if item is None:
                # Directory vanished between the event and the parse
                change_type = CHANGE_REMOVED

        if state.is_stale(key, version):
            logger.debug(f"Discarding stale result v{version} for {event.kind} '{event.slug}'")
            return None
        if not state.active:
            return None

        state.apply(key, version, item)
        message = protocol.update_message(state.project_path, event.kind, event.slug, change_type, version, item)
        recipients = self.broadcast(state, message)
        log_update_broadcast(state.project_path, event.kind, event.slug, recipients,
                             change_type=change_type, version=version)
        return message

    def broadcast(self, state: ProjectState, message: Dict[str, Any]) -> int:
        """Queue ``message`` for every subscriber of ``state``; never blocks."""
        recipients = 0
        for client_id in sorted(state.subscribers):
            session = self.sessions.get(client_id)
            if session is None:
                continue
            session.enqueue(message)
            recipients += 1
        return recipients

    async def wait_idle(self) -> None:
        """Wait for in-flight re-parses to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def handle_connection(self, websocket: Any, path: Optional[str] = None) -> None:
        """Serve one client until it disconnects. The request path is ignored."""
        session = ClientSession(websocket, self.config.queue_size)
        self.sessions[session.client_id] = session
        logger.info(f"Client {session.client_id} connected from {getattr(websocket, 'remote_address', None)}")
        log_client_event("connected", session.client_id)

        sender = asyncio.create_task(self._sender(session))
        try:
            await self.subscribe(session)
            async for raw in websocket:
                await self.handle_client_message(session, raw)
        except ConnectionClosed:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            self.unsubscribe_all(session)
            self.sessions.pop(session.client_id, None)
            logger.info(f"Client {session.client_id} disconnected")
            log_client_event("disconnected", session.client_id)

    async def handle_client_message(self, session: ClientSession, raw: str | bytes) -> None:
        try:
            message = protocol.decode(raw)
            message_type = message["type"]
            if message_type == protocol.SUBSCRIBE:
                await self.subscribe(session, protocol.parse_subscribe(message))
            elif message_type == protocol.RESYNC:
                project_path, kind = protocol.parse_resync(message)
                if project_path is not None:
                    project_path = self.resolve_project(project_path).project_path
                log_client_event("resync", session.client_id, reason="requested")
                session.enqueue(ResyncRequest(project_path, kind))
            else:
                raise protocol.ProtocolError(f"Clients cannot send '{message_type}' messages")
        except ValueError as e:
            # ProtocolError and unknown projects
            logger.warning(f"Rejected message from client {session.client_id}: {e}")
            session.enqueue(protocol.error_message(str(e)))

    async def _sender(self, session: ClientSession) -> None:
        websocket = session.websocket
        while True:
            entry = await session.queue.get()
            if isinstance(entry, ResyncRequest):
                try:
                    messages = self.build_snapshots(session, entry)
                except ValueError as e:
                    messages = [protocol.error_message(str(e))]
            else:
                messages = [entry]
            try:
                for message in messages:
                    await websocket.send(protocol.encode(message))
            except ConnectionClosed:
                logger.debug(f"Client {session.client_id} closed while sending")
                return
            except Exception as e:
                log_error_with_context(e, {"operation": "send", "client_id": session.client_id})
                return

    async def close(self) -> None:
        """Stop every watcher and wait for pending work."""
        for state in self.projects.values():
            if state.watcher is not None:
                state.watcher.stop()
                state.watcher = None
        await self.wait_idle()


async def serve(config: DashboardConfig, stop: Optional[asyncio.Future] = None) -> None:
    """Run the dashboard server until ``stop`` resolves (forever by default)."""
    server = SyncServer(config)
    stop = stop if stop is not None else asyncio.get_running_loop().create_future()
    try:
        async with websockets.serve(server.handle_connection, config.host, config.port):
            projects = ", ".join(server.projects)
            logger.info(f"Dashboard server listening on ws://{config.host}:{config.port} for {projects}")
            await stop
    finally:
        await server.close()


def main() -> None:
    """Entry point for ``specboard-dashboard``."""
    config = DashboardConfig.from_env()
    setup_logging(config.log_level, config.log_file)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Dashboard server stopped")


if __name__ == "__main__":
    main()
