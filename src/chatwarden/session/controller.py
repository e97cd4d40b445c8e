"""
Session Lifecycle Controller.

Drives Session Records through the state machine in ``lifecycle`` and
performs the effects it asks for: opening and releasing sockets, scheduling
re-creation, persisting metadata and notifying web clients.

Each live socket feeds an ``asyncio.Queue`` consumed by one pump task, so
connection events of a session are handled strictly in emission order.
Message and membership events are handed to the dispatcher as independent
tasks; a slow command never delays a connection event.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from chatwarden.errors import (
    CredentialLoadError,
    SessionNotFoundError,
    SessionTerminatedError,
)
from chatwarden.logger import get_logger
from chatwarden.notify import NotificationChannel
from chatwarden.protocol.base import (
    ConnectionUpdate,
    CredentialsUpdated,
    GroupParticipantsUpdate,
    MessagesUpsert,
    ProtocolSocket,
    SocketEvent,
    SocketFactory,
)
from chatwarden.qr import render_data_url
from chatwarden.session.lifecycle import (
    CancelJobs,
    CancelReconnect,
    ChallengeRaised,
    ConnectionClosed,
    ConnectionOpened,
    DeleteStorage,
    DestroyRequested,
    Effect,
    ForwardChallenge,
    LifecycleEvent,
    Notify,
    PersistConnected,
    ReconnectPolicy,
    Recreate,
    ReleaseConnection,
    RestartTimerFired,
    ScheduleRecreate,
    SocketReady,
    Subscribe,
    Transition,
    Unregister,
    transition,
)
from chatwarden.session.record import LifecycleState, SessionRecord
from chatwarden.session.registry import SessionRegistry
from chatwarden.storage import CredentialStore

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Link:
    """A socket together with the queue it emits into and the task draining it."""

    socket: ProtocolSocket
    queue: asyncio.Queue
    pump: Optional[asyncio.Task] = None


class SessionController:
    def __init__(
        self,
        registry: SessionRegistry,
        store: CredentialStore,
        notifier: NotificationChannel,
        socket_factory: SocketFactory,
        dispatcher: Any = None,
        policy: Optional[ReconnectPolicy] = None,
    ):
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self.socket_factory = socket_factory
        self.dispatcher = dispatcher
        self.policy = policy or ReconnectPolicy()
        self._links: Dict[str, _Link] = {}
        self._creating: Dict[str, asyncio.Task] = {}
        # Records whose creation is in flight, by storage key.
        self._pending: Dict[str, SessionRecord] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ─── Web-facing operations ───────────────────────────────────────

    async def start_new_session(
        self, profile: str = "unknown", name: str = "", phone: str = ""
    ) -> SessionRecord:
        """Allocate a storage key, write its metadata and create the session."""
        session_id = uuid.uuid4().hex
        storage_key = await self.store.next_key()
        await self.store.write_meta(
            storage_key,
            {
                "session_id": session_id,
                "storage_key": storage_key,
                "profile": profile,
                "name": name,
                "phone": phone,
                "created_at": _now_ms(),
            },
        )
        return await self.create_session(session_id, storage_key)

    async def create_session(
        self, session_id: str, storage_key: str, attempt: int = 0
    ) -> SessionRecord:
        """
        Create (or re-create) a session and open its socket.

        A no-op returning the existing record when the session already has a
        live connection. Concurrent calls for the same id share one attempt.

        Raises:
            SessionTerminatedError: the id belongs to a terminated session.
            CredentialLoadError: credentials could not be loaded; nothing is registered.
        """
        if self.registry.is_terminated(session_id):
            raise SessionTerminatedError(f"Session {session_id} was terminated")

        existing = self.registry.get(session_id)
        if existing is not None and existing.is_live:
            return existing

        pending = self._creating.get(session_id)
        if pending is None:
            pending = asyncio.create_task(self._create(session_id, storage_key, attempt))
            self._creating[session_id] = pending
            pending.add_done_callback(lambda _: self._creating.pop(session_id, None))
        return await asyncio.shield(pending)

    async def destroy_session(self, storage_key: str) -> bool:
        """
        Tear down whatever runs on ``storage_key`` and delete its credentials.
        Irreversible. Returns True when a registered or connecting session was found.
        """
        record = self.registry.find_by_storage_key(storage_key) or self._pending.get(storage_key)
        if record is None:
            await self.store.delete(storage_key)
            logger.info(f"Destroyed offline storage {storage_key}")
            return False
        await self._apply(record, DestroyRequested())
        logger.info(f"Destroyed session {record.session_id} ({storage_key})")
        return True

    async def list_sessions(self) -> List[Dict[str, Any]]:
        sessions = []
        for key in await self.store.list_keys():
            meta = await self.store.read_meta(key)
            record = self.registry.find_by_storage_key(key)
            sessions.append(
                {
                    "storage_key": key,
                    "meta": meta,
                    "live": bool(record and record.is_live),
                    "state": record.state.value if record else None,
                    "last_connected": meta.get("connected_at"),
                }
            )
        return sessions

    def cancel_group_job(self, storage_key: str, group_id: str) -> bool:
        """Stop the recurring job of one group from outside the chat."""
        record = self.registry.find_by_storage_key(storage_key)
        if record is None:
            raise SessionNotFoundError(f"No session on {storage_key}")
        state = record.groups.get(group_id)
        return state.cancel_job() if state is not None else False

    async def shutdown(self) -> None:
        """Release every connection and timer without touching stored credentials."""
        for record in list(self.registry.sessions.values()):
            record.state = LifecycleState.CLOSING
            record.cancel_reconnect()
            cancelled = record.cancel_jobs()
            if cancelled:
                logger.info(f"Cancelled {cancelled} jobs of {record.session_id}")
            await self._release(record)
            self.registry.unregister(record.session_id, terminated=False)
        for record in self._pending.values():
            record.state = LifecycleState.CLOSING
        for task in list(self._tasks):
            task.cancel()
        logger.info("Session controller shut down")

    # ─── Creation ────────────────────────────────────────────────────

    async def _create(self, session_id: str, storage_key: str, attempt: int) -> SessionRecord:
        record = self.registry.get(session_id)
        is_new = record is None
        if is_new:
            record = SessionRecord(
                session_id=session_id, storage_key=storage_key, reconnect_attempt=attempt
            )
        record.state = LifecycleState.CREATING
        self._pending[storage_key] = record
        try:
            return await self._open(record, is_new)
        finally:
            if self._pending.get(storage_key) is record:
                del self._pending[storage_key]

    async def _open(self, record: SessionRecord, is_new: bool) -> SessionRecord:
        session_id, storage_key = record.session_id, record.storage_key
        try:
            credentials = await self.store.load(storage_key)
        except Exception as e:
            logger.error(f"[{session_id}] Credential load failed for {storage_key}: {e}")
            await self._notify_error(record, "Failed to load auth state", e)
            self._abandon(record)
            raise CredentialLoadError(storage_key, e) from e

        # Destroy or shutdown may have run while credentials were loading.
        if record.state != LifecycleState.CREATING or self.registry.is_terminated(session_id):
            raise SessionTerminatedError(f"Session {session_id} was torn down while connecting")

        queue: asyncio.Queue = asyncio.Queue()
        socket = self.socket_factory(session_id, credentials, queue.put_nowait)
        record.connection = socket
        self._links[session_id] = _Link(socket=socket, queue=queue)
        if is_new:
            self.registry.register(record)

        await self._apply(record, SocketReady())

        try:
            await socket.start()
        except Exception as e:
            if self.registry.get(session_id) is not record:
                raise SessionTerminatedError(
                    f"Session {session_id} was torn down while connecting"
                ) from e
            logger.error(f"[{session_id}] Socket failed to start: {e}")
            await self._release(record)
            self._abandon(record)
            await self._notify_error(record, "Failed to open connection", e)
            raise

        if self.registry.get(session_id) is not record:
            if record.connection is socket:
                await self._release(record)
            else:
                await self._end_socket(session_id, socket)
            raise SessionTerminatedError(f"Session {session_id} was torn down while connecting")

        return record

    def _abandon(self, record: SessionRecord) -> None:
        """Drop a record whose creation failed, leaving its id reusable."""
        record.cancel_reconnect()
        cancelled = record.cancel_jobs()
        if cancelled:
            logger.info(f"[{record.session_id}] Cancelled {cancelled} recurring jobs")
        self.registry.unregister(record.session_id, terminated=False)

    async def _restart(self, record: SessionRecord, notify_as: str) -> None:
        record.reconnect_handle = None
        if self.registry.get(record.session_id) is not record:
            return
        result = await self._apply(record, RestartTimerFired())
        if Recreate() not in result.effects:
            return
        try:
            await self.create_session(
                record.session_id, record.storage_key, record.reconnect_attempt
            )
        except SessionTerminatedError:
            logger.info(f"[{record.session_id}] Re-creation stopped by teardown")
            return
        except Exception as e:
            logger.error(f"[{record.session_id}] {notify_as} attempt failed: {e}")
            label = "Restart failed" if notify_as == "restarted" else "Reconnect failed"
            await self._notify_error(record, label, e)
            return
        await self._notify(record, notify_as)

    # ─── State machine plumbing ──────────────────────────────────────

    async def _apply(self, record: SessionRecord, event: LifecycleEvent) -> Transition:
        result = transition(record.state, record.reconnect_attempt, event, self.policy)
        if result.state != record.state:
            logger.info(
                f"[{record.session_id}] {record.state.value} -> {result.state.value} "
                f"on {type(event).__name__}"
            )
        record.state = result.state
        record.reconnect_attempt = result.attempt
        for effect in result.effects:
            await self._execute(record, effect)
        return result

    async def _execute(self, record: SessionRecord, effect: Effect) -> None:
        if isinstance(effect, Subscribe):
            link = self._links.get(record.session_id)
            if link is not None and link.pump is None:
                link.pump = asyncio.create_task(
                    self._pump(record, link), name=f"pump:{record.session_id}"
                )
        elif isinstance(effect, ForwardChallenge):
            await self._forward_challenge(record, effect.qr)
        elif isinstance(effect, PersistConnected):
            await self._persist_connected(record)
        elif isinstance(effect, Notify):
            extra = {"reason": effect.reason} if effect.event == "disconnected" else {}
            await self._notify(record, effect.event, **extra)
        elif isinstance(effect, ReleaseConnection):
            await self._release(record)
        elif isinstance(effect, Unregister):
            self.registry.unregister(record.session_id, terminated=True)
        elif isinstance(effect, CancelJobs):
            cancelled = record.cancel_jobs()
            if cancelled:
                logger.info(f"[{record.session_id}] Cancelled {cancelled} recurring jobs")
        elif isinstance(effect, CancelReconnect):
            record.cancel_reconnect()
        elif isinstance(effect, DeleteStorage):
            await self.store.delete(record.storage_key)
        elif isinstance(effect, ScheduleRecreate):
            self._schedule_recreate(record, effect)
        elif isinstance(effect, Recreate):
            # Performed by _restart once the transition has been applied.
            pass
        else:
            raise TypeError(f"Unknown effect {effect!r}")

    def _schedule_recreate(self, record: SessionRecord, effect: ScheduleRecreate) -> None:
        record.cancel_reconnect()
        loop = asyncio.get_running_loop()
        record.reconnect_handle = loop.call_later(
            effect.delay_ms / 1000,
            lambda: self._spawn(self._restart(record, effect.notify_as)),
        )
        logger.info(
            f"[{record.session_id}] Re-creating in {effect.delay_ms} ms "
            f"(attempt {record.reconnect_attempt})"
        )

    async def _release(self, record: SessionRecord) -> None:
        socket, record.connection = record.connection, None
        link = self._links.pop(record.session_id, None)
        if link is not None and link.pump is not None and link.pump is not asyncio.current_task():
            link.pump.cancel()
        if socket is not None:
            await self._end_socket(record.session_id, socket)

    async def _end_socket(self, session_id: str, socket: ProtocolSocket) -> None:
        try:
            await socket.end()
        except Exception as e:
            logger.warning(f"[{session_id}] Error while ending socket: {e}")

    # ─── Socket events ───────────────────────────────────────────────

    async def _pump(self, record: SessionRecord, link: _Link) -> None:
        socket = link.socket
        while record.connection is socket:
            event = await link.queue.get()
            if record.connection is not socket:
                break
            try:
                await self._handle_socket_event(record, socket, event)
            except Exception as e:
                logger.error(f"[{record.session_id}] Event handler error: {e}")
                await self._notify_error(record, "Session event handler failed", e)

    async def _handle_socket_event(
        self, record: SessionRecord, socket: ProtocolSocket, event: SocketEvent
    ) -> None:
        if isinstance(event, CredentialsUpdated):
            socket.credentials = event.state
            await self.store.save(record.storage_key, event.state)
        elif isinstance(event, ConnectionUpdate):
            if event.qr:
                await self._apply(record, ChallengeRaised(event.qr))
            if event.connection == "open":
                await self._apply(record, ConnectionOpened())
            elif event.connection == "close":
                logger.info(f"[{record.session_id}] Connection closed, code={event.reason}")
                await self._apply(record, ConnectionClosed(event.reason))
        elif isinstance(event, MessagesUpsert):
            if self.dispatcher is None:
                return
            for message in event.messages:
                self._spawn(self.dispatcher.dispatch(record.session_id, message))
        elif isinstance(event, GroupParticipantsUpdate):
            if self.dispatcher is not None:
                self._spawn(self.dispatcher.on_participants_update(record.session_id, event))
        else:
            logger.warning(f"[{record.session_id}] Unknown socket event {event!r}")

    # ─── Side-effect helpers ─────────────────────────────────────────

    async def _forward_challenge(self, record: SessionRecord, qr: str) -> None:
        payload = {"session_id": record.session_id, "storage_key": record.storage_key}
        try:
            payload["qr_data_url"] = await asyncio.to_thread(render_data_url, qr)
        except Exception as e:
            logger.warning(f"[{record.session_id}] QR rendering failed: {e}")
            payload["qr_string"] = qr
        await self.notifier.emit("qr", payload)

    async def _persist_connected(self, record: SessionRecord) -> None:
        record.connected_at = datetime.now()
        logger.info(f"[{record.session_id}] Connected (storage={record.storage_key})")
        try:
            await self.store.write_meta(record.storage_key, {"connected_at": _now_ms()})
        except Exception as e:
            logger.warning(f"[{record.session_id}] Failed to persist connected marker: {e}")

    async def _notify(self, record: SessionRecord, event: str, **data: Any) -> None:
        await self.notifier.emit(
            event,
            {"session_id": record.session_id, "storage_key": record.storage_key, **data},
        )

    async def _notify_error(self, record: SessionRecord, message: str, error: Exception) -> None:
        await self._notify(record, "error", message=message, detail=str(error))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
