"""
FastAPI surface for the signaling relay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import RelayConfig
from ..envelope import Envelope, EnvelopeType, decode, encode, make_error
from ..errors import DecodeError, DuplicatePeer, SessionFull, SignalingError, TransportClosed, UnknownPeer
from . import schemas
from .state import RelayState

LOG = logging.getLogger(__name__)

IDLE_CLOSE_CODE = 4000
POLICY_VIOLATION = 1008


class PeerConnection:
    """Own one peer's socket: a read loop and the single writer draining its queue."""

    def __init__(
        self,
        hub: "SignalingHub",
        websocket: WebSocket,
        *,
        session_id: str,
        peer_id: str,
        queue_size: int,
    ) -> None:
        self.hub = hub
        self.websocket = websocket
        self.session_id = session_id
        self.peer_id = peer_id
        self.send_queue: asyncio.Queue[Envelope] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self._closing = False
        self._overflowed = False
        self.logger = LOG.getChild(f"ws.{peer_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        try:
            await self.hub.attach(self)
        except (DuplicatePeer, SessionFull) as exc:
            self.logger.warning("Rejected peer %s for session=%s: %s", self.peer_id, self.session_id, exc)
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await self.websocket.send_text(encode(make_error(self.peer_id, exc)).decode("utf-8"))
            await self.close(code=POLICY_VIOLATION, reason=exc.code)
            return

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            self.logger.exception("Peer connection crashed")
        finally:
            await self.hub.detach(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def enqueue(self, envelope: Envelope) -> None:
        """Queue ``envelope`` for the writer without waiting."""

        if self.is_stopped:
            raise TransportClosed(f"transport for {self.peer_id} is closed", ref=envelope.id)
        try:
            self.send_queue.put_nowait(envelope)
        except asyncio.QueueFull:
            self.logger.warning(
                "Outbound queue full (%d); disconnecting slow peer %s",
                self.send_queue.maxsize,
                self.peer_id,
            )
            self._overflowed = True
            self._stop_event.set()
            raise TransportClosed(f"outbound queue for {self.peer_id} overflowed", ref=envelope.id) from None

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError):
                    break
                except Exception:  # pragma: no cover
                    self.logger.exception("Failed to receive message")
                    break

                if message.get("type") == "websocket.disconnect":
                    self.logger.debug("Peer %s disconnected", self.peer_id)
                    break

                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue

                try:
                    await self.hub.handle_message(self, raw)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_text(encode(outbound).decode("utf-8"))
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()
            if self._overflowed:
                # Unblocks the reader, which is still waiting on receive().
                await self.close(code=POLICY_VIOLATION, reason="outbound queue overflow")


class SignalingHub:
    """Bind peer connections to the relay state and run idle-session expiry."""

    def __init__(
        self,
        state: RelayState,
        *,
        queue_size: int = 256,
        session_idle_timeout: float = 300.0,
        sweep_interval: float = 30.0,
    ) -> None:
        self.state = state
        self.queue_size = max(1, int(queue_size))
        self.session_idle_timeout = float(session_idle_timeout)
        self.sweep_interval = max(0.1, float(sweep_interval))
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.session_idle_timeout > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        for outbox in list(self.state.outboxes.values()):
            if isinstance(outbox, PeerConnection):
                await outbox.close(code=1001, reason="relay shutting down")

    async def run(
        self,
        websocket: WebSocket,
        *,
        session_id: Optional[str] = None,
        peer_id: Optional[str] = None,
    ) -> None:
        connection = PeerConnection(
            self,
            websocket,
            session_id=session_id or uuid.uuid4().hex,
            peer_id=peer_id or uuid.uuid4().hex,
            queue_size=self.queue_size,
        )
        await connection.run()

    async def attach(self, connection: PeerConnection) -> None:
        if connection.peer_id in self.state.outboxes:
            raise DuplicatePeer(f"peer {connection.peer_id} is already connected")
        # The outbox must exist before register() emits the welcome join.
        self.state.outboxes[connection.peer_id] = connection
        try:
            await self.state.registry.register(connection.session_id, connection.peer_id)
        except SignalingError:
            if self.state.outboxes.get(connection.peer_id) is connection:
                self.state.outboxes.pop(connection.peer_id, None)
            raise

    async def detach(self, connection: PeerConnection, reason: str = "closed") -> None:
        if self.state.outboxes.get(connection.peer_id) is not connection:
            return
        self.state.outboxes.pop(connection.peer_id, None)
        await self.state.registry.unregister(connection.peer_id, reason=reason)

    async def handle_message(self, connection: PeerConnection, raw) -> None:
        try:
            envelope = decode(raw)
        except DecodeError as exc:
            connection.logger.warning("Undecodable frame from %s: %s", connection.peer_id, exc)
            self._report(connection, exc)
            return

        if envelope.from_peer not in (None, connection.peer_id):
            self._report(
                connection,
                UnknownPeer(
                    f"sender {envelope.from_peer} does not match connection peer {connection.peer_id}",
                    ref=envelope.id,
                ),
            )
            return
        envelope = envelope.with_sender(connection.peer_id)

        if envelope.type is EnvelopeType.LEAVE:
            await self.detach(connection, reason="leave")
            await connection.close(code=1000, reason="leave")
            return

        try:
            result = await self.state.router.route(envelope)
        except SignalingError as exc:
            connection.logger.warning(
                "Rejected %s %s from %s: %s", envelope.type.value, envelope.id, connection.peer_id, exc
            )
            self._report(connection, exc)
            return

        for target, exc in result.failures.items():
            connection.logger.warning(
                "Rejected %s %s for %s: %s", envelope.type.value, envelope.id, target, exc
            )
            self._report(connection, exc)

    def _report(self, connection: PeerConnection, error: SignalingError) -> None:
        try:
            connection.enqueue(make_error(connection.peer_id, error))
        except TransportClosed:
            connection.logger.debug("Could not report %s; transport closed", error.code)

    async def expire_idle_sessions(self, now: Optional[float] = None) -> List[str]:
        expired = self.state.registry.idle_sessions(self.session_idle_timeout, now)
        for session in expired:
            LOG.info("Expiring idle session=%s", session.session_id)
            for peer_id in sorted(session.members):
                connection = self.state.outboxes.get(peer_id)
                if isinstance(connection, PeerConnection):
                    await self.detach(connection, reason="idle")
                    await connection.close(code=IDLE_CLOSE_CODE, reason="session idle")
                else:
                    await self.state.registry.unregister(peer_id, reason="idle")
        return [session.session_id for session in expired]

    async def _sweep_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.sweep_interval)
                if not self._running:
                    break
                try:
                    await self.expire_idle_sessions()
                except Exception:  # pragma: no cover
                    LOG.exception("Idle session sweep failed.")
        except asyncio.CancelledError:
            pass
        finally:
            self._sweep_task = None


def create_app(
    *,
    state: Optional[RelayState] = None,
    config: Optional[RelayConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_config = config or (state.config if state is not None else RelayConfig())
    relay_state = state or RelayState(relay_config)

    hub = SignalingHub(
        relay_state,
        queue_size=relay_config.queue_size,
        session_idle_timeout=relay_config.session_idle_timeout,
        sweep_interval=relay_config.sweep_interval,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await hub.start()
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await hub.stop()

    app = FastAPI(title="WebRTC Signaling Relay", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(relay_config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = relay_state
    app.state.hub = hub

    @app.websocket("/signal")
    async def signal_endpoint(
        websocket: WebSocket,
        session: Optional[str] = None,
        peer: Optional[str] = None,
    ) -> None:
        await hub.run(websocket, session_id=session, peer_id=peer)

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return schemas.HealthModel(
            profile=relay_config.profile,
            sessions=len(relay_state.registry.session_ids()),
            peers=len(relay_state.registry),
        )

    @app.get("/sessions", response_model=schemas.SessionListModel)
    async def list_sessions() -> schemas.SessionListModel:
        return schemas.SessionListModel(**relay_state.snapshot())

    @app.get("/sessions/{session_id}", response_model=schemas.SessionDetailModel)
    async def get_session(session_id: str) -> schemas.SessionDetailModel:
        detail = relay_state.session_detail(session_id)
        if detail is None:
            raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
        return schemas.SessionDetailModel(**detail)

    return app
