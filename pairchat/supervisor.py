"""
Connection supervisor.

:class:`ConnectionSupervisor` owns the single active :class:`Session`.  It is
the only writer of session fields; transports, the channel protocol, the file
engine and the media negotiator receive the session (or the pieces of it they
need) by reference.  Every user operation is a coroutine on the running loop.

User operations report a failure (log entry, ``status`` and ``error`` events)
and then re-raise it.  Paths driven by transport events only report.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Set, Tuple, TypeVar

from . import MODES, IceConfig, PairchatConfig
from .channel.protocol import ControlMessage, DataChannelProtocol, PlainTextMessage, parse_frame
from .channel.signals import CallAction, CallSignalingRouter
from .channel.transfer import FileTransferEngine
from .errors import (
    FileTransferAborted,
    InvalidState,
    MediaAccessDenied,
    PairchatError,
    PeerDisconnected,
    ProtocolViolation,
    SendFailure,
    SignalingError,
    TransportUnavailable,
)
from .rtc.direct import DirectTransport, parse_description
from .rtc.matchmaking import Available, MatchmakingTransport, TransportAvailability, Unavailable, resolve_matchmaking
from .rtc.media import MediaCapture, MediaNegotiator, MediaOutcome, release
from .rtc.transport import (
    STATE_CLOSED,
    STATE_CONNECTED,
    STATE_CONNECTING,
    TERMINAL_TRANSPORT_STATES,
    RawChannel,
    TransportAdapter,
    TransportEvents,
)
from .session import (
    FileMetadata,
    ReceivedFile,
    Session,
    SessionEvent,
    SessionRole,
    SessionState,
    TransferDirection,
    TransportKind,
)
from .utils.pools import PoolStore

LOG = logging.getLogger(__name__)

Observer = Callable[[SessionEvent], None]
DirectFactory = Callable[[TransportEvents, IceConfig], TransportAdapter]
T = TypeVar("T")

ME = "me"
STRANGER = "stranger"


def _default_direct_factory(events: TransportEvents, ice: IceConfig) -> TransportAdapter:
    return DirectTransport(events, ice)


class _SessionEvents(TransportEvents):
    """
    Transport event sink bound to one session.

    Callbacks arriving after the session was replaced are dropped, so a
    transport being torn down can never touch its successor.
    """

    def __init__(self, supervisor: "ConnectionSupervisor", session: Session) -> None:
        self._supervisor = supervisor
        self._session = session

    def _current(self) -> bool:
        return self._supervisor.session is self._session

    def on_state(self, state: str) -> None:
        if self._current():
            self._supervisor._on_transport_state(self._session, state)

    def on_channel(self, channel: RawChannel) -> None:
        if self._current():
            self._supervisor._on_channel(self._session, channel)

    def on_channel_open(self) -> None:
        if self._current():
            self._supervisor._on_channel_open(self._session)

    def on_channel_close(self) -> None:
        if self._current():
            self._supervisor._on_channel_close(self._session)

    def on_message(self, payload: Any) -> None:
        if self._current():
            self._supervisor._on_message(self._session, payload)

    def on_track(self, track: Any) -> None:
        if self._current():
            self._supervisor._on_track(self._session, track)

    def on_error(self, error: BaseException) -> None:
        if self._current():
            self._supervisor._on_transport_error(self._session, error)


class ConnectionSupervisor:
    def __init__(
        self,
        config: Optional[PairchatConfig] = None,
        *,
        capture: Optional[MediaCapture] = None,
        direct_factory: Optional[DirectFactory] = None,
        matchmaking: Optional[TransportAvailability] = None,
        pools: Optional[PoolStore] = None,
    ) -> None:
        self.config = config or PairchatConfig()
        self.mode = self.config.mode
        self.capture = capture or MediaCapture(self.config.media)
        self._direct_factory = direct_factory or _default_direct_factory
        # Resolved once; never re-probed per call.
        self.availability: TransportAvailability = (
            matchmaking if matchmaking is not None else resolve_matchmaking(self.config.matchmaking)
        )
        self.pools = pools or PoolStore(self.config.pools_path)
        self.session = Session()
        self.artifacts: Dict[str, ReceivedFile] = {}
        self.transcript: List[Tuple[str, str]] = []

        self._observers: Dict[int, Observer] = {}
        self._observer_counter = 0
        self._protocol: Optional[DataChannelProtocol] = None
        self._engine: Optional[FileTransferEngine] = None
        self._router: Optional[CallSignalingRouter] = None
        self._negotiator: Optional[MediaNegotiator] = None
        self._send_task: Optional["asyncio.Task[FileMetadata]"] = None
        self._send_abort_reason: Optional[str] = None
        self._match_timer: Optional[asyncio.TimerHandle] = None
        self._background: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------ observers

    def subscribe(self, callback: Observer) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self, event: SessionEvent) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(event)
            except Exception:  # pragma: no cover - observer failures should not kill the session
                LOG.exception("Session observer %s failed.", token)

    def _emit(self, kind: str, **payload: Any) -> None:
        self._notify(SessionEvent(kind=kind, payload=payload))

    def _status(self, text: str) -> None:
        LOG.info("%s", text)
        self._emit("status", text=text)

    def _say(self, text: str, sender: str = STRANGER) -> None:
        """Add one line to the conversation, as the chat view shows it."""

        self.transcript.append((sender, text))
        self._emit("message", sender=sender, text=text)

    def _report(self, error: BaseException) -> None:
        code = getattr(error, "code", type(error).__name__)
        LOG.warning("%s: %s", code, error)
        self._emit("error", code=code, message=str(error))
        self._status(str(error))

    @contextmanager
    def _reporting(self) -> Iterator[None]:
        try:
            yield
        except PairchatError as exc:
            if not exc.reported:
                self._report(exc)
            raise

    # ------------------------------------------------------------------ views

    @property
    def matchmaking_available(self) -> bool:
        return isinstance(self.availability, Available)

    def snapshot(self) -> dict:
        availability = self.availability
        return {
            "mode": self.mode,
            "session": self.session.to_dict(),
            "matchmaking": {
                "available": isinstance(availability, Available),
                "reason": availability.reason if isinstance(availability, Unavailable) else None,
            },
            "artifacts": [artifact.to_dict() for artifact in self.artifacts.values()],
        }

    def export_transcript(self) -> str:
        return "\n".join(
            f"{'Me' if sender == ME else 'Stranger'}: {text}" for sender, text in self.transcript
        )

    def set_mode(self, mode: str) -> str:
        candidate = str(mode or "").strip().lower()
        if candidate not in MODES:
            raise ValueError(f"Unsupported mode '{mode}'")
        self.mode = candidate
        return candidate

    # ------------------------------------------------------------------ manual signaling

    async def start_direct(self) -> str:
        """Create an offer and return it once ICE gathering is complete."""

        with self._reporting():
            await self._teardown()
            session = self._new_session(TransportKind.DIRECT, SessionRole.OFFERER)
            transport = self._build_direct(session)
            async with self._starting(session, "creating the offer"):
                self._advance(session, SessionState.OFFERING)
                await self._capture_initial_media(session)
                await self._publish_local(session)
                transport.open()
                description = await self._bounded(transport.create_offer())  # type: ignore[attr-defined]
                self._ensure_current(session)

            session.local_description = description
            self._advance(session, SessionState.AWAITING_REMOTE)
            self._emit("local-description", description=description, role=session.role.value)
            self._status("Offer created. Share it to the stranger.")
            return description

    async def accept_answer(self, serialized: str) -> None:
        with self._reporting():
            description = parse_description(serialized, expected_type="answer")
            session = self.session
            if (
                session.transport_kind is not TransportKind.DIRECT
                or session.role is not SessionRole.OFFERER
                or session.state is not SessionState.AWAITING_REMOTE
            ):
                raise InvalidState("No offer is waiting for an answer")
            try:
                await self._bounded(session.transport.apply_remote(description))
            except asyncio.TimeoutError as exc:
                raise SignalingError("Timed out applying the answer") from exc
            except PairchatError:
                raise
            except Exception as exc:
                raise SignalingError(f"Could not apply the answer: {exc}") from exc
            self._ensure_current(session)
            self._advance(session, SessionState.CONNECTING)
            self._status("Answer applied. Connecting…")

    async def generate_answer(self, serialized_offer: str) -> str:
        """Answer a pasted offer; the previous session survives a malformed one."""

        with self._reporting():
            description = parse_description(serialized_offer, expected_type="offer")
            await self._teardown()
            session = self._new_session(TransportKind.DIRECT, SessionRole.ANSWERER)
            transport = self._build_direct(session)
            async with self._starting(session, "answering the offer"):
                self._advance(session, SessionState.OFFERING)
                await self._capture_initial_media(session)
                await self._publish_local(session)
                await self._bounded(transport.apply_remote(description))  # type: ignore[attr-defined]
                answer = await self._bounded(transport.create_answer())  # type: ignore[attr-defined]
                self._ensure_current(session)

            session.local_description = answer
            self._advance(session, SessionState.CONNECTING)
            self._emit("local-description", description=answer, role=session.role.value)
            self._status("Answer generated. Send back to the stranger.")
            return answer

    # ------------------------------------------------------------------ matchmaking

    async def start_matchmaking(self) -> None:
        with self._reporting():
            availability = self.availability
            if not isinstance(availability, Available):
                raise TransportUnavailable(f"Pool mode unavailable: {availability.reason}")

            await self._teardown()
            session = self._new_session(TransportKind.MATCHMAKING, SessionRole.MATCHED)
            transport = MatchmakingTransport(
                _SessionEvents(self, session),
                availability.factory,
                announce=self.pools.load(),
                swarm_id=self.config.matchmaking.swarm_id,
            )
            session.transport = transport
            self._negotiator = MediaNegotiator(transport)
            async with self._starting(session, "joining the pool"):
                self._advance(session, SessionState.MATCHING)
                await self._capture_initial_media(session)
                self._ensure_current(session)
                transport.start()

            self._arm_match_timer(session)
            self._status("Looking for strangers in the pool...")
            self._say("Joining the pool, searching for someone to chat with...")

    def _arm_match_timer(self, session: Session) -> None:
        timeout = float(self.config.timeouts.match or 0)
        if timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._match_timer = loop.call_later(timeout, self._on_match_timeout, session, timeout)

    def _on_match_timeout(self, session: Session, timeout: float) -> None:
        self._match_timer = None
        if self.session is not session or session.channel is not None:
            return
        self._report(PeerDisconnected(f"No stranger found within {timeout:g} seconds"))
        self._spawn(self._teardown_if_current(session))

    # ------------------------------------------------------------------ teardown

    async def leave(self) -> None:
        """Release everything the session owns; a no-op when idle."""

        if not self._has_session():
            return
        await self._teardown()
        self._status("Left chat.")

    async def next(self) -> Optional[str]:
        """Leave and start over in the selected mode."""

        await self.leave()
        if self.mode == "pool":
            availability = self.availability
            if isinstance(availability, Available):
                await self.start_matchmaking()
                return None
            self._status(f"Pool mode unavailable ({availability.reason}); using manual signaling.")
        return await self.start_direct()

    async def shutdown(self) -> None:
        await self.leave()
        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

    def _has_session(self) -> bool:
        session = self.session
        return session.is_active or session.transport is not None or bool(session.local_media)

    async def _teardown(self) -> None:
        session = self.session
        if not self._has_session():
            return
        # Swap first: callbacks fired while closing see a stale session and are dropped.
        self.session = Session()

        if self._match_timer is not None:
            self._match_timer.cancel()
            self._match_timer = None
        send_task, self._send_task = self._send_task, None
        if send_task is not None and not send_task.done():
            send_task.cancel()
        engine = self._engine
        self._protocol = self._engine = self._router = self._negotiator = None
        if engine is not None:
            engine.abort("session ended")

        transport, session.transport = session.transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                LOG.exception("Failed to close %s transport", session.transport_kind)
                self._emit("error", code="E_TEARDOWN", message=f"Failed to close transport: {exc}")

        owned = list(session.local_media) + list(session.screen_media)
        session.local_media = []
        session.screen_media = []
        session.camera_track = None
        session.channel = None
        session.channel_open = False
        for exc in release(owned):
            self._emit("error", code="E_TEARDOWN", message=f"Failed to stop track: {exc}")

        LOG.info("Session %s torn down", session.id)
        self._emit("state", state=SessionState.IDLE.value)

    async def _teardown_if_current(self, session: Session) -> None:
        if self.session is session:
            await self._teardown()

    # ------------------------------------------------------------------ messaging

    async def send_text(self, text: str) -> None:
        with self._reporting():
            message = str(text or "").strip()
            if not message:
                return
            protocol = self._require_channel("Not connected to a stranger. Start a session first.")
            await protocol.send_text(message)
            self._say(message, ME)

    async def send_file(self, name: str, data: bytes, mime_type: Optional[str] = None) -> FileMetadata:
        """Send one file; returns when the transfer completes."""

        with self._reporting():
            self._require_channel("Not connected. Cannot send file.")
            engine = self._engine
            if engine is None:
                raise SendFailure("Not connected. Cannot send file.")
            if self._send_task is not None and not self._send_task.done():
                raise FileTransferAborted("Another file is already being sent")

            self._send_abort_reason = None
            task = asyncio.get_running_loop().create_task(engine.send_file(name, data, mime_type))
            self._send_task = task
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                if self._send_task is task:
                    self._send_task = None

            # The engine already reported its own aborts through _on_file_abort.
            abort_reason, self._send_abort_reason = self._send_abort_reason, None
            if task.cancelled():
                error = FileTransferAborted(abort_reason or f"Transfer of {name} was cancelled")
                error.reported = abort_reason is not None
                raise error
            failure = task.exception()
            if isinstance(failure, FileTransferAborted) and abort_reason is not None:
                failure.reported = True
            metadata = task.result()
            self._say(f"Sent file: {metadata.name}", ME)
            self._emit("file-sent", name=metadata.name, size=metadata.size, mimeType=metadata.mime_type)
            return metadata

    def _require_channel(self, message: str) -> DataChannelProtocol:
        protocol = self._protocol
        if protocol is None or not protocol.is_open:
            raise SendFailure(message)
        return protocol

    # ------------------------------------------------------------------ calls

    async def start_voice_call(self) -> None:
        with self._reporting():
            session = self._require_connected("Not connected. Cannot start call.")
            await self._start_call(session, video=False)
            self._say("Voice call started", ME)
            await self._notify_peer(CallAction.VOICE_CALL_START)

    async def start_video_call(self) -> None:
        with self._reporting():
            session = self._require_connected("Not connected. Cannot start call.")
            await self._start_call(session, video=True)
            self._say("Video call started", ME)
            await self._notify_peer(CallAction.VIDEO_CALL_START)

    async def end_call(self) -> None:
        with self._reporting():
            session = self.session
            tracks = list(session.local_media)
            if tracks:
                if self._negotiator is not None:
                    outcome = await self._negotiator.unpublish(tracks)
                    self._report_media(outcome)
                else:
                    release(tracks)
            session.local_media = []
            session.camera_track = None
            session.in_call = False
            session.muted = False
            session.camera_off = False
            self._say("Call ended", ME)
            await self._notify_peer(CallAction.CALL_END)

    async def toggle_mute(self) -> bool:
        with self._reporting():
            session = self.session
            audio = [track for track in session.local_media if getattr(track, "kind", None) == "audio"]
            if not audio:
                return session.muted
            muted = not session.muted
            if self._negotiator is not None:
                self._report_media(await self._negotiator.set_enabled(audio, not muted))
            session.muted = muted
            self._status("Microphone muted" if muted else "Microphone unmuted")
            await self._notify_peer(CallAction.MUTE_TOGGLE, muted=muted)
            return muted

    async def toggle_camera(self) -> bool:
        with self._reporting():
            session = self.session
            camera = session.camera_track
            if camera is None:
                return session.camera_off
            camera_off = not session.camera_off
            # While sharing, the camera is off the wire already; only the flag moves.
            if self._negotiator is not None and not session.screen_media:
                self._report_media(await self._negotiator.set_enabled([camera], not camera_off))
            session.camera_off = camera_off
            self._status("Camera off" if camera_off else "Camera on")
            await self._notify_peer(CallAction.CAMERA_TOGGLE, cameraOff=camera_off)
            return camera_off

    async def toggle_screen_share(self) -> bool:
        """Start or stop sharing; returns whether sharing is now active."""

        with self._reporting():
            session = self._require_connected("Not connected. Start a connection first.")
            if session.screen_media:
                await self._stop_screen_share(session)
                return False

            tracks = await self.capture.display_media()
            if self.session is not session:
                release(tracks)
                raise InvalidState("Session ended while opening the screen source")
            session.screen_media = list(tracks)
            for track in tracks:
                if getattr(track, "kind", None) == "video" and hasattr(track, "on"):
                    track.on("ended", lambda: self._spawn(self._on_screen_ended(session)))
            negotiator = self._negotiator
            if negotiator is None:
                raise InvalidState("Session ended while opening the screen source")
            self._report_media(await negotiator.start_screen_share(tracks, session.local_media))
            self._say("Started screen sharing", ME)
            await self._notify_peer(CallAction.SCREEN_SHARE_TOGGLE, sharing=True)
            return True

    async def _stop_screen_share(self, session: Session) -> None:
        screen = list(session.screen_media)
        session.screen_media = []
        camera = None if session.camera_off else session.camera_track
        if self._negotiator is not None:
            self._report_media(await self._negotiator.stop_screen_share(screen, session.local_media, camera))
        else:
            release(screen)
        self._say("Screen sharing stopped", ME)
        await self._notify_peer(CallAction.SCREEN_SHARE_TOGGLE, sharing=False)

    async def _on_screen_ended(self, session: Session) -> None:
        if self.session is session and session.screen_media:
            await self._stop_screen_share(session)

    async def _start_call(self, session: Session, *, video: bool) -> None:
        captured = await self.capture.user_media(audio=True, video=video)
        if not captured.tracks:
            if captured.denied:
                raise captured.denied[0]
            raise MediaAccessDenied("No local media could be captured")
        if self.session is not session:
            release(captured.tracks)
            raise InvalidState("Session ended while capturing media")
        for denied in captured.denied:
            self._report(denied)
        if session.screen_media:
            await self._stop_screen_share(session)

        negotiator = self._negotiator
        if negotiator is None:
            release(captured.tracks)
            raise InvalidState("Session ended while capturing media")
        self._report_media(await negotiator.swap(session.local_media, captured.tracks))
        session.local_media = list(captured.tracks)
        session.camera_track = next(iter(captured.of_kind("video")), None)
        session.muted = False
        session.camera_off = False
        session.in_call = True

    def _require_connected(self, message: str) -> Session:
        session = self.session
        if not session.is_connected or self._negotiator is None:
            raise InvalidState(message)
        return session

    async def _notify_peer(self, action: CallAction, **payload: Any) -> None:
        router = self._router
        if router is None:
            LOG.warning("Cannot send control message %s - not connected", action.value)
            return
        try:
            await router.notify(action, **payload)
        except SendFailure as exc:
            LOG.warning("Cannot send control message %s: %s", action.value, exc)

    def _report_media(self, outcome: MediaOutcome) -> None:
        for exc in outcome.errors:
            self._emit("error", code=getattr(exc, "code", type(exc).__name__), message=str(exc))

    # ------------------------------------------------------------------ session plumbing

    def _new_session(self, kind: TransportKind, role: SessionRole) -> Session:
        session = Session(transport_kind=kind, role=role)
        self.session = session
        LOG.info("Session %s created (%s, %s)", session.id, kind.value, role.value)
        return session

    def _build_direct(self, session: Session) -> TransportAdapter:
        transport = self._direct_factory(_SessionEvents(self, session), self.config.ice)
        session.transport = transport
        self._negotiator = MediaNegotiator(transport)
        return transport

    def _advance(self, session: Session, target: SessionState) -> bool:
        if not session.advance(target):
            return False
        LOG.info("Session %s -> %s", session.id, target.value)
        self._emit("state", state=target.value)
        return True

    def _ensure_current(self, session: Session) -> None:
        if self.session is not session:
            raise InvalidState("Session was replaced")

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        timeout = float(self.config.timeouts.remote_description or 0)
        if timeout <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)

    @asynccontextmanager
    async def _starting(self, session: Session, what: str) -> AsyncIterator[None]:
        """Tear the half-built session down if starting it fails."""

        try:
            yield
        except PairchatError:
            await self._teardown_if_current(session)
            raise
        except asyncio.TimeoutError as exc:
            await self._teardown_if_current(session)
            raise SignalingError(f"Timed out while {what}") from exc
        except Exception as exc:
            await self._teardown_if_current(session)
            raise SignalingError(f"Failed while {what}: {exc}") from exc

    async def _capture_initial_media(self, session: Session) -> None:
        media = self.config.media
        if not (media.audio or media.video):
            return
        captured = await self.capture.user_media(audio=media.audio, video=media.video)
        for denied in captured.denied:
            self._say(f"Could not access mic/cam: {denied}")
            self._report(denied)
        if self.session is not session:
            release(captured.tracks)
            return
        session.local_media = list(captured.tracks)
        session.camera_track = next(iter(captured.of_kind("video")), None)

    async def _publish_local(self, session: Session) -> None:
        if self.session is not session or not session.local_media or self._negotiator is None:
            return
        self._report_media(await self._negotiator.publish(session.local_media))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Background session task failed", exc_info=exc)
            self._emit("error", code=getattr(exc, "code", type(exc).__name__), message=str(exc))

    # ------------------------------------------------------------------ transport events

    def _on_transport_state(self, session: Session, state: str) -> None:
        LOG.debug("Session %s transport state %s", session.id, state)
        if state == STATE_CONNECTING:
            self._advance(session, SessionState.CONNECTING)
        elif state == STATE_CONNECTED:
            if self._advance(session, SessionState.CONNECTED):
                label = "Connected (pool)" if session.transport_kind is TransportKind.MATCHMAKING else "Connected"
                self._status(label)
        elif state in TERMINAL_TRANSPORT_STATES:
            self._on_terminal(session, state)

    def _on_terminal(self, session: Session, state: str) -> None:
        send_task, self._send_task = self._send_task, None
        if send_task is not None and not send_task.done():
            send_task.cancel()
        if self._engine is not None:
            self._engine.abort(f"connection {state}")
        target = SessionState.CLOSED if state == STATE_CLOSED else SessionState.DISCONNECTED
        self._advance(session, target)
        self._status("Disconnected")
        self._say("Stranger disconnected.")
        self._spawn(self._teardown_if_current(session))

    def _on_channel(self, session: Session, channel: RawChannel) -> None:
        if self._match_timer is not None:
            self._match_timer.cancel()
            self._match_timer = None
        session.channel = channel
        protocol = DataChannelProtocol(channel)
        self._protocol = protocol
        self._engine = FileTransferEngine(
            protocol,
            session.file_transfer,
            self.config.transfer,
            on_progress=self._on_file_progress,
            on_complete=self._on_file_complete,
            on_abort=self._on_file_abort,
        )
        self._router = CallSignalingRouter(protocol)
        if session.transport_kind is TransportKind.MATCHMAKING:
            self._say("Found a stranger! Connecting...")
            self._spawn(self._publish_local(session))

    def _on_channel_open(self, session: Session) -> None:
        session.channel_open = True
        self._say("You are now connected to a stranger. Say hi!")

    def _on_channel_close(self, session: Session) -> None:
        session.channel_open = False
        send_task, self._send_task = self._send_task, None
        if send_task is not None and not send_task.done():
            send_task.cancel()
        if self._engine is not None:
            self._engine.abort("channel closed")
        self._status("Channel closed")

    def _on_message(self, session: Session, payload: Any) -> None:
        try:
            message = parse_frame(payload)
        except ProtocolViolation as exc:
            LOG.warning("Dropping malformed frame: %s", exc)
            return

        engine = self._engine
        if engine is not None and engine.handle(message):
            return
        if isinstance(message, ControlMessage):
            event = self._router.route(message) if self._router is not None else None
            if event is not None:
                self._say(event.text)
                self._emit("call", **event.to_dict())
        elif isinstance(message, PlainTextMessage):
            self._say(message.text, STRANGER)
        else:
            LOG.warning("Dropping %s frame with no receiver", type(message).__name__)

    def _on_track(self, session: Session, track: Any) -> None:
        session.remote_media.append(track)
        self._emit("track", kind=getattr(track, "kind", None))

    def _on_transport_error(self, session: Session, error: BaseException) -> None:
        LOG.warning("Session %s transport error: %s", session.id, error)
        self._emit("error", code=getattr(error, "code", type(error).__name__), message=str(error))
        self._say(f"Connection error: {error}")

    # ------------------------------------------------------------------ transfer events

    def _on_file_progress(self, direction: TransferDirection, metadata: FileMetadata, progress: int) -> None:
        self._emit(
            "file-progress",
            direction=direction.value,
            name=metadata.name,
            size=metadata.size,
            progress=progress,
        )

    def _on_file_complete(self, artifact: ReceivedFile) -> None:
        self.artifacts[artifact.id] = artifact
        self._say(f"Received file: {artifact.name}")
        self._emit("file-received", **artifact.to_dict())

    def _on_file_abort(self, direction: TransferDirection, metadata: Optional[FileMetadata], reason: str) -> None:
        if direction is TransferDirection.SENDING:
            self._send_abort_reason = reason
        error = FileTransferAborted(reason)
        self._emit(
            "file-aborted",
            direction=direction.value,
            name=metadata.name if metadata else None,
            reason=reason,
        )
        self._report(error)


__all__ = ["ConnectionSupervisor"]
