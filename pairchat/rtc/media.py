"""
Local media capture and track negotiation.

Capture opens ffmpeg devices through aiortc's ``MediaPlayer``.  Negotiation
picks its code path from the active transport's capability record: transports
with per-kind senders get add/replace semantics, stream transports get
remove/add-stream semantics.  Every operation is best-effort per media kind.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from aiortc.contrib.media import MediaPlayer

from .. import CaptureConfig, MediaConfig
from ..errors import MediaAccessDenied
from .transport import TransportAdapter

LOG = logging.getLogger(__name__)

PlayerFactory = Callable[..., Any]


@dataclass
class CapturedMedia:
    tracks: List[Any] = field(default_factory=list)
    denied: List[MediaAccessDenied] = field(default_factory=list)

    def of_kind(self, kind: str) -> List[Any]:
        return [track for track in self.tracks if getattr(track, "kind", None) == kind]


@dataclass
class MediaOutcome:
    """Tracks that reached the transport and the per-track failures."""

    applied: List[Any] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class MediaCapture:
    """
    Open microphone, camera and screen sources.

    Devices are configured per kind (``media.microphone``, ``media.camera``,
    ``media.screen``) as ffmpeg ``device``/``format`` pairs, e.g.
    ``default``/``pulse`` or ``:0.0``/``x11grab``.
    """

    def __init__(self, config: Optional[MediaConfig] = None, *, player_factory: Optional[PlayerFactory] = None) -> None:
        self.config = config or MediaConfig()
        self._player_factory = player_factory or MediaPlayer

    async def user_media(self, *, audio: bool, video: bool) -> CapturedMedia:
        captured = CapturedMedia()
        if audio:
            await self._capture_into(captured, "microphone", self.config.microphone, "audio")
        if video:
            await self._capture_into(captured, "camera", self.config.camera, "video")
        return captured

    async def display_media(self) -> List[Any]:
        player = await self._open("screen", self.config.screen)
        tracks = [track for track in (player.video, player.audio) if track is not None]
        if not any(track.kind == "video" for track in tracks):
            for track in tracks:
                track.stop()
            raise MediaAccessDenied("Screen source produced no video track")
        return tracks

    async def _capture_into(
        self, captured: CapturedMedia, label: str, source: CaptureConfig, kind: str
    ) -> None:
        try:
            player = await self._open(label, source)
        except MediaAccessDenied as exc:
            captured.denied.append(exc)
            return
        track = player.audio if kind == "audio" else player.video
        if track is None:
            captured.denied.append(MediaAccessDenied(f"{label} produced no {kind} track"))
            return
        captured.tracks.append(track)

    async def _open(self, label: str, source: CaptureConfig) -> Any:
        if not source.device:
            raise MediaAccessDenied(f"No {label} device configured")
        try:
            return await asyncio.to_thread(
                self._player_factory,
                source.device,
                format=source.format,
                options=dict(source.options) or None,
            )
        except Exception as exc:
            raise MediaAccessDenied(f"Could not open {label} '{source.device}': {exc}") from exc


class MediaNegotiator:
    """
    Attach, replace and detach local tracks on the active transport.
    """

    def __init__(self, transport: TransportAdapter) -> None:
        self.transport = transport

    @property
    def replaces_tracks(self) -> bool:
        return self.transport.capabilities.replace_tracks

    async def publish(self, tracks: Sequence[Any]) -> MediaOutcome:
        """Send ``tracks``: replace an existing sender of the same kind, add otherwise."""

        outcome = MediaOutcome()
        if not tracks:
            return outcome
        if not self.replaces_tracks:
            try:
                await self.transport.attach_media(list(tracks))
            except Exception as exc:
                LOG.warning("Failed to add stream: %s", exc)
                outcome.errors.append(exc)
            else:
                outcome.applied.extend(tracks)
            return outcome

        for track in tracks:
            try:
                if not await self.transport.replace_media(track):
                    await self.transport.attach_media([track])
            except Exception as exc:
                LOG.warning("Failed to publish %s track: %s", getattr(track, "kind", "?"), exc)
                outcome.errors.append(exc)
            else:
                outcome.applied.append(track)
        return outcome

    async def swap(self, old_tracks: Sequence[Any], new_tracks: Sequence[Any]) -> MediaOutcome:
        """Replace the published local media with ``new_tracks`` and release the old ones."""

        errors: List[Exception] = []
        if old_tracks and not self.replaces_tracks:
            errors.extend(await self._detach(old_tracks))
        outcome = await self.publish(new_tracks)
        stale = [track for track in old_tracks if all(track is not fresh for fresh in new_tracks)]
        if self.replaces_tracks:
            # Senders of kinds absent from new_tracks still carry the old track.
            new_kinds = {getattr(track, "kind", None) for track in new_tracks}
            leftovers = [track for track in stale if getattr(track, "kind", None) not in new_kinds]
            errors.extend(await self._detach(leftovers))
        errors.extend(release(stale))
        outcome.errors[:0] = errors
        return outcome

    async def unpublish(self, tracks: Sequence[Any]) -> MediaOutcome:
        """Stop sending ``tracks`` and release them."""

        outcome = MediaOutcome()
        outcome.errors.extend(await self._detach(tracks))
        outcome.errors.extend(release(tracks))
        return outcome

    async def set_enabled(self, tracks: Sequence[Any], enabled: bool) -> MediaOutcome:
        """
        Mute or unmute ``tracks`` on the wire without releasing them.
        """

        outcome = MediaOutcome()
        if not tracks:
            return outcome
        if not self.replaces_tracks:
            try:
                if enabled:
                    await self.transport.attach_media(list(tracks))
                else:
                    await self.transport.detach_media(list(tracks))
            except Exception as exc:
                LOG.warning("Failed to toggle stream: %s", exc)
                outcome.errors.append(exc)
            else:
                outcome.applied.extend(tracks)
            return outcome

        for track in tracks:
            kind = getattr(track, "kind", None)
            try:
                if enabled:
                    if not await self.transport.replace_media(track):
                        await self.transport.attach_media([track])
                else:
                    await self.transport.detach_media([track])
            except Exception as exc:
                LOG.warning("Failed to toggle %s track: %s", kind, exc)
                outcome.errors.append(exc)
            else:
                outcome.applied.append(track)
        return outcome

    async def start_screen_share(self, screen_tracks: Sequence[Any], local_tracks: Sequence[Any]) -> MediaOutcome:
        """Put the screen video on the wire in place of the camera."""

        if self.replaces_tracks:
            screen_video = [track for track in screen_tracks if getattr(track, "kind", None) == "video"]
            return await self.publish(screen_video)

        errors: List[Exception] = []
        if local_tracks:
            errors.extend(await self._detach(local_tracks))
        outcome = await self.publish(screen_tracks)
        outcome.errors[:0] = errors
        return outcome

    async def stop_screen_share(
        self,
        screen_tracks: Sequence[Any],
        local_tracks: Sequence[Any],
        camera_track: Any = None,
    ) -> MediaOutcome:
        """
        Take the screen off the wire, release it and restore the camera track.

        ``camera_track`` is ``None`` when the camera is off; the video line is
        then left empty instead of restored.
        """

        outcome = MediaOutcome()
        if self.replaces_tracks:
            try:
                if camera_track is not None:
                    if await self.transport.replace_media(camera_track, kind="video"):
                        outcome.applied.append(camera_track)
                    else:
                        await self.transport.attach_media([camera_track])
                        outcome.applied.append(camera_track)
                else:
                    await self.transport.detach_media(
                        [track for track in screen_tracks if getattr(track, "kind", None) == "video"]
                    )
            except Exception as exc:
                LOG.warning("Failed to restore camera after screen share: %s", exc)
                outcome.errors.append(exc)
        else:
            outcome.errors.extend(await self._detach(screen_tracks))
            restore = [
                track
                for track in local_tracks
                if getattr(track, "kind", None) != "video" or track is camera_track
            ]
            if restore:
                republished = await self.publish(restore)
                outcome.applied.extend(republished.applied)
                outcome.errors.extend(republished.errors)
        outcome.errors.extend(release(screen_tracks))
        return outcome

    async def _detach(self, tracks: Sequence[Any]) -> List[Exception]:
        if not tracks:
            return []
        if not self.replaces_tracks:
            try:
                await self.transport.detach_media(list(tracks))
            except Exception as exc:
                LOG.warning("Failed to remove stream: %s", exc)
                return [exc]
            return []

        errors: List[Exception] = []
        for track in tracks:
            try:
                await self.transport.detach_media([track])
            except Exception as exc:
                LOG.warning("Failed to detach %s track: %s", getattr(track, "kind", "?"), exc)
                errors.append(exc)
        return errors


def release(tracks: Sequence[Any]) -> List[Exception]:
    """Stop every track; one failure does not keep the others running."""

    errors: List[Exception] = []
    for track in tracks:
        try:
            track.stop()
        except Exception as exc:
            LOG.exception("Failed to stop %s track", getattr(track, "kind", "?"))
            errors.append(exc)
    return errors


__all__ = [
    "CapturedMedia",
    "MediaCapture",
    "MediaNegotiator",
    "MediaOutcome",
    "release",
]
