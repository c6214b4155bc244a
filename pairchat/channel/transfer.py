"""
Chunked file transfer over the session channel.

A session runs at most one transfer at a time, in one direction.  The sender
holds the protocol's send lock for the whole metadata/chunks/complete run and
polls the channel's buffered byte count before every chunk.  The receiver
buffers chunks and only joins them once ``file-complete`` arrives.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import TransferConfig
from ..errors import FileTransferAborted, SendFailure
from ..session import FileMetadata, FileTransferState, ReceivedFile, TransferDirection
from .protocol import (
    DEFAULT_MIME_TYPE,
    FILE_COMPLETE,
    BinaryChunk,
    DataChannelProtocol,
    FileCompleteMessage,
    FileMetadataMessage,
    Message,
)

LOG = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferDirection, FileMetadata, int], None]
CompleteCallback = Callable[[ReceivedFile], None]
AbortCallback = Callable[[TransferDirection, Optional[FileMetadata], str], None]
Sleep = Callable[[float], Awaitable[None]]


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(done / total * 100)


class FileTransferEngine:
    def __init__(
        self,
        protocol: DataChannelProtocol,
        state: FileTransferState,
        config: Optional[TransferConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        on_abort: Optional[AbortCallback] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.protocol = protocol
        self.state = state
        self.config = config or TransferConfig()
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_abort = on_abort
        self._sleep = sleep
        # Bumped on every abort so a suspended sender notices it was cancelled.
        self._generation = 0

    # ------------------------------------------------------------------ sender

    async def send_file(self, name: str, data: bytes, mime_type: Optional[str] = None) -> FileMetadata:
        """
        Send ``data`` as one file and return its metadata once complete.

        Raises :class:`FileTransferAborted` when another transfer is running or
        the channel fails part way, and :class:`SendFailure` when the channel is
        not open to begin with.
        """

        if self.state.active:
            raise FileTransferAborted(f"Cannot send while {self.state.direction.value} another file")
        if not self.protocol.is_open:
            raise SendFailure("Channel is not open")

        payload = bytes(data)
        metadata = FileMetadata(name=name, size=len(payload), mime_type=mime_type or DEFAULT_MIME_TYPE)
        self.state.reset()
        self.state.direction = TransferDirection.SENDING
        self.state.metadata = metadata
        generation = self._generation
        chunk_size = max(1, int(self.config.chunk_size))
        LOG.info("Sending %s (%d bytes)", metadata.name, metadata.size)

        try:
            async with self.protocol.exclusive() as writer:
                self._ensure_current(generation)
                writer.send_json(metadata.to_wire())
                if metadata.size == 0:
                    self._progress(TransferDirection.SENDING, metadata, 0)
                for offset in range(0, metadata.size, chunk_size):
                    await self._wait_for_drain(generation)
                    chunk = payload[offset : offset + chunk_size]
                    writer.send(chunk)
                    self.state.sent_bytes += len(chunk)
                    self._progress(TransferDirection.SENDING, metadata, self.state.sent_bytes)
                self._ensure_current(generation)
                writer.send_json({"type": FILE_COMPLETE})
        except SendFailure as exc:
            if generation == self._generation:
                self.abort(f"channel failed while sending: {exc}")
            raise FileTransferAborted(f"Transfer of {metadata.name} aborted: {exc}") from exc
        except asyncio.CancelledError:
            if generation == self._generation:
                self.abort("send cancelled")
            raise

        self.state.reset()
        LOG.info("Sent %s", metadata.name)
        return metadata

    async def _wait_for_drain(self, generation: int) -> None:
        threshold = int(self.config.buffer_threshold)
        while True:
            self._ensure_current(generation)
            if not self.protocol.is_open:
                raise SendFailure("Channel closed")
            if self.protocol.buffered_amount <= threshold:
                return
            await self._sleep(self.config.poll_interval)

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise FileTransferAborted("Transfer aborted")

    # ---------------------------------------------------------------- receiver

    def handle(self, message: Message) -> bool:
        """Consume transfer frames; returns ``False`` for anything else."""

        if isinstance(message, FileMetadataMessage):
            self.handle_metadata(message.metadata)
        elif isinstance(message, BinaryChunk):
            self.handle_chunk(message.data)
        elif isinstance(message, FileCompleteMessage):
            self.handle_complete()
        else:
            return False
        return True

    def handle_metadata(self, metadata: FileMetadata) -> None:
        if self.state.direction is TransferDirection.SENDING:
            LOG.warning("Dropping incoming file %s while sending", metadata.name)
            return
        if self.state.direction is TransferDirection.RECEIVING:
            self.abort(f"superseded by {metadata.name}")
        self.state.reset()
        self.state.direction = TransferDirection.RECEIVING
        self.state.metadata = metadata
        LOG.info("Receiving %s (%d bytes)", metadata.name, metadata.size)
        self._progress(TransferDirection.RECEIVING, metadata, 0)

    def handle_chunk(self, data: bytes) -> None:
        state = self.state
        metadata = state.metadata
        if state.direction is not TransferDirection.RECEIVING or metadata is None:
            LOG.warning("Dropping %d byte chunk outside of a transfer", len(data))
            return
        if state.received_bytes + len(data) > metadata.size:
            self.abort(f"{metadata.name} exceeded its announced size of {metadata.size} bytes")
            return
        state.chunks.append(bytes(data))
        state.received_bytes += len(data)
        self._progress(TransferDirection.RECEIVING, metadata, state.received_bytes)

    def handle_complete(self) -> Optional[ReceivedFile]:
        state = self.state
        metadata = state.metadata
        if state.direction is not TransferDirection.RECEIVING or metadata is None:
            LOG.debug("Ignoring file-complete outside of a transfer")
            return None
        if state.received_bytes != metadata.size:
            self.abort(f"{metadata.name} completed with {state.received_bytes} of {metadata.size} bytes")
            return None
        data = b"".join(state.chunks)
        artifact = ReceivedFile(name=metadata.name, mime_type=metadata.mime_type, data=data)
        state.reset()
        LOG.info("Received %s", artifact.name)
        if self._on_complete is not None:
            self._on_complete(artifact)
        return artifact

    # ------------------------------------------------------------------- abort

    def abort(self, reason: str) -> bool:
        """Discard the active transfer, if any; returns whether one was active."""

        self._generation += 1
        state = self.state
        if not state.active:
            return False
        direction, metadata = state.direction, state.metadata
        state.reset()
        LOG.warning("File transfer aborted: %s", reason)
        if self._on_abort is not None:
            self._on_abort(direction, metadata, reason)
        return True

    def _progress(self, direction: TransferDirection, metadata: FileMetadata, done: int) -> None:
        if self._on_progress is not None:
            self._on_progress(direction, metadata, percent(done, metadata.size))


__all__ = ["FileTransferEngine", "percent"]
