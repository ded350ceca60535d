"""Subprocess-backed streaming of yt-dlp output into an HTTP response.

A download goes through two phases:

- ``StreamSession.prime`` runs while the route handler still owns the
  request. It waits for the first stdout chunk (or for yt-dlp to exit) so
  that an early failure can still be answered with a JSON error instead of
  an empty attachment.
- ``SessionStreamingResponse`` then forwards the primed chunk and the rest
  of stdout. Once the first chunk is on the wire the response is committed;
  a later failure only ends the body and is logged.

stderr is drained by its own task for the whole lifetime of the process so
a chatty yt-dlp never blocks on a full pipe. If the client goes away at any
point the subprocess is killed outright.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Set

from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from errors import ClientAborted, ExtractionFailed, ServiceUnavailable, SpawnFailed
from media import FormatSelection, MediaLocator

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 256
STDERR_LIMIT = 64 * 1024
STDERR_EXCERPT = 500
REAP_TIMEOUT = 5.0
# yt-dlp hands merging and audio extraction to ffmpeg; kill its whole group.
KILL_PROCESS_GROUP = hasattr(os, "killpg")


def excerpt(text: str, limit: int = STDERR_EXCERPT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


async def wait_for_disconnect(receive: Receive) -> None:
    """Return once the ASGI server reports that the client has gone."""
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


class SessionState(str, Enum):
    SPAWNED = "spawned"
    STREAMING = "streaming"
    COMMITTED = "committed"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = {SessionState.COMPLETED, SessionState.FAILED, SessionState.ABORTED}


class SessionRegistry:
    """Live sessions, so health can count them and shutdown can kill them."""

    def __init__(self) -> None:
        self._sessions: Set["StreamSession"] = set()
        self.accepting = True

    def __len__(self) -> int:
        return len(self._sessions)

    def ensure_accepting(self) -> None:
        if not self.accepting:
            raise ServiceUnavailable()

    def add(self, session: "StreamSession") -> None:
        self._sessions.add(session)

    def discard(self, session: "StreamSession") -> None:
        self._sessions.discard(session)

    async def shutdown(self, grace: float) -> None:
        """Stop accepting sessions, give running ones ``grace`` seconds, then kill the rest."""
        self.accepting = False
        sessions = list(self._sessions)
        if not sessions:
            return
        logger.info("Shutdown: waiting up to %.1fs for %d active download(s)", grace, len(sessions))
        waiters = [asyncio.ensure_future(session.process.wait()) for session in sessions]
        _, pending = await asyncio.wait(waiters, timeout=grace)
        for waiter in pending:
            waiter.cancel()
        for session in sessions:
            if session.running:
                logger.warning("Shutdown: killing yt-dlp (pid %s) for %s", session.pid, session.locator)
                session.kill(SessionState.ABORTED)
            await session.close()


class StreamSession:
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        locator: MediaLocator,
        selection: FormatSelection,
        filename: str,
        label: str = "Download",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        registry: Optional[SessionRegistry] = None,
    ) -> None:
        self.process = process
        self.locator = locator
        self.selection = selection
        self.filename = filename
        self.label = label
        self.chunk_size = chunk_size
        self.registry = registry
        self.state = SessionState.SPAWNED
        self.first_chunk: Optional[bytes] = None
        self.has_emitted_first_byte = False
        self.bytes_sent = 0
        self._stderr: List[bytes] = []
        self._stderr_size = 0
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        if registry is not None:
            registry.add(self)

    @classmethod
    async def spawn(
        cls,
        command: Sequence[str],
        locator: MediaLocator,
        selection: FormatSelection,
        filename: str,
        label: str = "Download",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        registry: Optional[SessionRegistry] = None,
    ) -> "StreamSession":
        if registry is not None:
            registry.ensure_accepting()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=KILL_PROCESS_GROUP,
            )
        except OSError as exc:
            logger.error("[%s] Could not launch %s for %s: %s", label.upper(), command[0], locator, exc)
            raise SpawnFailed(f"Failed to start {label.lower()}", details=str(exc)) from exc
        logger.debug("[%s] Spawned yt-dlp pid %s for %s", label.upper(), process.pid, locator)
        return cls(process, locator, selection, filename, label=label, chunk_size=chunk_size, registry=registry)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def stderr_text(self) -> str:
        return b"".join(self._stderr).decode("utf-8", errors="replace")

    async def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            data = await stream.read(4096)
            if not data:
                return
            self._stderr.append(data)
            self._stderr_size += len(data)
            while self._stderr_size > STDERR_LIMIT and len(self._stderr) > 1:
                self._stderr_size -= len(self._stderr.pop(0))

    async def _collect_exit(self) -> int:
        returncode = await self.process.wait()
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            # a leftover ffmpeg can hold stderr open after yt-dlp exits
            logger.warning("stderr of yt-dlp pid %s still open after exit", self.pid)
        return returncode

    async def prime(self, disconnected: Optional[Callable[[], Awaitable[Any]]] = None) -> None:
        """Wait for the first stdout chunk before any response is committed.

        Raises ExtractionFailed if yt-dlp exits non-zero without output, and
        ClientAborted if ``disconnected`` resolves first. A zero exit with no
        output leaves the session Completed with an empty body.
        """
        assert self.process.stdout is not None
        read = asyncio.ensure_future(self.process.stdout.read(self.chunk_size))
        watcher = asyncio.ensure_future(disconnected()) if disconnected is not None else None
        try:
            waiters = {read} if watcher is None else {read, watcher}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            read.cancel()
            self.kill(SessionState.ABORTED)
            await self.close()
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        if not read.done():
            read.cancel()
            self.kill(SessionState.ABORTED)
            logger.info("[%s] Client disconnected before first byte, killed yt-dlp for %s", self.label.upper(), self.locator)
            await self.close()
            raise ClientAborted()

        chunk = read.result()
        if chunk:
            self.first_chunk = chunk
            self.has_emitted_first_byte = True
            self.state = SessionState.STREAMING
            logger.info("[%s] Started streaming %s (format %s)", self.label.upper(), self.filename, self.selection.selector)
            return

        returncode = await self._collect_exit()
        await self.close()
        if returncode != 0:
            self.state = SessionState.FAILED
            stderr = self.stderr_text.strip()
            logger.error(
                "[%s] yt-dlp failed (code %s) before first byte for %s (format %s): %s",
                self.label.upper(),
                returncode,
                self.locator,
                self.selection.selector,
                excerpt(stderr),
            )
            raise ExtractionFailed(f"{self.label} failed", details=stderr or None, returncode=returncode)
        self.state = SessionState.COMPLETED
        logger.warning("[%s] yt-dlp exited cleanly without output for %s", self.label.upper(), self.locator)

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield the primed chunk and the rest of stdout, one read at a time."""
        try:
            if self.first_chunk is not None:
                chunk, self.first_chunk = self.first_chunk, None
                self.state = SessionState.COMMITTED
                self.bytes_sent += len(chunk)
                yield chunk
            if self.state in TERMINAL_STATES:
                return
            assert self.process.stdout is not None
            while True:
                chunk = await self.process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                self.bytes_sent += len(chunk)
                yield chunk
            returncode = await self._collect_exit()
            self._finish(returncode)
        finally:
            if self.running:
                self.kill(SessionState.ABORTED)
                logger.info(
                    "[%s] Stream closed after %d bytes, killed yt-dlp for %s",
                    self.label.upper(),
                    self.bytes_sent,
                    self.locator,
                )

    def _finish(self, returncode: int) -> None:
        if self.state is SessionState.ABORTED:
            return
        if returncode == 0:
            self.state = SessionState.COMPLETED
            logger.info("[%s] Completed successfully: %s (%d bytes)", self.label.upper(), self.filename, self.bytes_sent)
            return
        self.state = SessionState.FAILED
        # The response is already committed; all we can do is end the body and log.
        logger.error(
            "[%s] yt-dlp failed (code %s) after %d bytes were sent for %s: %s",
            self.label.upper(),
            returncode,
            self.bytes_sent,
            self.locator,
            excerpt(self.stderr_text),
        )

    def kill(self, state: SessionState = SessionState.ABORTED) -> None:
        """Send SIGKILL to yt-dlp and whatever is left in its process group."""
        try:
            if KILL_PROCESS_GROUP:
                # ffmpeg may outlive yt-dlp, so signal the group even after yt-dlp exited
                os.killpg(self.process.pid, signal.SIGKILL)
            elif self.running:
                self.process.kill()
            else:
                return
        except ProcessLookupError:
            return
        if self.state not in TERMINAL_STATES:
            self.state = state

    async def close(self) -> None:
        """Kill if still running, reap the process and forget the session."""
        self.kill(SessionState.ABORTED)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error("yt-dlp pid %s did not exit after SIGKILL", self.pid)
        if not self._stderr_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=REAP_TIMEOUT)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()
        if self.registry is not None:
            self.registry.discard(self)


class SessionStreamingResponse(StreamingResponse):
    """StreamingResponse that owns a StreamSession and kills it when the client leaves."""

    def __init__(self, session: StreamSession, **kwargs: Any) -> None:
        self.session = session
        self._chunks = session.iter_chunks()
        super().__init__(self._chunks, **kwargs)

    async def _abort_on_disconnect(self, receive: Receive) -> None:
        await wait_for_disconnect(receive)
        if self.session.running:
            self.session.kill(SessionState.ABORTED)
            logger.info(
                "[%s] Client disconnected after %d bytes, killed yt-dlp for %s",
                self.session.label.upper(),
                self.session.bytes_sent,
                self.session.locator,
            )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        watcher = asyncio.ensure_future(self._abort_on_disconnect(receive))
        try:
            await super().__call__(scope, receive, send)
        finally:
            watcher.cancel()
            await self._chunks.aclose()
            await self.session.close()
