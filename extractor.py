"""Narrow async interface to the yt-dlp executable.

Three ways of running it: dump the metadata JSON, print the title, or write
the finished media to stdout. The first two are one-shot calls bounded by a
timeout; the third hands back a live :class:`pipeline.StreamSession`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from errors import DownloaderError, ExtractionFailed, MalformedMetadata, SpawnFailed
from media import FormatSelection, MediaLocator, VideoMetadata
from pipeline import DEFAULT_CHUNK_SIZE, SessionRegistry, StreamSession, excerpt

logger = logging.getLogger(__name__)

DEFAULT_METADATA_TIMEOUT = 30.0
DEFAULT_TITLE_TIMEOUT = 15.0


@dataclass
class ExtractorResult:
    returncode: Optional[int]
    stdout: bytes = b""
    stderr: bytes = b""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


class Extractor:
    def __init__(
        self,
        command: Sequence[str],
        metadata_timeout: float = DEFAULT_METADATA_TIMEOUT,
        title_timeout: float = DEFAULT_TITLE_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        registry: Optional[SessionRegistry] = None,
    ) -> None:
        if not command:
            raise ValueError("extractor command must not be empty")
        self.command = list(command)
        self.metadata_timeout = metadata_timeout
        self.title_timeout = title_timeout
        self.chunk_size = chunk_size
        self.registry = registry if registry is not None else SessionRegistry()

    def metadata_args(self, locator: MediaLocator) -> List[str]:
        return ["--dump-json", "--no-warnings", "--no-playlist", locator.url]

    def title_args(self, locator: MediaLocator) -> List[str]:
        return ["--get-title", "--no-warnings", "--no-playlist", locator.url]

    def stream_args(self, locator: MediaLocator, selection: FormatSelection) -> List[str]:
        return [
            "-f",
            selection.selector,
            "--no-playlist",
            "--no-warnings",
            "--quiet",
            *selection.extractor_args(),
            "-o",
            "-",
            locator.url,
        ]

    async def run(self, args: Sequence[str], timeout: Optional[float]) -> ExtractorResult:
        """Run yt-dlp to completion and collect its output.

        Raises SpawnFailed if the executable cannot be launched. A timeout kills
        the process and is reported through ``ExtractorResult.timed_out``.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnFailed(details=str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ExtractorResult(returncode=process.returncode, timed_out=True)
        finally:
            if process.returncode is None:
                process.kill()
        return ExtractorResult(returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def fetch_metadata(self, locator: MediaLocator) -> VideoMetadata:
        logger.info("[INFO] Fetching info for: %s", locator)
        try:
            result = await self.run(self.metadata_args(locator), self.metadata_timeout)
        except SpawnFailed as exc:
            logger.error("[INFO] Could not launch yt-dlp for %s: %s", locator, exc.details)
            raise SpawnFailed("Failed to fetch video information", details=exc.details) from exc

        if result.timed_out:
            details = f"yt-dlp timed out after {self.metadata_timeout:g}s"
            logger.error("[INFO] %s for %s", details, locator)
            raise ExtractionFailed("Failed to fetch video information", details=details, timed_out=True)
        if not result.ok:
            logger.error(
                "[INFO] yt-dlp failed (code %s) for %s: %s",
                result.returncode,
                locator,
                excerpt(result.stderr_text),
            )
            raise ExtractionFailed(
                "Failed to fetch video information",
                details=result.stderr_text or None,
                returncode=result.returncode,
            )

        try:
            document = json.loads(result.stdout_text)
        except ValueError as exc:
            logger.error("[INFO] Unparseable metadata for %s: %s", locator, exc)
            raise MalformedMetadata() from exc
        if not isinstance(document, dict):
            logger.error("[INFO] Metadata for %s is a %s, not an object", locator, type(document).__name__)
            raise MalformedMetadata()

        metadata = VideoMetadata.from_info(document)
        logger.info("[INFO] Available formats for %s: %s", locator, metadata.formats)
        return metadata

    async def fetch_title(self, locator: MediaLocator) -> Optional[str]:
        """Best-effort title lookup; any failure yields None."""
        try:
            result = await self.run(self.title_args(locator), self.title_timeout)
        except DownloaderError as exc:
            logger.warning("Title lookup could not start for %s: %s", locator, exc.details)
            return None
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exited with code {result.returncode}"
            logger.warning("Title lookup %s for %s", reason, locator)
            return None
        for line in result.stdout_text.splitlines():
            if line.strip():
                return line.strip()
        return None

    async def open_stream(
        self,
        locator: MediaLocator,
        selection: FormatSelection,
        filename: str,
        label: str = "Download",
    ) -> StreamSession:
        logger.info("[%s] URL: %s, Selector: %s", label.upper(), locator, selection.selector)
        return await StreamSession.spawn(
            [*self.command, *self.stream_args(locator, selection)],
            locator,
            selection,
            filename,
            label=label,
            chunk_size=self.chunk_size,
            registry=self.registry,
        )
