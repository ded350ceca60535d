"""Pure helpers: URL validation, variant ranking, format selection and filenames."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from errors import InvalidLocator

LOCATOR_PATTERN = re.compile(r"(https?://)?(www\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE)

AUDIO_TAG = "mp3"
DEFAULT_HEIGHT = 720
# Highest first; a format maps to the first threshold it meets.
HEIGHT_THRESHOLDS = (2160, 1440, 1080, 720, 360, 144)

# best split streams -> best combined stream at/below height -> unconstrained best
VIDEO_FALLBACK_CHAIN = ("bv*[height<={height}]+ba", "best[height<={height}]", "best")
AUDIO_SELECTOR = "bestaudio/best"
AUDIO_CODEC = "mp3"
AUDIO_QUALITY = "192K"

MAX_FILENAME_LENGTH = 100


@dataclass(frozen=True)
class MediaLocator:
    url: str

    def __str__(self) -> str:
        return self.url


def validate_locator(raw: Optional[str]) -> MediaLocator:
    """Return a MediaLocator for a plausible YouTube URL or raise InvalidLocator."""
    value = (raw or "").strip()
    if not value:
        raise InvalidLocator("URL parameter is required")
    if not LOCATOR_PATTERN.fullmatch(value):
        raise InvalidLocator("Invalid YouTube URL")
    return MediaLocator(value)


def variant_for_height(height: Any) -> Optional[str]:
    if isinstance(height, bool) or not isinstance(height, (int, float)):
        return None
    for threshold in HEIGHT_THRESHOLDS:
        if height >= threshold:
            return f"{threshold}p"
    return None


def rank_variants(formats: Optional[Iterable[Dict[str, Any]]]) -> List[str]:
    """Deduplicate the resolutions present in ``formats``, highest first, then the audio tag."""
    tags = set()
    for fmt in formats or []:
        if not isinstance(fmt, dict):
            continue
        tag = variant_for_height(fmt.get("height"))
        if tag:
            tags.add(tag)
    ranked = sorted(tags, key=lambda tag: int(tag[:-1]), reverse=True)
    ranked.append(AUDIO_TAG)
    return ranked


def format_duration(seconds: Any) -> Optional[str]:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds < 0:
        return None
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass
class VideoMetadata:
    title: str = "Unknown Title"
    thumbnail: str = ""
    duration: str = "00:00"
    uploader: str = "Unknown Channel"
    view_count: int = 0
    formats: List[str] = field(default_factory=lambda: [AUDIO_TAG])

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "VideoMetadata":
        view_count = info.get("view_count")
        if isinstance(view_count, bool) or not isinstance(view_count, int) or view_count < 0:
            view_count = 0
        return cls(
            title=info.get("title") or "Unknown Title",
            thumbnail=info.get("thumbnail") or "",
            duration=info.get("duration_string") or format_duration(info.get("duration")) or "00:00",
            uploader=info.get("uploader") or "Unknown Channel",
            view_count=view_count,
            formats=rank_variants(info.get("formats")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "channel": self.uploader,
            "view_count": self.view_count,
            "formats": list(self.formats),
        }


@dataclass(frozen=True)
class FormatSelection:
    selector: str
    container: str
    mime_type: str
    height: Optional[int] = None

    @property
    def is_audio(self) -> bool:
        return self.height is None

    def extractor_args(self) -> List[str]:
        """yt-dlp flags specific to this selection (output container or audio extraction)."""
        if self.is_audio:
            return ["-x", "--audio-format", AUDIO_CODEC, "--audio-quality", AUDIO_QUALITY]
        return ["--no-check-certificate", "--merge-output-format", self.container]


def parse_quality(quality: Optional[str]) -> int:
    token = (quality or "").strip().lower()
    if token.endswith("p"):
        token = token[:-1]
    if token.isdigit() and int(token) in HEIGHT_THRESHOLDS:
        return int(token)
    return DEFAULT_HEIGHT


def select_format(quality: Optional[str] = None, is_audio: bool = False) -> FormatSelection:
    if is_audio:
        return FormatSelection(selector=AUDIO_SELECTOR, container="mp3", mime_type="audio/mpeg")
    height = parse_quality(quality)
    selector = "/".join(step.format(height=height) for step in VIDEO_FALLBACK_CHAIN)
    return FormatSelection(selector=selector, container="mp4", mime_type="video/mp4", height=height)


def sanitize_title(title: str) -> str:
    """Strip everything but word characters, whitespace and hyphens; whitespace runs become '_'."""
    stripped = re.sub(r"[^\w\s-]", "", title)
    return re.sub(r"\s+", "_", stripped)[:MAX_FILENAME_LENGTH]


def build_filename(title: Optional[str], selection: FormatSelection) -> str:
    fallback = "audio" if selection.is_audio else "video"
    safe_title = sanitize_title(title.strip()) if title else ""
    safe_title = safe_title or fallback
    if selection.is_audio:
        return f"{safe_title}.{selection.container}"
    return f"{safe_title}_{selection.height}p.{selection.container}"


def content_disposition(filename: str) -> str:
    """Build an attachment header value; non-ASCII names get an RFC 5987 ``filename*``."""
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        ascii_name = filename.encode("ascii", "ignore").decode("ascii").strip("_") or "download"
        if ascii_name.startswith("."):
            ascii_name = f"download{ascii_name}"
        return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'
