import json

from fake_ytdlp import CHUNK, CHUNKS

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _stream_args(args_log):
    calls = [json.loads(line) for line in args_log.read_text().splitlines()]
    return [argv for argv in calls if "-o" in argv]


def test_root_lists_endpoints(client):
    resp = client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert "GET /api/info?url=URL" in data["endpoints"]


def test_health_includes_versions(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "healthy"
    assert "yt_dlp" in data
    assert "ffmpeg" in data
    assert data["active_downloads"] == 0


def test_info_requires_url(client):
    resp = client.get("/api/info")
    assert resp.status_code == 400
    assert resp.json() == {"error": "URL parameter is required"}


def test_info_rejects_foreign_host(client, args_log):
    resp = client.get("/api/info", params={"url": "https://vimeo.com/12345"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid YouTube URL"
    assert not args_log.exists()


def test_info_ranks_available_formats(client, args_log):
    resp = client.get("/api/info", params={"url": VIDEO_URL})
    assert resp.status_code == 200
    assert resp.json() == {
        "title": "Fake Video",
        "thumbnail": "https://i.ytimg.com/vi/abc/hq720.jpg",
        "duration": "3:33",
        "channel": "Fake Channel",
        "view_count": 42,
        "formats": ["1080p", "720p", "360p", "144p", "mp3"],
    }
    argv = json.loads(args_log.read_text().splitlines()[0])
    assert argv == ["--dump-json", "--no-warnings", "--no-playlist", VIDEO_URL]


def test_info_applies_fallbacks(client, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_INFO", json.dumps({"formats": []}))
    resp = client.get("/api/info", params={"url": VIDEO_URL})
    assert resp.status_code == 200
    assert resp.json() == {
        "title": "Unknown Title",
        "thumbnail": "",
        "duration": "00:00",
        "channel": "Unknown Channel",
        "view_count": 0,
        "formats": ["mp3"],
    }


def test_info_reports_extraction_failure(client, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_INFO_EXIT", "1")
    resp = client.get("/api/info", params={"url": VIDEO_URL})
    assert resp.status_code == 500
    data = resp.json()
    assert data["error"] == "Failed to fetch video information"
    assert "Video unavailable" in data["details"]


def test_info_reports_malformed_document(client, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_INFO", "this is not json")
    resp = client.get("/api/info", params={"url": VIDEO_URL})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to parse video information"}


def test_download_streams_mp4_attachment(client, monkeypatch, args_log):
    monkeypatch.setenv("FAKE_YTDLP_TITLE", "My Video!! (2024) — Part #1")
    resp = client.get("/api/download", params={"url": VIDEO_URL, "quality": "1080"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.headers["content-disposition"] == 'attachment; filename="My_Video_2024_Part_1_1080p.mp4"'
    assert resp.content == CHUNK * CHUNKS

    argv = _stream_args(args_log)[0]
    assert argv[argv.index("-f") + 1] == "bv*[height<=1080]+ba/best[height<=1080]/best"
    assert argv[argv.index("--merge-output-format") + 1] == "mp4"
    assert argv[-3:] == ["-o", "-", VIDEO_URL]


def test_download_unknown_quality_falls_back_to_720(client, args_log):
    resp = client.get("/api/download", params={"url": VIDEO_URL, "quality": "999"})
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == 'attachment; filename="Fake_Video_720p.mp4"'
    argv = _stream_args(args_log)[0]
    assert argv[argv.index("-f") + 1] == "bv*[height<=720]+ba/best[height<=720]/best"


def test_download_title_failure_uses_generic_name(client, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_TITLE_EXIT", "1")
    resp = client.get("/api/download", params={"url": VIDEO_URL})
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == 'attachment; filename="video_720p.mp4"'


def test_download_failure_before_first_byte_returns_json(client, monkeypatch, fake_extractor):
    monkeypatch.setenv("FAKE_YTDLP_STREAM", "fail-before")
    resp = client.get("/api/download", params={"url": VIDEO_URL, "quality": "720"})
    assert resp.status_code == 500
    assert resp.headers["content-type"] == "application/json"
    assert "content-disposition" not in resp.headers
    data = resp.json()
    assert data["error"] == "Download failed"
    assert "Requested format is not available" in data["details"]
    assert len(fake_extractor.registry) == 0


def test_download_failure_after_first_byte_truncates(client, monkeypatch, fake_extractor):
    monkeypatch.setenv("FAKE_YTDLP_STREAM", "fail-after")
    resp = client.get("/api/download", params={"url": VIDEO_URL, "quality": "720"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.content == CHUNK
    assert len(fake_extractor.registry) == 0


def test_download_spawn_failure_returns_json(client, fake_extractor):
    fake_extractor.command = ["/nonexistent/yt-dlp"]
    resp = client.get("/api/download", params={"url": VIDEO_URL})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to start download"


def test_download_rejects_invalid_url_without_spawning(client, args_log):
    resp = client.get("/api/download", params={"url": "not a url"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid YouTube URL"
    assert not args_log.exists()


def test_audio_streams_mp3_attachment(client, args_log):
    resp = client.get("/api/audio", params={"url": "https://youtu.be/dQw4w9WgXcQ"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert resp.headers["content-disposition"] == 'attachment; filename="Fake_Video.mp3"'
    assert resp.content == CHUNK * CHUNKS

    argv = _stream_args(args_log)[0]
    assert argv[argv.index("-f") + 1] == "bestaudio/best"
    assert argv[argv.index("--audio-format") + 1] == "mp3"
    assert argv[argv.index("--audio-quality") + 1] == "192K"
    assert "-x" in argv


def test_audio_failure_before_first_byte_returns_json(client, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_STREAM", "fail-before")
    resp = client.get("/api/audio", params={"url": VIDEO_URL})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Audio download failed"


def test_download_rejected_while_shutting_down(client, fake_extractor):
    fake_extractor.registry.accepting = False
    resp = client.get("/api/download", params={"url": VIDEO_URL})
    assert resp.status_code == 503
    assert resp.json()["error"] == "Server is shutting down"
