import pathlib
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from test_scraper import EPISODE_URL, FakeSite, no_sleep  # reuse the fake upstream

from app.main import client_key, create_app
from app.settings import Settings
from app.stores import RateLimiter

PROXY = "http://testserver/video-proxy"

CORS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "authorization, x-client-info, apikey, content-type, range, accept",
    "access-control-allow-methods": "GET, POST, OPTIONS",
}


class Upstream:
    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="nope")
        if callable(route):
            return route(request)
        return route


def make_client(handler, **settings):
    settings.setdefault("extractors_json", "")
    app = create_app(Settings(**settings), transport=httpx.MockTransport(handler), sleep=no_sleep)
    return TestClient(app)


def assert_cors(resp):
    for k, v in CORS.items():
        assert resp.headers[k] == v


def test_options_preflight_anywhere():
    client = make_client(Upstream({}))
    for path in ("/video-proxy", "/scraper", "/whatever"):
        resp = client.options(path)
        assert resp.status_code == 204
        assert_cors(resp)
        assert resp.headers["access-control-expose-headers"] == "Content-Length, Content-Range, Content-Type"


def test_missing_and_malformed_url():
    client = make_client(Upstream({}))
    resp = client.get("/video-proxy")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing url parameter"}
    assert_cors(resp)

    resp = client.get("/video-proxy", params={"url": "not a url"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid URL format"}

    resp = client.get("/video-proxy", params={"url": "https://[::1/x"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid URL format"}
    assert_cors(resp)


def test_unparseable_referer_falls_back_to_target_origin():
    upstream = Upstream({"https://o.example/img.png": httpx.Response(200, content=b"png")})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={
        "url": "https://o.example/img.png", "type": "image", "referer": "http://[bad",
    })
    assert resp.status_code == 200
    assert resp.content == b"png"
    sent = upstream.requests[0]
    assert sent.headers["referer"] == "https://o.example"
    assert sent.headers["origin"] == "https://o.example"


def test_unparseable_embed_url_is_rejected():
    client = make_client(FakeSite())
    resp = client.get("/scraper", params={"embedUrl": "https://[::1/embed"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid embed URL format"}


def test_unknown_type_is_rejected():
    client = make_client(Upstream({}))
    resp = client.get("/video-proxy", params={"url": "https://o.example/x", "type": "exe"})
    assert resp.status_code == 400


def test_manifest_is_rewritten_through_proxy():
    manifest = (
        "#EXTM3U\n"
        "#EXT-X-KEY:METHOD=AES-128,URI=\"key.bin\"\n"
        "#EXTINF:10,\n"
        "segment1.ts\n"
    )
    upstream = Upstream({
        "https://o.example/path/index.m3u8": httpx.Response(
            200, text=manifest, headers={"Content-Type": "application/vnd.apple.mpegurl"}
        ),
    })
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={
        "url": "https://o.example/path/index.m3u8",
        "type": "video",
        "referer": "https://site.example/watch/1",
    })
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert_cors(resp)
    lines = resp.text.split("\n")
    ref_q = "&referer=https%3A%2F%2Fsite.example%2Fwatch%2F1"
    assert lines[0] == "#EXTM3U"
    assert lines[1] == f'#EXT-X-KEY:METHOD=AES-128,URI="{PROXY}?url=https%3A%2F%2Fo.example%2Fpath%2Fkey.bin&type=video{ref_q}"'
    assert lines[2] == "#EXTINF:10,"
    assert lines[3] == f"{PROXY}?url=https%3A%2F%2Fo.example%2Fpath%2Fsegment1.ts&type=video{ref_q}"

    sent = upstream.requests[0]
    assert sent.headers["referer"] == "https://site.example/watch/1"
    assert sent.headers["origin"] == "https://site.example"
    assert sent.headers["user-agent"].startswith("Mozilla/5.0")


def test_rewritten_child_url_reenters_proxy():
    upstream = Upstream({
        "https://o.example/path/index.m3u8": httpx.Response(200, text="#EXTM3U\nsegment1.ts\n"),
        "https://o.example/path/segment1.ts": httpx.Response(
            200, content=b"\x47" * 188, headers={"Content-Type": "video/mp2t"}
        ),
    })
    client = make_client(upstream)
    playlist = client.get("/video-proxy", params={"url": "https://o.example/path/index.m3u8", "type": "video"})
    child = playlist.text.split("\n")[1]
    assert child.startswith(PROXY)
    resp = client.get(child)
    assert resp.status_code == 200
    assert resp.content == b"\x47" * 188
    assert str(upstream.requests[-1].url) == "https://o.example/path/segment1.ts"
    assert upstream.requests[-1].headers["referer"] == "https://o.example"


def test_invalid_manifest_keeps_upstream_status():
    upstream = Upstream({
        "https://o.example/path/index.m3u8": httpx.Response(
            403, text="<html>Access denied</html>", headers={"Content-Type": "text/html"}
        ),
    })
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://o.example/path/index.m3u8", "type": "video"})
    assert resp.status_code == 403
    assert resp.text == "<html>Access denied</html>"
    assert resp.headers["content-type"].startswith("text/html")
    assert_cors(resp)
    assert len(upstream.requests) == 1


def test_configured_public_base_and_api_key_in_rewrite():
    upstream = Upstream({"https://o.example/a/b.m3u8": httpx.Response(200, text="#EXTM3U\nc.ts\n")})
    client = make_client(upstream, proxy_public_base="https://edge.example/functions/v1/video-proxy", proxy_api_key="anon")
    resp = client.get("/video-proxy", params={"url": "https://o.example/a/b.m3u8", "type": "video"})
    assert resp.text.split("\n")[1] == (
        "https://edge.example/functions/v1/video-proxy?url=https%3A%2F%2Fo.example%2Fa%2Fc.ts&type=video&apikey=anon"
    )


def test_video_range_request_is_relayed():
    def segment(request):
        assert request.headers["range"] == "bytes=0-3"
        return httpx.Response(
            206,
            content=b"abcd",
            headers={"Content-Type": "video/mp4", "Content-Range": "bytes 0-3/100"},
        )

    client = make_client(Upstream({"https://o.example/movie.mp4": segment}))
    resp = client.get(
        "/video-proxy",
        params={"url": "https://o.example/movie.mp4", "type": "video"},
        headers={"Range": "bytes=0-3"},
    )
    assert resp.status_code == 206
    assert resp.content == b"abcd"
    assert resp.headers["content-range"] == "bytes 0-3/100"
    assert resp.headers["content-length"] == "4"
    assert resp.headers["content-type"] == "video/mp4"


def test_video_error_status_is_not_masked():
    upstream = Upstream({"https://o.example/seg.ts": httpx.Response(404, content=b"gone")})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://o.example/seg.ts", "type": "video"})
    assert resp.status_code == 404


def test_video_content_type_is_relayed_unchanged():
    upstream = Upstream({
        "https://o.example/seg.ts": httpx.Response(
            200, content=b"\x47" * 188, headers={"Content-Type": "application/octet-stream"}
        ),
    })
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://o.example/seg.ts", "type": "video"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/octet-stream"
    assert resp.headers["cache-control"] == "public, max-age=3600"


def test_subtitle_content_type_is_inferred():
    upstream = Upstream({"https://o.example/subs/en.vtt": httpx.Response(200, text="WEBVTT\n")})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://o.example/subs/en.vtt", "type": "subtitle"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "text/vtt; charset=utf-8"
    assert resp.headers["cache-control"] == "public, max-age=86400"
    assert resp.text == "WEBVTT\n"


def test_api_upstream_error():
    upstream = Upstream({"https://api.example/v1/x": httpx.Response(404, text="missing")})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://api.example/v1/x", "type": "api"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Upstream error: 404"
    assert upstream.requests[0].headers["accept"] == "application/json"


def test_api_upstream_error_debug():
    upstream = Upstream({"https://api.example/v1/x": httpx.Response(403, text="blocked by waf")})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://api.example/v1/x", "type": "api", "debug": "1"})
    assert resp.status_code == 502
    body = resp.json()
    assert body["status"] == 403
    assert body["upstream"]["bodySnippet"] == "blocked by waf"
    assert body["url"] == "https://api.example/v1/x"


def test_inspect_echoes_request_without_upstream_call():
    upstream = Upstream({})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"debug": "1", "inspect": "1", "url": "https://o.example/x"},
                      headers={"X-Test": "1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["incomingHeaders"]["x-test"] == "1"
    assert body["targetUrl"] == "https://o.example/x"
    assert upstream.requests == []


def test_exhausted_retries_become_bad_gateway():
    upstream = Upstream({"https://api.example/flaky": lambda request: httpx.Response(503)})
    client = make_client(upstream)
    resp = client.get("/video-proxy", params={"url": "https://api.example/flaky"})
    assert resp.status_code == 502
    body = resp.json()
    assert "error" in body and "timestamp" in body
    assert len(upstream.requests) == 3
    assert_cors(resp)


def test_scraper_endpoint_returns_bundle():
    client = make_client(FakeSite())
    resp = client.get("/scraper", params={"episodeUrl": "naruto-1x2"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["forwardHeaders"]["Referer"] == EPISODE_URL
    assert "User-Agent" in body["forwardHeaders"]
    assert body["externalIds"] == {"anilistId": None, "malId": None}
    assert body["sources"][0]["isPlaylist"] is True
    assert body["sources"][0]["languageCode"] == "hi"
    assert_cors(resp)


def test_scraper_validation_errors():
    client = make_client(FakeSite())
    resp = client.get("/scraper")
    assert resp.status_code == 400
    assert "error" in resp.json()
    resp = client.get("/scraper", params={"episodeUrl": "https://watchanimeworld.in/series/naruto/"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid episode URL format"}
    resp = client.get("/scraper", params={"episodeUrl": "http://[bad/episode/naruto-1x2/"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid episode URL format"}


def test_scraper_rate_limit():
    client = make_client(FakeSite(), rate_limit=2)
    headers = {"X-Forwarded-For": "10.0.0.1, 172.16.0.1"}
    assert client.get("/scraper", params={"episodeUrl": "naruto-1x2"}, headers=headers).status_code == 200
    assert client.get("/scraper", params={"episodeUrl": "naruto-1x2"}, headers=headers).status_code == 200
    resp = client.get("/scraper", params={"episodeUrl": "naruto-1x2"}, headers=headers)
    assert resp.status_code == 429
    assert resp.json() == {"error": "Rate limit exceeded"}
    other = client.get("/scraper", params={"episodeUrl": "naruto-1x2"}, headers={"X-Forwarded-For": "10.0.0.2"})
    assert other.status_code == 200


def test_scraper_upstream_failure_has_timestamp():
    client = make_client(FakeSite(episode_status=500))
    resp = client.get("/scraper", params={"episodeUrl": "naruto-1x2"})
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"]
    assert body["timestamp"]


def test_scraper_embed_proxy():
    upstream = Upstream({
        "https://embed.example/e/1": httpx.Response(200, text="<html><head></head><body>player</body></html>"),
    })
    client = make_client(upstream)
    resp = client.get("/scraper", params={"embedUrl": "https://embed.example/e/1"})
    assert resp.status_code == 200
    assert resp.headers["x-frame-options"] == "ALLOWALL"
    assert resp.headers["content-security-policy"] == "frame-ancestors *"
    assert "player" in resp.text


def test_health_reports_settings():
    client = make_client(Upstream({}), cache_ttl=120)
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["cacheTtl"] == 120
    assert body["cacheEntries"] == 0


@pytest.mark.parametrize("headers, expected", [
    ({"x-forwarded-for": "1.1.1.1, 2.2.2.2"}, "1.1.1.1"),
    ({"cf-connecting-ip": "3.3.3.3"}, "3.3.3.3"),
    ({}, "testclient"),
])
def test_client_key(headers, expected):
    from starlette.requests import Request

    raw = [(k.encode(), v.encode()) for k, v in headers.items()]
    req = Request({"type": "http", "headers": raw, "client": ("testclient", 123)})
    assert client_key(req) == expected


@pytest.mark.asyncio
async def test_cancel_on_disconnect_cancels_work():
    import asyncio
    import types

    from app.errors import ClientDisconnected
    from app.main import cancel_on_disconnect

    cancelled = []

    async def work():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    class GoneRequest:
        url = types.SimpleNamespace(path="/scraper")

        async def is_disconnected(self):
            return True

    with pytest.raises(ClientDisconnected):
        await cancel_on_disconnect(GoneRequest(), work(), poll=0.01)
    await asyncio.sleep(0.01)
    assert cancelled == [True]
