"""
Tests for capability token issuing and verification.
"""
import base64
import hashlib
import hmac
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.cache import TTLCache
from services.tokens import (
    MediaKind,
    ProxyGrant,
    ProxyOptions,
    Quality,
    ResourceGrant,
    TokenCodec,
    detect_stream_type,
)

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def sign(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()[:12]
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def flip(char: str) -> str:
    return "A" if char != "A" else "B"


class TestResourceTokens:
    """Resource tokens wrap a cloud file ID and a quality."""

    def test_round_trip(self, codec):
        token = codec.issue_resource_token("file-123", "720p")
        grant = codec.verify(token)
        assert isinstance(grant, ResourceGrant)
        assert grant.resource_id == "file-123"
        assert grant.quality == Quality.P720

    def test_every_quality_round_trips(self, codec):
        for quality in Quality:
            grant = codec.verify(codec.issue_resource_token("file-123", quality))
            assert grant.quality == quality

    def test_unknown_quality_defaults_to_original(self, codec):
        token = codec.issue_resource_token("file-123", "8k-ultra")
        assert codec.verify(token).quality == Quality.ORIGINAL

    def test_missing_quality_defaults_to_original(self, codec):
        assert codec.verify(codec.issue_resource_token("file-123")).quality == Quality.ORIGINAL

    def test_token_is_url_safe(self, codec):
        token = codec.issue_resource_token("a/b+c=d e", "original")
        for forbidden in "/+= ":
            assert forbidden not in token

    def test_deterministic_for_a_fixed_clock(self, codec):
        first = codec.issue_resource_token("file-123", "480p")
        second = codec.issue_resource_token("file-123", "480p")
        assert first == second

    def test_issue_dispatches_on_option_type(self, codec):
        assert isinstance(codec.verify(codec.issue("file-123", "360p")), ResourceGrant)
        assert isinstance(codec.verify(codec.issue("https://cdn.example.com/a.mp4", ProxyOptions())), ProxyGrant)


class TestProxyTokens:
    """Proxy tokens wrap an external URL and an options bag."""

    def test_round_trip_with_options(self, codec):
        url = "https://cdn.example.com/live/index.m3u8?sig=a:b|c"
        options = ProxyOptions(buffering=False, proxy_enabled=True, media_kind=MediaKind.HLS)
        grant = codec.verify(codec.issue_proxy_token(url, options))
        assert isinstance(grant, ProxyGrant)
        assert grant.source_url == url
        assert grant.options == options

    def test_every_media_kind_round_trips(self, codec):
        for kind in MediaKind:
            options = ProxyOptions(media_kind=kind)
            grant = codec.verify(codec.issue_proxy_token("https://cdn.example.com/x", options))
            assert grant.options.media_kind == kind

    def test_typed_verification(self, codec):
        resource = codec.issue_resource_token("file-123")
        proxy = codec.issue_proxy_token("https://cdn.example.com/video.mp4")
        assert codec.verify_resource(proxy) is None
        assert codec.verify_proxy(resource) is None
        assert codec.verify_resource(resource) is not None
        assert codec.verify_proxy(proxy) is not None


class TestTokenRejection:
    """Invalid tokens verify to None and never raise."""

    def test_flipping_any_signature_character_invalidates(self, clock):
        codec = TokenCodec("test-secret", ttl_seconds=3600, clock=clock)
        token = codec.issue_resource_token("file-123", "720p")
        body, _, signature = token.rpartition(".")
        for i, char in enumerate(signature):
            mutated = signature[:i] + flip(char) + signature[i + 1:]
            assert codec.verify(f"{body}.{mutated}") is None

    def test_flipping_any_payload_character_invalidates(self, clock):
        codec = TokenCodec("test-secret", ttl_seconds=3600, clock=clock)
        token = codec.issue_proxy_token("https://cdn.example.com/video.mp4")
        body, _, signature = token.rpartition(".")
        for i, char in enumerate(body):
            if char == ".":
                continue
            mutated = body[:i] + flip(char) + body[i + 1:]
            assert codec.verify(f"{mutated}.{signature}") is None

    def test_other_secret_is_rejected(self, clock, codec):
        other = TokenCodec("another-secret", ttl_seconds=3600, clock=clock)
        assert codec.verify(other.issue_resource_token("file-123")) is None

    @pytest.mark.parametrize("token", [
        "",
        "garbage",
        "....",
        "r.abc",
        "x.Zm9v.o.1900000000.AAAAAAAAAAAAAAAA",
        "r.Zm9v.o.1900000000.AAAAAAAAAAAAAAAA",
        "r.Zm9v.o.1900000000",
        "p.Zm9v.3.g.1900000000.AAAAAAAAAAAAAAAA",
        "r.Zm9v.o.1900000000.AAAAAAAAAAAAAAAA.extra",
        "r.Zm9v.o.1900000000.ÄÄÄÄ",
    ])
    def test_malformed_tokens(self, codec, token):
        assert codec.verify(token) is None

    def test_wrong_field_count_with_valid_signature(self, codec):
        body = "r.Zm9v.o.1700003600.extra"
        assert codec.verify(f"{body}.{sign('test-secret', body)}") is None

    def test_non_numeric_expiry_with_valid_signature(self, codec):
        body = "r.Zm9v.o.soon"
        assert codec.verify(f"{body}.{sign('test-secret', body)}") is None

    def test_unknown_kind_with_valid_signature(self, codec):
        body = "z.Zm9v.o.1700003600"
        assert codec.verify(f"{body}.{sign('test-secret', body)}") is None

    def test_correctly_signed_token_from_same_format_verifies(self, codec):
        body = "r.Zm9v.720.1700003600"
        grant = codec.verify(f"{body}.{sign('test-secret', body)}")
        assert grant == ResourceGrant(resource_id="foo", quality=Quality.P720, expires_at=1700003600)

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("")


class TestTokenExpiry:
    """Expiry is checked against the codec's clock on every verification."""

    def test_valid_until_expiry(self, codec, clock):
        token = codec.issue_resource_token("file-123")
        clock.advance(3599)
        assert codec.verify(token) is not None

    def test_invalid_at_and_after_expiry(self, codec, clock):
        token = codec.issue_resource_token("file-123")
        clock.advance(3600)
        assert codec.verify(token) is None
        clock.advance(86400)
        assert codec.verify(token) is None

    def test_cached_token_still_expires(self, codec, clock):
        token = codec.issue_proxy_token("https://cdn.example.com/a.mp4")
        assert codec.verify(token) is not None  # now cached
        clock.advance(3601)
        assert codec.verify(token) is None


class TestAccelerationCache:
    """The cache only speeds things up; it never changes a verdict."""

    def test_verified_tokens_are_cached(self, codec):
        token = codec.issue_resource_token("file-123")
        codec.verify(token)
        assert codec.cache.get(token) is not None

    def test_clearing_cache_keeps_tokens_valid(self, codec):
        token = codec.issue_resource_token("file-123", "480p")
        first = codec.verify(token)
        codec.cache.clear()
        assert codec.verify(token) == first

    def test_tampered_tokens_are_not_cached(self, codec):
        token = codec.issue_resource_token("file-123")
        body, _, signature = token.rpartition(".")
        tampered = f"{body}.{flip(signature[0])}{signature[1:]}"
        assert codec.verify(tampered) is None
        assert codec.cache.get(tampered) is None

    def test_codec_without_cache(self, clock):
        codec = TokenCodec("test-secret", ttl_seconds=60, clock=clock, cache=None)
        token = codec.issue_resource_token("file-123")
        assert codec.verify(token) is not None

    def test_isolated_instances_do_not_share_cache(self, clock):
        a = TokenCodec("test-secret", ttl_seconds=60, clock=clock, cache=TTLCache(60, clock=clock))
        b = TokenCodec("test-secret", ttl_seconds=60, clock=clock, cache=TTLCache(60, clock=clock))
        token = a.issue_resource_token("file-123")
        a.verify(token)
        assert len(a.cache) == 1
        assert len(b.cache) == 0


class TestStreamTypeDetection:
    """Stream type is guessed from the source URL."""

    @pytest.mark.parametrize("url,expected", [
        ("https://cdn.example.com/live/index.m3u8", MediaKind.HLS),
        ("https://cdn.example.com/hls/stream", MediaKind.HLS),
        ("https://cdn.example.com/manifest.mpd", MediaKind.DASH),
        ("https://cdn.example.com/movie.MP4", MediaKind.MP4),
        ("https://cdn.example.com/clip.webm", MediaKind.WEBM),
        ("https://cdn.example.com/film.mkv", MediaKind.MKV),
        ("https://cdn.example.com/watch?v=1", MediaKind.GENERIC),
    ])
    def test_detect_stream_type(self, url, expected):
        assert detect_stream_type(url) == expected
