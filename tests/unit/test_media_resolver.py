"""Tests for line_bridge/media/resolver.py — canonical media type resolution.

Covers:
- Sniffed type beats declared type and provider tags
- Declared type used only when it matches the expected category
- Category defaults and the "bin" extension fallback
- Filename generation
- Per-category size ceilings
"""

from __future__ import annotations

import os

import pytest

from line_bridge.media.resolver import (
    DEFAULT_MIME_BY_CATEGORY,
    MediaTypeResolver,
    extension_for,
    matches_category,
    normalize_mime,
)
from line_bridge.models import MediaCategory


@pytest.fixture
def resolver() -> MediaTypeResolver:
    return MediaTypeResolver({"image": 1000, "video": 5000, "audio": 5000, "file": 2000})


# ---------------------------------------------------------------------------
# Precedence
# ---------------------------------------------------------------------------


class TestPrecedence:

    def test_sniffed_png_beats_provider_tag(self, resolver):
        descriptor = resolver.resolve("line", "image/png", MediaCategory.IMAGE, source_message_id="123")
        assert descriptor.canonical_mime_type == "image/png"
        assert descriptor.extension == "png"
        assert descriptor.generated_filename == "image_123.png"

    def test_sniffed_beats_wrong_declared(self, resolver):
        descriptor = resolver.resolve("image/jpeg", "image/png", MediaCategory.IMAGE, "9")
        assert descriptor.canonical_mime_type == "image/png"

    def test_sniffed_wins_even_outside_category(self, resolver):
        descriptor = resolver.resolve(None, "application/pdf", MediaCategory.IMAGE, "9")
        assert descriptor.canonical_mime_type == "application/pdf"
        assert descriptor.generated_filename == "image_9.pdf"

    def test_generic_sniffed_falls_through_to_declared(self, resolver):
        descriptor = resolver.resolve("video/quicktime", "application/octet-stream", MediaCategory.VIDEO, "7")
        assert descriptor.canonical_mime_type == "video/quicktime"
        assert descriptor.extension == "mov"

    def test_declared_outside_category_ignored(self, resolver):
        descriptor = resolver.resolve("audio/mpeg", None, MediaCategory.VIDEO, "7")
        assert descriptor.canonical_mime_type == "video/mp4"

    def test_declared_with_parameters_is_normalized(self, resolver):
        descriptor = resolver.resolve("Audio/MP4; codecs=mp4a", None, MediaCategory.AUDIO, "5")
        assert descriptor.canonical_mime_type == "audio/m4a"
        assert descriptor.extension == "m4a"

    def test_file_category_accepts_text_and_application(self, resolver):
        assert resolver.resolve("text/csv", None, MediaCategory.FILE, "1").extension == "csv"
        assert resolver.resolve("application/zip", None, MediaCategory.FILE, "1").extension == "zip"

    @pytest.mark.parametrize("category", list(MediaCategory))
    def test_nothing_usable_gives_category_default(self, resolver, category):
        descriptor = resolver.resolve("line", None, category, "42")
        assert descriptor.canonical_mime_type == DEFAULT_MIME_BY_CATEGORY[category]

    def test_file_default_uses_bin_extension(self, resolver):
        descriptor = resolver.resolve("external", None, MediaCategory.FILE, "42")
        assert descriptor.canonical_mime_type == "application/octet-stream"
        assert descriptor.generated_filename == "file_42.bin"

    def test_unknown_category_string_treated_as_file(self, resolver):
        descriptor = resolver.resolve(None, None, "hologram", "1")
        assert descriptor.generated_filename == "file_1.bin"


# ---------------------------------------------------------------------------
# Sniffing
# ---------------------------------------------------------------------------


class TestSniff:

    def test_png_magic_bytes(self, resolver, png_bytes):
        assert resolver.sniff(png_bytes) == "image/png"

    def test_jpeg_magic_bytes(self, resolver, jpeg_bytes):
        assert resolver.sniff(jpeg_bytes) == "image/jpeg"

    def test_empty_content(self, resolver):
        assert resolver.sniff(b"") is None
        assert resolver.sniff(None) is None

    def test_arbitrary_bytes_never_raise(self, resolver):
        for size in (1, 7, 64, 4096):
            content = os.urandom(size)
            descriptor = resolver.resolve(None, resolver.sniff(content), MediaCategory.FILE, "x", size)
            assert descriptor.extension


# ---------------------------------------------------------------------------
# Helpers and limits
# ---------------------------------------------------------------------------


class TestHelpers:

    def test_normalize_mime_aliases(self):
        assert normalize_mime("image/jpg") == "image/jpeg"
        assert normalize_mime("  ") is None
        assert normalize_mime(None) is None

    def test_extension_fallback(self):
        assert extension_for("application/x-unheard-of") == "bin"
        assert extension_for(None) == "bin"

    def test_matches_category(self):
        assert matches_category("image/webp", MediaCategory.IMAGE)
        assert not matches_category("image/webp", MediaCategory.FILE)
        assert matches_category("text/plain", MediaCategory.FILE)


class TestSizeLimits:

    def test_within_and_over_limit(self, resolver):
        assert resolver.within_limit(MediaCategory.IMAGE, 1000)
        assert not resolver.within_limit(MediaCategory.IMAGE, 1001)
        assert resolver.within_limit("video", 1001)

    def test_descriptor_carries_limit_flag(self, resolver):
        descriptor = resolver.resolve(None, "image/png", MediaCategory.IMAGE, "1", size_bytes=5000)
        assert descriptor.size_bytes == 5000
        assert descriptor.within_platform_limit is False

    def test_no_configured_limit_means_unbounded(self):
        assert MediaTypeResolver().within_limit(MediaCategory.FILE, 10 ** 12)
