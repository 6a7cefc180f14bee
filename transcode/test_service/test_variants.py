"""
Tests for service/variants.py
"""
from django.test import SimpleTestCase
from dataclasses import replace

from transcode.service.errors import ConfigurationError
from transcode.service.variants import (
    DERIVATIVES,
    VariantCatalog,
    expand_rate,
    is_base_media_format,
)


class ExpandRateTest(SimpleTestCase):
    """Tests for bitrate suffix expansion"""

    def test_suffixes(self):
        self.assertEqual(expand_rate('512k'), 512000)
        self.assertEqual(expand_rate('1.2m'), 1200000)
        self.assertEqual(expand_rate('1G'), 1000000000)
        self.assertEqual(expand_rate('96000'), 96000)
        self.assertEqual(expand_rate(64000), 64000)

    def test_invalid_rate_raises(self):
        with self.assertRaises(ValueError):
            expand_rate('fast')


class VariantSpecTest(SimpleTestCase):
    """Tests for derived VariantSpec properties"""

    def setUp(self):
        self.catalog = VariantCatalog.load()

    def test_extension(self):
        self.assertEqual(self.catalog.get('720p.vp9.webm').extension, 'webm')
        self.assertEqual(self.catalog.get('ogg').extension, 'ogg')
        self.assertEqual(self.catalog.get('stereo.audio.opus.mp4').extension, 'mp4')

    def test_base_media_formats(self):
        self.assertTrue(is_base_media_format('.MOV'))
        self.assertTrue(self.catalog.get('m4a').is_base_media_format)
        self.assertFalse(self.catalog.get('stereo.audio.mp3').is_base_media_format)

    def test_streaming_variants(self):
        """Test that only HLS variants are listed as streaming"""
        keys = [spec.key for spec in self.catalog.streaming_variants()]
        self.assertIn('360p.video.vp9.mp4', keys)
        self.assertIn('stereo.audio.mp3', keys)
        self.assertNotIn('360p.vp9.webm', keys)

    def test_streaming_video_remuxes_from_webm(self):
        spec = self.catalog.get('480p.video.vp9.mp4')
        self.assertEqual(spec.remux_from, ('480p.vp9.webm',))
        self.assertTrue(spec.noaudio)

    def test_keys_are_unique(self):
        keys = [spec.key for spec in DERIVATIVES]
        self.assertEqual(len(keys), len(set(keys)))


class VariantCatalogTest(SimpleTestCase):
    """Tests for the variant catalog"""

    def test_load_all(self):
        catalog = VariantCatalog.load()
        self.assertEqual(len(catalog), len(DERIVATIVES))
        self.assertIn('1080p.mp4', catalog)

    def test_load_enabled_subset(self):
        """Test that enabled keys restrict the catalog"""
        catalog = VariantCatalog.load(['360p.vp9.webm', 'ogg'])
        self.assertEqual(sorted(catalog.keys()), ['360p.vp9.webm', 'ogg'])
        self.assertNotIn('720p.vp9.webm', catalog)
        self.assertIsNone(catalog.get('720p.vp9.webm'))

    def test_load_unknown_key_raises(self):
        """Test that a typo in the enabled list is a configuration error"""
        with self.assertRaises(ConfigurationError) as ctx:
            VariantCatalog.load(['360p.vp9.webm', '360p.av1.webm'])
        self.assertIn('360p.av1.webm', str(ctx.exception))

    def test_lookup_unknown_key(self):
        result = VariantCatalog.load().lookup('999p.webm')
        self.assertFalse(result.is_ok)
        self.assertIsInstance(result.error, ConfigurationError)
        self.assertEqual(result.error.message, 'Transcode key 999p.webm not found, skipping')

    def test_lookup_inconsistent_track_options(self):
        """Test that a variant without a codec for its track fails lookup"""
        ogg = VariantCatalog.load().get('ogg')
        catalog = VariantCatalog([replace(ogg, audio_codec=None)])
        result = catalog.lookup('ogg')
        self.assertIsInstance(result.error, ConfigurationError)
        self.assertIn('Invalid audio track options', result.error.message)

    def test_lookup_known_key(self):
        result = VariantCatalog.load().lookup('opus')
        self.assertTrue(result.is_ok)
        self.assertEqual(result.value.audio_codec, 'opus')

    def test_catalog_is_read_only(self):
        catalog = VariantCatalog.load()
        with self.assertRaises(TypeError):
            catalog._variants['new'] = None

    def test_sort_keys(self):
        """Test codec preference then descending natural order"""
        catalog = VariantCatalog.load()
        keys = ['ogg', '360p.webm', '720p.vp9.webm', '1080p.vp9.webm', 'mp3', 'unknown']
        self.assertEqual(
            catalog.sort_keys(keys),
            ['1080p.vp9.webm', '720p.vp9.webm', '360p.webm', 'mp3', 'ogg', 'unknown'],
        )
