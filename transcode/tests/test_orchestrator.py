"""
Tests for service/orchestrator.py

The orchestrator runs against the real database and filesystem storage with
the encoder replaced by a fake sandbox.
"""
from pathlib import Path
from unittest.mock import MagicMock, patch
import os
import tempfile

from django.test import TestCase

from transcode.models import JobState, SourceAsset, TranscodeJob
from transcode.service.config import TranscodeSettings
from transcode.service.errors import (
    AlreadyStarted,
    ConfigurationError,
    PublicationFailure,
    RaceDetected,
    SizeLimitExceeded,
    SourceUnavailable,
)
from transcode.service.orchestrator import (
    STATUS_ALREADY_STARTED,
    STATUS_ERRORED,
    STATUS_SUCCEEDED,
    STATUS_SUPERSEDED,
    TranscodeRequest,
    build_orchestrator,
)
from transcode.service.sandbox import SandboxResult
from transcode.service.state import JobStateStore
from transcode.service.storage import DerivativeStorage
from transcode.test_service.media_fixtures import fragmented_mp4


class FakeSandbox:
    """Writes payload to the output argument of every successful command"""

    def __init__(self, payload=b'x' * 1000, exit_code=0, output='', on_run=None):
        self.payload = payload
        self.exit_code = exit_code
        self.output = output
        self.on_run = on_run
        self.commands = []

    def run(self, argv, cwd=None, logger=None):
        self.commands.append(argv)
        if self.on_run:
            self.on_run(argv)
        if self.exit_code == 0 and argv[-1] != os.devnull:
            Path(argv[-1]).write_bytes(self.payload)
        return SandboxResult(exit_code=self.exit_code, output=self.output)


class OrchestratorTest(TestCase):
    """Test RunJob end to end"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self.tmp.name)
        source = self.tmp_dir / 'clip.webm'
        source.write_bytes(b'original')
        self.asset = SourceAsset.objects.create(
            name='clip.webm',
            path=str(source),
            mime_type='video/webm',
            duration=8.0,
            width=1920,
            height=1080,
            frame_rate=30.0,
        )
        self.settings = TranscodeSettings(
            derivative_dir=self.tmp_dir / 'derivatives',
            derivative_base_url='https://cdn.example.org',
            tmp_dir=self.tmp_dir,
            hard_size_limit_kib=3 * 1024 * 1024,
        )
        self.store = JobStateStore()
        self.purger = MagicMock()
        self.messages = []

    def tearDown(self):
        self.tmp.cleanup()

    def orchestrator(self, sandbox, settings=None):
        return build_orchestrator(
            settings=settings or self.settings,
            sandbox=sandbox,
            purger=self.purger,
            store=self.store,
        )

    def run_job(self, sandbox, variant_key='360p.vp9.webm', settings=None, **kwargs):
        request = TranscodeRequest(asset_id=self.asset.guid, variant_key=variant_key, **kwargs)
        return self.orchestrator(sandbox, settings).run(request, logger=self.messages.append)

    def job(self, variant_key='360p.vp9.webm'):
        return TranscodeJob.objects.get(asset=self.asset, variant_key=variant_key)

    def derivative(self, key):
        return self.tmp_dir / 'derivatives' / 'clip.webm' / f'clip.webm.{key}'

    def test_success(self):
        """Test a two-pass encode is published and recorded"""
        sandbox = FakeSandbox()

        outcome = self.run_job(sandbox)

        self.assertEqual(outcome.status, STATUS_SUCCEEDED)
        self.assertEqual(outcome.final_bitrate, 1000)
        self.assertEqual(len(sandbox.commands), 2)
        job = self.job()
        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(job.final_bitrate, 1000)
        self.assertEqual(self.derivative('360p.vp9.webm').read_bytes(), b'x' * 1000)
        self.purger.purge.assert_called_once()
        self.assertEqual(
            self.purger.purge.call_args.args[0],
            ['https://cdn.example.org/clip.webm/clip.webm.360p.vp9.webm'],
        )
        # The attempt's temp directory is gone
        self.assertEqual(
            [p.name for p in self.tmp_dir.iterdir() if p.name.startswith('transcode-')], []
        )

    def test_reset_and_rerun(self):
        """Test that rerunning a reset job reaches the same terminal state"""
        first = self.run_job(FakeSandbox(), variant_key='ogg')
        self.store.reset(self.asset.guid, 'ogg')
        second = self.run_job(FakeSandbox(), variant_key='ogg')

        self.assertEqual(first.status, STATUS_SUCCEEDED)
        self.assertEqual(second.status, STATUS_SUCCEEDED)
        self.assertEqual(first.final_bitrate, second.final_bitrate)
        self.assertEqual(self.job('ogg').final_bitrate, first.final_bitrate)

    def test_unknown_variant(self):
        """Test that keys outside the catalog fail without creating a job"""
        outcome = self.run_job(FakeSandbox(), variant_key='999p.webm')

        self.assertEqual(outcome.status, STATUS_ERRORED)
        self.assertIsInstance(outcome.error, ConfigurationError)
        self.assertFalse(TranscodeJob.objects.exists())

    def test_unknown_asset(self):
        request = TranscodeRequest(asset_id='missing', variant_key='ogg')
        outcome = self.orchestrator(FakeSandbox()).run(request)

        self.assertIsInstance(outcome.error, SourceUnavailable)
        self.assertFalse(TranscodeJob.objects.exists())

    def test_missing_source_file(self):
        """Test that a missing original is recorded without claiming"""
        Path(self.asset.path).unlink()
        sandbox = FakeSandbox()

        outcome = self.run_job(sandbox)

        self.assertIsInstance(outcome.error, SourceUnavailable)
        self.assertEqual(sandbox.commands, [])
        job = self.job()
        self.assertEqual(job.state, JobState.ERRORED)
        self.assertIsNone(job.started_at)
        self.assertIn('Source not found', job.error_message)

    def test_hard_size_limit(self):
        """Test that an oversized estimate fails before any encoder runs"""
        self.asset.duration = 120.0
        self.asset.save()
        settings = TranscodeSettings(
            derivative_dir=self.tmp_dir / 'derivatives',
            tmp_dir=self.tmp_dir,
            hard_size_limit_kib=5000,
        )
        sandbox = FakeSandbox()

        outcome = self.run_job(sandbox, variant_key='720p.vp9.webm', settings=settings,
                               manual_override=True)

        self.assertIsInstance(outcome.error, SizeLimitExceeded)
        self.assertEqual(sandbox.commands, [])
        self.assertEqual(self.job('720p.vp9.webm').state, JobState.ERRORED)
        self.assertIn('hard limit', self.job('720p.vp9.webm').error_message)

    def test_already_started(self):
        """Test that a duplicate dispatch leaves the running job alone"""
        token = self.store.claim(self.asset.guid, '360p.vp9.webm').value
        sandbox = FakeSandbox()

        outcome = self.run_job(sandbox)

        self.assertEqual(outcome.status, STATUS_ALREADY_STARTED)
        self.assertIsInstance(outcome.error, AlreadyStarted)
        self.assertEqual(sandbox.commands, [])
        job = self.job()
        self.assertEqual(job.state, JobState.IN_PROGRESS)
        self.assertEqual(job.started_at, token)

    def test_encode_failure_is_recorded(self):
        sandbox = FakeSandbox(exit_code=1, output='Unknown encoder libvpx-vp9')

        outcome = self.run_job(sandbox)

        self.assertEqual(outcome.status, STATUS_ERRORED)
        job = self.job()
        self.assertEqual(job.state, JobState.ERRORED)
        self.assertIn('Exitcode: 1', job.error_message)
        self.assertIn('Unknown encoder', job.error_message)
        self.assertFalse(self.derivative('360p.vp9.webm').exists())
        self.purger.purge.assert_not_called()

    def test_unexpected_exception_is_recorded(self):
        """Test that a crash inside a stage still finishes the job"""
        def crash(argv):
            raise RuntimeError('boom')

        outcome = self.run_job(FakeSandbox(on_run=crash))

        self.assertEqual(outcome.status, STATUS_ERRORED)
        job = self.job()
        self.assertEqual(job.state, JobState.ERRORED)
        self.assertTrue(job.error_message.startswith('Exception: boom'))

    def test_reset_during_encode_is_superseded(self):
        """Test that a job reset mid-encode discards the result"""
        def reset(argv):
            self.store.reset(self.asset.guid, 'ogg')

        outcome = self.run_job(FakeSandbox(on_run=reset), variant_key='ogg')

        self.assertEqual(outcome.status, STATUS_SUPERSEDED)
        self.assertIsInstance(outcome.error, RaceDetected)
        self.assertEqual(self.job('ogg').state, JobState.PENDING)
        self.assertFalse(self.derivative('ogg').exists())

    def test_failure_after_reset_is_recorded(self):
        """Test that a failed attempt whose job was reset records its error"""
        def reset(argv):
            self.store.reset(self.asset.guid, 'ogg')

        outcome = self.run_job(FakeSandbox(exit_code=1, on_run=reset), variant_key='ogg')

        self.assertEqual(outcome.status, STATUS_ERRORED)
        job = self.job('ogg')
        self.assertEqual(job.state, JobState.ERRORED)
        self.assertIsNone(job.started_at)

    def test_failure_after_reclaim_is_discarded(self):
        """Test that an old attempt never overwrites a newer attempt"""
        tokens = []

        def reset_and_reclaim(argv):
            self.store.reset(self.asset.guid, 'ogg')
            tokens.append(self.store.claim(self.asset.guid, 'ogg').value)

        outcome = self.run_job(FakeSandbox(exit_code=1, on_run=reset_and_reclaim), variant_key='ogg')

        self.assertEqual(outcome.status, STATUS_SUPERSEDED)
        job = self.job('ogg')
        self.assertEqual(job.state, JobState.IN_PROGRESS)
        self.assertEqual(job.started_at, tokens[0])
        self.assertEqual(job.error_message, '')

    def test_streaming_variant(self):
        """Test segmenting, playlist import and master playlist generation"""
        self.asset.duration = 35.0
        self.asset.save()
        payload = fragmented_mp4([10, 10, 10, 5])
        sandbox = FakeSandbox(payload=payload)

        outcome = self.run_job(sandbox, variant_key='360p.video.vp9.mp4')

        self.assertEqual(outcome.status, STATUS_SUCCEEDED, outcome.error)
        self.assertTrue(self.derivative('360p.video.vp9.mp4').is_file())
        playlist = self.derivative('360p.video.vp9.mp4.m3u8').read_text()
        self.assertEqual(playlist.count('#EXTINF:'), 4)
        self.assertIn('clip.webm.360p.video.vp9.mp4', playlist)
        master = (self.tmp_dir / 'derivatives' / 'clip.webm' / 'clip.webm.m3u8').read_text()
        self.assertIn('clip.webm.360p.video.vp9.mp4.m3u8', master)
        self.assertEqual(len(self.purger.purge.call_args.args[0]), 2)

    def test_streaming_segmenting_failure(self):
        """Test that unparseable encoder output fails the job"""
        outcome = self.run_job(FakeSandbox(payload=b'garbage'), variant_key='360p.video.vp9.mp4')

        self.assertEqual(outcome.status, STATUS_ERRORED)
        self.assertIn('Segmenting failed', self.job('360p.video.vp9.mp4').error_message)
        self.assertFalse(self.derivative('360p.video.vp9.mp4').exists())

    def test_streaming_playlist_import_failure(self):
        """Test that a failed playlist import fails the job and publishes nothing"""
        self.asset.duration = 35.0
        self.asset.save()
        stage_file = DerivativeStorage.stage_file

        def fail_playlist(storage, source, path):
            if path.endswith('.m3u8'):
                raise OSError('quota exceeded')
            return stage_file(storage, source, path)

        with patch.object(DerivativeStorage, 'stage_file', autospec=True, side_effect=fail_playlist):
            outcome = self.run_job(
                FakeSandbox(payload=fragmented_mp4([10, 10, 10, 5])), variant_key='360p.video.vp9.mp4'
            )

        self.assertEqual(outcome.status, STATUS_ERRORED)
        self.assertIsInstance(outcome.error, PublicationFailure)
        job = self.job('360p.video.vp9.mp4')
        self.assertEqual(job.state, JobState.ERRORED)
        self.assertIn('quota exceeded', job.error_message)
        self.assertFalse(self.derivative('360p.video.vp9.mp4').exists())
        self.assertFalse(self.derivative('360p.video.vp9.mp4.m3u8').exists())
        self.purger.purge.assert_not_called()

    def test_master_playlist_failure_keeps_success(self):
        """Test that a fault after the success is recorded doesn't turn it into an error"""
        self.asset.duration = 35.0
        self.asset.save()

        with patch.object(DerivativeStorage, 'write_text', side_effect=OSError('read-only')):
            outcome = self.run_job(
                FakeSandbox(payload=fragmented_mp4([10, 10, 10, 5])), variant_key='360p.video.vp9.mp4'
            )

        self.assertEqual(outcome.status, STATUS_SUCCEEDED)
        job = self.job('360p.video.vp9.mp4')
        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(job.final_bitrate, outcome.final_bitrate)
        self.assertTrue(self.derivative('360p.video.vp9.mp4').is_file())
        self.purger.purge.assert_called_once()
        self.assertIn('Failed to update master playlist: read-only', self.messages)

    def test_purge_crash_keeps_success(self):
        self.purger.purge.side_effect = RuntimeError('boom')

        outcome = self.run_job(FakeSandbox(), variant_key='ogg')

        self.assertEqual(outcome.status, STATUS_SUCCEEDED)
        job = self.job('ogg')
        self.assertEqual(job.state, JobState.SUCCEEDED)
        self.assertEqual(job.error_message, '')

    def test_remux_from_existing_derivative(self):
        """Test that remuxing copies the video stream of the alternate derivative"""
        alternate = self.derivative('360p.vp9.webm')
        alternate.parent.mkdir(parents=True)
        alternate.write_bytes(b'webm')
        sandbox = FakeSandbox(payload=fragmented_mp4([10, 5]))

        outcome = self.run_job(sandbox, variant_key='360p.video.vp9.mp4', remux=True)

        self.assertEqual(outcome.status, STATUS_SUCCEEDED, outcome.error)
        self.assertEqual(len(sandbox.commands), 1)
        argv = sandbox.commands[0]
        self.assertEqual(argv[argv.index('-i') + 1], str(alternate))
        self.assertEqual(argv[argv.index('-vcodec') + 1], 'copy')
        self.assertIn('Remuxing from existing derivative 360p.vp9.webm', self.messages)

    def test_outcome_to_dict(self):
        outcome = self.run_job(FakeSandbox(exit_code=1))
        data = outcome.to_dict()
        self.assertEqual(data['status'], 'errored')
        self.assertEqual(data['error_code'], 'sandbox-failure')
        self.assertIsNone(data['final_bitrate'])
