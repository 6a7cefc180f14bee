"""
Tests for the transcode management command
"""
from io import StringIO
from unittest.mock import patch
import json

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from transcode.models import SourceAsset
from transcode.service.orchestrator import STATUS_SUCCEEDED, JobOutcome
from transcode.service.state import JobStateStore


class TranscodeCommandTest(TestCase):
    """Test the CLI wrapper around transcode.operations"""

    def setUp(self):
        self.asset = SourceAsset.objects.create(name='clip.webm', path='/srv/uploads/clip.webm')
        self.store = JobStateStore()

    def call(self, *args):
        out = StringIO()
        err = StringIO()
        call_command('transcode', *args, stdout=out, stderr=err)
        return out.getvalue(), err.getvalue()

    @patch('transcode.tasks.run_transcode_task')
    def test_enqueue_json(self, mock_task):
        out, _ = self.call('enqueue', self.asset.guid, 'ogg', '--json')

        data = json.loads(out)
        self.assertEqual(data['state'], 'queued')
        self.assertEqual(data['variant_key'], 'ogg')
        mock_task.assert_called_once()

    def test_enqueue_unknown_variant(self):
        with self.assertRaises(CommandError):
            self.call('enqueue', self.asset.guid, '999p.webm')

    def test_enqueue_unknown_asset(self):
        with self.assertRaises(CommandError):
            self.call('enqueue', 'missing', 'ogg')

    def test_variant_key_required(self):
        with self.assertRaises(CommandError):
            self.call('run', self.asset.guid)

    @patch('transcode.management.commands.transcode.run_transcode')
    def test_run_success(self, mock_run):
        mock_run.return_value = JobOutcome(STATUS_SUCCEEDED, final_bitrate=96000)

        out, _ = self.call('run', self.asset.guid, 'opus', '--override')

        self.assertIn('opus: 96000 bps', out)
        request = mock_run.call_args.args[0]
        self.assertTrue(request.manual_override)
        self.assertFalse(request.remux)

    def test_run_failure(self):
        """Test that a missing source is reported on stderr"""
        _, err = self.call('run', self.asset.guid, 'ogg')

        self.assertIn('ogg: errored', err)
        self.assertIn('Source not found', err)

    def test_reset(self):
        self.store.claim(self.asset.guid, 'ogg')

        out, _ = self.call('reset', self.asset.guid, 'ogg')

        self.assertIn('Reset ogg', out)
        self.assertEqual(self.store.get(self.asset.guid, 'ogg').state, 'pending')

    def test_reset_missing(self):
        out, _ = self.call('reset', self.asset.guid, 'ogg')
        self.assertIn('No job ogg to reset', out)

    def test_status_all(self):
        token = self.store.claim(self.asset.guid, 'ogg').value
        self.store.finish_success(self.asset.guid, 'ogg', token, 112000)
        self.store.ensure(self.asset.guid, '360p.vp9.webm')

        out, _ = self.call('status', self.asset.guid)

        lines = out.splitlines()
        self.assertEqual(lines[0], '360p.vp9.webm: pending')
        self.assertEqual(lines[1], 'ogg: succeeded (112000 bps)')

    def test_status_one(self):
        token = self.store.claim(self.asset.guid, 'ogg').value
        self.store.finish_error(self.asset.guid, 'ogg', token, 'Encoding failed\n\nExitcode: 1')

        out, _ = self.call('status', self.asset.guid, 'ogg')

        self.assertIn('ogg: errored', out)
        self.assertIn('  Error: Encoding failed', out)

    def test_status_unknown_job(self):
        with self.assertRaises(CommandError):
            self.call('status', self.asset.guid, 'ogg')

    def test_status_nothing_requested(self):
        out, _ = self.call('status', self.asset.guid)
        self.assertIn('No transcodes requested', out)
