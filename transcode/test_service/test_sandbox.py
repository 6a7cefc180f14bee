"""
Tests for service/sandbox.py
"""
from django.test import SimpleTestCase
from unittest.mock import patch, MagicMock
import resource
import subprocess

from transcode.service.config import TranscodeSettings
from transcode.service.sandbox import SandboxResult, SandboxRunner


class SandboxRunnerTest(SimpleTestCase):
    """Tests for sandboxed subprocess execution"""

    def setUp(self):
        self.settings = TranscodeSettings(
            sandbox_prefix=('unshare', '--net', '--'),
            time_limit=60,
            ffmpeg_threads=2,
        )
        self.runner = SandboxRunner(self.settings)

    def test_command_prepends_prefix(self):
        """Test that the isolation prefix wraps the command"""
        self.assertEqual(
            self.runner.command(['ffmpeg', '-i', 1]),
            ['unshare', '--net', '--', 'ffmpeg', '-i', '1'],
        )

    def test_command_without_prefix(self):
        runner = SandboxRunner(TranscodeSettings())
        self.assertEqual(runner.command(['ffmpeg']), ['ffmpeg'])

    @patch('transcode.service.sandbox.subprocess.run')
    def test_run_success(self, mock_run):
        """Test exit code and merged output of a successful command"""
        mock_run.return_value = MagicMock(returncode=0, stdout='frame=100\n')
        messages = []

        result = self.runner.run(['ffmpeg', '-version'], cwd='/tmp', logger=messages.append)

        self.assertTrue(result.succeeded)
        self.assertEqual(result.output, 'frame=100\n')
        args, kwargs = mock_run.call_args
        self.assertEqual(args[0], ['unshare', '--net', '--', 'ffmpeg', '-version'])
        self.assertEqual(kwargs['cwd'], '/tmp')
        self.assertEqual(kwargs['stderr'], subprocess.STDOUT)
        self.assertEqual(kwargs['timeout'], 60)
        self.assertEqual(kwargs['preexec_fn'], self.runner._limit_resources)
        self.assertEqual(messages[0], 'Running: unshare --net -- ffmpeg -version')

    @patch('transcode.service.sandbox.subprocess.run')
    def test_run_failure(self, mock_run):
        """Test that a non-zero exit isn't a success"""
        mock_run.return_value = MagicMock(returncode=1, stdout='Unknown encoder')

        result = self.runner.run(['ffmpeg'])

        self.assertFalse(result.succeeded)
        self.assertEqual(result.exit_code, 1)
        self.assertFalse(result.timed_out)

    @patch('transcode.service.sandbox.subprocess.run')
    def test_run_timeout(self, mock_run):
        """Test that a wall-clock timeout is reported, not raised"""
        mock_run.side_effect = subprocess.TimeoutExpired(['ffmpeg'], 60, output=b'partial')

        result = self.runner.run(['ffmpeg'])

        self.assertTrue(result.timed_out)
        self.assertIsNone(result.exit_code)
        self.assertEqual(result.output, 'partial')
        self.assertFalse(result.succeeded)

    @patch('transcode.service.sandbox.subprocess.run')
    def test_run_missing_binary(self, mock_run):
        """Test that a command that can't start is a failed result"""
        mock_run.side_effect = FileNotFoundError(2, 'No such file or directory')

        result = self.runner.run(['ffmpeg'])

        self.assertFalse(result.succeeded)
        self.assertIn('No such file or directory', result.output)

    @patch('transcode.service.sandbox.resource.setrlimit')
    def test_limit_resources(self, mock_setrlimit):
        """Test CPU time scales with threads and memory is capped"""
        self.runner._limit_resources()

        calls = {call.args[0]: call.args[1] for call in mock_setrlimit.call_args_list}
        self.assertEqual(calls[resource.RLIMIT_CPU], (120, 120))
        self.assertEqual(
            calls[resource.RLIMIT_AS],
            (self.settings.memory_limit_bytes, self.settings.memory_limit_bytes),
        )

    def test_sandbox_result(self):
        self.assertTrue(SandboxResult(exit_code=0, output='').succeeded)
        self.assertFalse(SandboxResult(exit_code=0, output='', timed_out=True).succeeded)
