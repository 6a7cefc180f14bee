"""
Django management command for transcode jobs.

This is a thin CLI wrapper around transcode.operations.
"""
import json

from django.core.management.base import BaseCommand, CommandError

from transcode.models import SourceAsset
from transcode.operations import (
    enqueue_transcode,
    get_transcode_state,
    get_transcode_states,
    reset_transcode,
    run_transcode,
)
from transcode.service.errors import ConfigurationError
from transcode.service.orchestrator import TranscodeRequest
from transcode.service.state import job_summary


class Command(BaseCommand):
    help = 'Enqueue, run, reset or inspect derivative transcodes of an asset'

    def add_arguments(self, parser):
        parser.add_argument(
            'action',
            choices=['enqueue', 'run', 'reset', 'status'],
            help='What to do with the job'
        )
        parser.add_argument('asset_id', type=str, help='Source asset guid')
        parser.add_argument(
            'variant_key',
            type=str,
            nargs='?',
            help='Variant key, e.g. 720p.vp9.webm (optional for status)'
        )
        parser.add_argument(
            '--remux',
            action='store_true',
            help='Reuse an existing derivative video stream when possible'
        )
        parser.add_argument(
            '--override',
            action='store_true',
            help='Allow exceeding the soft size limit'
        )
        parser.add_argument(
            '--prioritized',
            action='store_true',
            help='Enqueue on the high priority queue'
        )
        parser.add_argument(
            '--wait',
            action='store_true',
            help='Run the enqueued job in the foreground'
        )
        parser.add_argument(
            '--remove-files',
            action='store_true',
            help='On reset, also delete published files'
        )
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')

    def handle(self, *args, **options):
        action = options['action']
        asset_id = options['asset_id']
        variant_key = options['variant_key']
        verbose = options['verbose']
        output_json = options['json']

        def logger(message):
            if verbose and not output_json:
                self.stdout.write(message)

        if action != 'status' and not variant_key:
            raise CommandError(f'{action} needs a variant key')

        try:
            if action == 'enqueue':
                job = enqueue_transcode(
                    asset_id,
                    variant_key,
                    remux=options['remux'],
                    manual_override=options['override'],
                    prioritized=options['prioritized'],
                    wait=options['wait'],
                    logger=logger,
                )
                result = job_summary(job)
            elif action == 'run':
                request = TranscodeRequest(
                    asset_id=asset_id,
                    variant_key=variant_key,
                    remux=options['remux'],
                    manual_override=options['override'],
                )
                outcome = run_transcode(request, logger=logger)
                result = outcome.to_dict()
            elif action == 'reset':
                existed = reset_transcode(
                    asset_id, variant_key, remove_files=options['remove_files'], logger=logger
                )
                result = {'variant_key': variant_key, 'reset': existed}
            elif variant_key:
                job = get_transcode_state(asset_id, variant_key)
                if job is None:
                    raise CommandError(f'No transcode job {variant_key} for asset {asset_id}')
                result = job_summary(job)
            else:
                result = get_transcode_states(asset_id)
        except (ConfigurationError, SourceAsset.DoesNotExist) as e:
            raise CommandError(str(e))

        if output_json:
            self.stdout.write(json.dumps(result, indent=2))
            return

        if action == 'run':
            if result['status'] == 'succeeded':
                self.stdout.write(self.style.SUCCESS(f"✓ {variant_key}: {result['final_bitrate']} bps"))
            else:
                self.stderr.write(self.style.ERROR(f"✗ {variant_key}: {result['status']}"))
                if result['error']:
                    self.stderr.write(f"  {result['error']}")
        elif action == 'reset':
            if result['reset']:
                self.stdout.write(self.style.SUCCESS(f'✓ Reset {variant_key}'))
            else:
                self.stdout.write(self.style.WARNING(f'No job {variant_key} to reset'))
        elif action == 'status' and not variant_key:
            if not result:
                self.stdout.write('No transcodes requested')
            for key, state in result.items():
                self._write_state(key, state)
        else:
            self._write_state(variant_key, result)

    def _write_state(self, key, state):
        line = f"{key}: {state['state']}"
        if state['final_bitrate']:
            line += f" ({state['final_bitrate']} bps)"
        self.stdout.write(line)
        if state['error_message']:
            self.stdout.write(f"  Error: {state['error_message'].splitlines()[0]}")
