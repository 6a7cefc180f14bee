"""
Transcode job orchestration.

Runs one (asset, variant) job end to end:

    catalog lookup -> parameter derivation -> claim -> encode
    -> [segment] -> publish -> finish

Every stage returns a Result. run() always terminates by finishing the job it
claimed, recording an error on a job nobody owns, or leaving a job another
attempt owns untouched.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import time
import traceback

from transcode.service.config import load_transcode_settings
from transcode.service.errors import RaceDetected, SourceUnavailable, TranscodeError
from transcode.service.executor import EncodeExecutor, EncodeTarget
from transcode.service.params import derive_encode_params, resolve_source_material
from transcode.service.purge import CdnPurger, NullPurger
from transcode.service.publisher import ResultPublisher
from transcode.service.sandbox import SandboxRunner
from transcode.service.segmenter import segment_media
from transcode.service.storage import DerivativeStorage

STATUS_SUCCEEDED = 'succeeded'
STATUS_ERRORED = 'errored'
STATUS_ALREADY_STARTED = 'already_started'
STATUS_SUPERSEDED = 'superseded'


@dataclass(frozen=True)
class TranscodeRequest:
    """Handle of one dispatched job"""
    asset_id: str
    variant_key: str
    remux: bool = False
    manual_override: bool = False
    prioritized: bool = False

    def to_dict(self):
        return {
            'asset_id': self.asset_id,
            'variant_key': self.variant_key,
            'remux': self.remux,
            'manual_override': self.manual_override,
            'prioritized': self.prioritized,
        }


@dataclass
class JobOutcome:
    """Terminal status of one run"""
    status: str
    error: Optional[TranscodeError] = None
    final_bitrate: Optional[int] = None

    @property
    def succeeded(self):
        return self.status == STATUS_SUCCEEDED

    @property
    def error_code(self):
        return self.error.code if self.error else None

    def to_dict(self):
        return {
            'status': self.status,
            'error': self.error.message if self.error else None,
            'error_code': self.error_code,
            'final_bitrate': self.final_bitrate,
        }


class _Attempt:
    """Mutable bookkeeping of one run() call"""

    def __init__(self, request):
        self.request = request
        self.token = None
        self.spec = None
        # Set once the success is recorded; later faults must not overwrite it
        self.final_bitrate = None

    @property
    def key(self):
        return (self.request.asset_id, self.request.variant_key)


class TranscodeOrchestrator:
    """Runs transcode jobs against injected collaborators"""

    def __init__(self, catalog, assets, store, storage, executor, publisher, settings):
        self.catalog = catalog
        self.assets = assets
        self.store = store
        self.storage = storage
        self.executor = executor
        self.publisher = publisher
        self.settings = settings

    def run(self, request, logger=None):
        """
        Run one job.

        Args:
            request: TranscodeRequest
            logger: Optional callable(str) for logging

        Returns:
            JobOutcome
        """
        def log(message):
            if logger:
                logger(message)

        attempt = _Attempt(request)
        started = time.monotonic()
        try:
            outcome = self._run(attempt, logger)
        except Exception as e:
            error = TranscodeError(f'Exception: {e}')
            log(f"{error.message}\n{traceback.format_exc()}")
            if attempt.final_bitrate is not None:
                outcome = JobOutcome(STATUS_SUCCEEDED, final_bitrate=attempt.final_bitrate)
            else:
                outcome = self._fail(attempt, error, log)

        log(f"Finished with status {outcome.status} in {time.monotonic() - started:.1f}s")
        return outcome

    def _run(self, attempt, logger):
        def log(message):
            if logger:
                logger(message)

        request = attempt.request
        log(f"Transcode {request.variant_key} for asset {request.asset_id}")

        lookup = self.catalog.lookup(request.variant_key)
        if not lookup.is_ok:
            # No job row is created for keys outside the catalog
            log(lookup.error.message)
            return JobOutcome(STATUS_ERRORED, error=lookup.error)
        spec = attempt.spec = lookup.value

        asset = self.assets.get(request.asset_id)
        if asset is None:
            error = SourceUnavailable(f'Asset {request.asset_id} not found')
            log(error.message)
            return JobOutcome(STATUS_ERRORED, error=error)

        self.store.ensure(*attempt.key)

        material = resolve_source_material(asset, spec, self.storage, remux=request.remux)
        if not material.is_ok:
            return self._abandon(attempt, material.error, log)
        if material.value.is_remux:
            log(f"Remuxing from existing derivative {material.value.remux_key}")

        params = derive_encode_params(
            asset, spec, material.value, self.settings, manual_override=request.manual_override
        )
        if not params.is_ok:
            return self._abandon(attempt, params.error, log)

        claim = self.store.claim(*attempt.key)
        if not claim.is_ok:
            log(claim.error.message)
            return JobOutcome(STATUS_ALREADY_STARTED, error=claim.error)
        attempt.token = claim.value

        # Encodes can take hours; don't sit on a database connection meanwhile
        self.store.release_connection()

        with EncodeTarget(params.value.extension, self.settings.tmp_dir) as target:
            encoded = self.executor.execute(material.value.path, params.value, target, logger)

            if encoded.is_ok and spec.is_streaming:
                media_name = Path(self.storage.derivative_path(asset, spec.key)).name
                segmented = segment_media(
                    target.media_path,
                    target.playlist_path,
                    media_name,
                    self.settings.hls_segment_duration,
                    logger,
                )
                if not segmented.is_ok:
                    encoded = segmented

            if not self.store.is_current(*attempt.key, attempt.token):
                race = RaceDetected()
                log(race.message)
                if not encoded.is_ok:
                    return self._record_unclaimed(attempt, encoded.error, log)
                return JobOutcome(STATUS_SUPERSEDED, error=race)

            if not encoded.is_ok:
                return self._fail(attempt, encoded.error, log)

            self.store.release_connection()
            published = self.publisher.commit(asset, spec, target, logger)
            if not published.is_ok:
                return self._fail(attempt, published.error, log)

        publication = published.value
        if not self.store.finish_success(*attempt.key, attempt.token, publication.final_bitrate):
            # Files were imported, but a newer attempt owns the record
            race = RaceDetected()
            log(race.message)
            return JobOutcome(STATUS_SUPERSEDED, error=race)
        attempt.final_bitrate = publication.final_bitrate

        if spec.is_streaming:
            try:
                self.publisher.update_master_playlist(
                    asset, self.store.succeeded_bitrates(asset.guid), logger
                )
            except OSError as e:
                log(f"Failed to update master playlist: {e}")
        self.publisher.purge(publication.urls, logger)
        log(f"Published {publication.media_path} at {publication.final_bitrate} bps")
        return JobOutcome(STATUS_SUCCEEDED, final_bitrate=publication.final_bitrate)

    def _abandon(self, attempt, error, log):
        """Failure before claiming: record it only if nobody owns the job"""
        log(error.message)
        if error.recordable:
            self.store.record_unclaimed_error(*attempt.key, error.error_text())
        return JobOutcome(STATUS_ERRORED, error=error)

    def _fail(self, attempt, error, log):
        """Record a failure of this attempt, fenced on its token"""
        log(error.message)
        if attempt.token is None:
            if attempt.spec is None:
                return JobOutcome(STATUS_ERRORED, error=error)
            return self._abandon(attempt, error, log)
        if self.store.finish_error(*attempt.key, attempt.token, error.error_text()):
            return JobOutcome(STATUS_ERRORED, error=error)
        log(RaceDetected().message)
        return self._record_unclaimed(attempt, error, log)

    def _record_unclaimed(self, attempt, error, log):
        """A failed attempt whose job was reset: record only if no newer attempt started"""
        if self.store.record_unclaimed_error(*attempt.key, error.error_text()):
            return JobOutcome(STATUS_ERRORED, error=error)
        log("Newer attempt in progress, discarding result")
        return JobOutcome(STATUS_SUPERSEDED, error=error)


def build_purger(settings):
    if settings.cdn_purge_enabled:
        return CdnPurger(settings.cdn_purge_timeout)
    return NullPurger()


def build_storage(settings):
    return DerivativeStorage(settings.derivative_dir, settings.derivative_base_url)


def build_orchestrator(catalog=None, settings=None, sandbox=None, purger=None, store=None, assets=None):
    """
    Wire an orchestrator from configuration.

    Every collaborator can be passed in; anything omitted is built from the
    TRANSCODE_* settings and the app's VariantCatalog.
    """
    from django.apps import apps

    from transcode.service.assets import AssetLookup
    from transcode.service.state import JobStateStore

    settings = settings or load_transcode_settings()
    if catalog is None:
        catalog = apps.get_app_config('transcode').catalog
    if purger is None:
        purger = build_purger(settings)

    storage = build_storage(settings)
    return TranscodeOrchestrator(
        catalog=catalog,
        assets=assets or AssetLookup(),
        store=store or JobStateStore(),
        storage=storage,
        executor=EncodeExecutor(sandbox or SandboxRunner(settings), settings),
        publisher=ResultPublisher(storage, purger, catalog),
        settings=settings,
    )
