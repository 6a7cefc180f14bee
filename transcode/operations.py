"""
High-level operations that can be used by tasks, management commands and
other apps.

This module provides testable functions that encapsulate the job lifecycle
(enqueue, run, inspect, reset) without going through the task queue or the
command line.
"""
from django.apps import apps

from transcode.models import SourceAsset
from transcode.service.assets import Asset
from transcode.service.config import load_transcode_settings
from transcode.service.errors import ConfigurationError
from transcode.service.orchestrator import (
    TranscodeRequest,
    build_orchestrator,
    build_purger,
    build_storage,
)
from transcode.service.publisher import ResultPublisher
from transcode.service.state import JobStateStore


def get_catalog():
    return apps.get_app_config('transcode').catalog


def _check_request(asset_id, variant_key):
    if variant_key not in get_catalog():
        raise ConfigurationError(f'Transcode key {variant_key} not found')
    if not SourceAsset.objects.filter(guid=asset_id).exists():
        raise SourceAsset.DoesNotExist(f'Asset not found: {asset_id}')


def enqueue_transcode(
    asset_id,
    variant_key,
    remux=False,
    manual_override=False,
    prioritized=False,
    wait=False,
    logger=None,
):
    """
    Request a derivative of an asset.

    Only a Pending job is dispatched; queued, running and finished jobs are
    left alone until they are reset.

    Args:
        asset_id: SourceAsset guid
        variant_key: Key from the variant catalog
        remux: Reuse an existing alternate derivative's video stream if possible
        manual_override: Allow exceeding the soft size limit
        prioritized: Dispatch on the high priority queue
        wait: If True, run synchronously. If False, enqueue background task.
        logger: Optional callable(message) for logging

    Returns:
        TranscodeJob: The job row after dispatching

    Raises:
        ConfigurationError: Unknown variant key
        SourceAsset.DoesNotExist: Unknown asset
    """
    def log(message):
        if logger:
            logger(message)

    _check_request(asset_id, variant_key)

    store = JobStateStore()
    store.ensure(asset_id, variant_key)
    if not store.mark_queued(asset_id, variant_key):
        job = store.get(asset_id, variant_key)
        log(f'Job {variant_key} is {job.state}, not enqueueing')
        return job

    request = TranscodeRequest(
        asset_id=asset_id,
        variant_key=variant_key,
        remux=remux,
        manual_override=manual_override,
        prioritized=prioritized,
    )

    from transcode.tasks import (
        execute_request,
        run_transcode_prioritized_task,
        run_transcode_task,
    )

    if wait:
        # Run synchronously (blocking) - used by CLI
        log('Processing synchronously...')
        execute_request(request, logger=logger)
    elif prioritized:
        log('Enqueued prioritized background task')
        run_transcode_prioritized_task(request.to_dict())
    else:
        log('Enqueued background task')
        run_transcode_task(request.to_dict())

    return store.get(asset_id, variant_key)


def run_transcode(request, logger=None):
    """
    Run a job in the current process.

    Args:
        request: TranscodeRequest
        logger: Optional callable(message) for logging

    Returns:
        JobOutcome
    """
    return build_orchestrator().run(request, logger=logger)


def get_transcode_state(asset_id, variant_key):
    """
    Returns:
        TranscodeJob or None if the variant was never requested
    """
    return JobStateStore().get(asset_id, variant_key)


def get_transcode_states(asset_id):
    """
    Summary of all requested variants of an asset, for status tables.

    Returns:
        dict: variant key -> state fields, ordered by codec preference
    """
    states = JobStateStore().get_states(asset_id)
    return {key: states[key] for key in get_catalog().sort_keys(states.keys())}


def reset_transcode(asset_id, variant_key, remove_files=False, logger=None):
    """
    Return a job to Pending.

    A worker still running the job discards its result when it finishes.

    Args:
        asset_id: SourceAsset guid
        variant_key: Variant key
        remove_files: Also delete the published derivative and its playlist

    Returns:
        bool: True if a job existed
    """
    def log(message):
        if logger:
            logger(message)

    store = JobStateStore()
    existed = store.reset(asset_id, variant_key)
    log(f'Reset {variant_key} for asset {asset_id}' if existed else f'No job {variant_key} for asset {asset_id}')

    catalog = get_catalog()
    spec = catalog.get(variant_key)
    item = SourceAsset.objects.filter(guid=asset_id).first()
    if remove_files and spec is not None and item is not None:
        settings = load_transcode_settings()
        publisher = ResultPublisher(build_storage(settings), build_purger(settings), catalog)
        asset = Asset.from_model(item)
        publisher.remove(asset, spec)
        if spec.is_streaming:
            publisher.update_master_playlist(asset, store.succeeded_bitrates(asset_id), logger)
        publisher.purge(publisher.derivative_urls(asset, spec), logger)
        log(f'Removed files of {variant_key}')

    return existed
