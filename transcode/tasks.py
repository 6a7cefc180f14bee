"""
Huey tasks running transcode jobs on the worker pool.
"""
from huey.contrib.djhuey import db_task

from transcode.service.config import load_transcode_settings
from transcode.service.orchestrator import TranscodeRequest, build_orchestrator
from transcode.utils import job_log_path, write_log

PRIORITY_HIGH = 10


def execute_request(request, logger=None):
    """
    Run one transcode request, logging to the job's log file.

    Returns:
        dict: JobOutcome as plain values
    """
    settings = load_transcode_settings()
    log_path = job_log_path(settings.log_dir, request.asset_id, request.variant_key)

    def log(message):
        write_log(log_path, message)
        if logger:
            logger(message)

    log('=== TRANSCODE STARTED ===')
    outcome = build_orchestrator(settings=settings).run(request, logger=log)
    log(f'=== {outcome.status.upper()} ===')
    return outcome.to_dict()


@db_task()
def run_transcode_task(request_data):
    """Run a transcode job from the default queue"""
    return execute_request(TranscodeRequest(**request_data))


@db_task(priority=PRIORITY_HIGH)
def run_transcode_prioritized_task(request_data):
    """Run a transcode job ahead of the default queue (small or user-requested jobs)"""
    return execute_request(TranscodeRequest(**request_data))
