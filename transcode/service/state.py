"""
Durable job state.

Every transition is a single conditional UPDATE so that concurrent workers,
possibly on different machines, can't both claim a job or overwrite each
other's results. started_at is the fencing token: an attempt may only write
terminal state while the stored started_at still equals the value it claimed.
"""
from django.core.cache import cache
from django.db import connection
from django.utils import timezone

from transcode.models import JobState, TranscodeJob
from transcode.service.errors import AlreadyStarted, Result

STATES_CACHE_TIMEOUT = 60 * 60


def states_cache_key(asset_id):
    return f'transcode-states:{asset_id}'


class JobStateStore:
    """TranscodeJob persistence with claim/finish fencing"""

    def _jobs(self, asset_id, variant_key):
        return TranscodeJob.objects.filter(asset_id=asset_id, variant_key=variant_key)

    def get(self, asset_id, variant_key):
        """
        Returns:
            TranscodeJob or None if the variant was never requested
        """
        return self._jobs(asset_id, variant_key).first()

    def ensure(self, asset_id, variant_key):
        """Create the job row in Pending state if it doesn't exist yet"""
        job, created = TranscodeJob.objects.get_or_create(
            asset_id=asset_id, variant_key=variant_key
        )
        if created:
            self.invalidate(asset_id)
        return job

    def mark_queued(self, asset_id, variant_key):
        """
        Move a Pending job to Queued.

        Returns:
            bool: True if this call performed the transition
        """
        updated = self._jobs(asset_id, variant_key).filter(
            queued_at__isnull=True,
            started_at__isnull=True,
            succeeded_at__isnull=True,
            errored_at__isnull=True,
        ).update(queued_at=timezone.now())
        if updated:
            self.invalidate(asset_id)
        return bool(updated)

    def claim(self, asset_id, variant_key):
        """
        Start an execution attempt.

        Returns:
            Result carrying the fencing token (the started_at written), or an
            AlreadyStarted error when another attempt owns the job
        """
        self.ensure(asset_id, variant_key)
        token = timezone.now()
        updated = self._jobs(asset_id, variant_key).filter(
            started_at__isnull=True
        ).update(started_at=token)
        if not updated:
            return Result.fail(AlreadyStarted())
        self.invalidate(asset_id)
        return Result.ok(token)

    def is_current(self, asset_id, variant_key, token):
        """Whether the stored started_at still equals the attempt's token"""
        return self._jobs(asset_id, variant_key).filter(started_at=token).exists()

    def finish_success(self, asset_id, variant_key, token, final_bitrate):
        """
        Record a successful attempt, clearing any previous error.

        Returns:
            bool: False if the token no longer matches and nothing was written
        """
        updated = self._jobs(asset_id, variant_key).filter(started_at=token).update(
            succeeded_at=timezone.now(),
            final_bitrate=final_bitrate,
            errored_at=None,
            error_message='',
        )
        self.invalidate(asset_id)
        return bool(updated)

    def finish_error(self, asset_id, variant_key, token, message):
        """
        Record a failed attempt.

        Returns:
            bool: False if the token no longer matches and nothing was written
        """
        updated = self._jobs(asset_id, variant_key).filter(started_at=token).update(
            errored_at=timezone.now(),
            error_message=message,
            succeeded_at=None,
            final_bitrate=None,
        )
        self.invalidate(asset_id)
        return bool(updated)

    def record_unclaimed_error(self, asset_id, variant_key, message):
        """
        Record an error while no attempt owns the job.

        Used for failures detected before claiming and for failed attempts
        whose job was reset meanwhile. Nothing is written once a newer
        attempt has set started_at.

        Returns:
            bool: True if the error was written
        """
        updated = self._jobs(asset_id, variant_key).filter(started_at__isnull=True).update(
            errored_at=timezone.now(),
            error_message=message,
            succeeded_at=None,
            final_bitrate=None,
        )
        self.invalidate(asset_id)
        return bool(updated)

    def reset(self, asset_id, variant_key):
        """
        Return a job to Pending, whatever its state.

        A running attempt notices at finish time that its token is gone.

        Returns:
            bool: True if a job row existed
        """
        updated = self._jobs(asset_id, variant_key).update(
            queued_at=None,
            started_at=None,
            succeeded_at=None,
            errored_at=None,
            error_message='',
            final_bitrate=None,
        )
        self.invalidate(asset_id)
        return bool(updated)

    def get_states(self, asset_id):
        """
        State summary of every requested variant of an asset.

        Cached per asset; every transition above invalidates the entry.

        Returns:
            dict: variant key -> dict of state fields
        """
        key = states_cache_key(asset_id)
        states = cache.get(key)
        if states is None:
            states = {
                job.variant_key: job_summary(job)
                for job in TranscodeJob.objects.filter(asset_id=asset_id)
            }
            cache.set(key, states, STATES_CACHE_TIMEOUT)
        return states

    def succeeded_bitrates(self, asset_id):
        """variant key -> final bitrate of every succeeded variant"""
        return dict(
            TranscodeJob.objects.filter(asset_id=asset_id, succeeded_at__isnull=False)
            .values_list('variant_key', 'final_bitrate')
        )

    def invalidate(self, asset_id):
        cache.delete(states_cache_key(asset_id))

    def release_connection(self):
        """
        Close the database connection before long-running work.

        Django reconnects on next use. Inside an atomic block (tests, or a
        caller's transaction) the connection is left alone.
        """
        if not connection.in_atomic_block:
            connection.close()


def job_summary(job):
    """Plain-value view of a TranscodeJob, safe to cache and serialize"""
    state = job.state
    return {
        'variant_key': job.variant_key,
        'state': state.value if isinstance(state, JobState) else state,
        'queued_at': _iso(job.queued_at),
        'started_at': _iso(job.started_at),
        'succeeded_at': _iso(job.succeeded_at),
        'errored_at': _iso(job.errored_at),
        'error_message': job.error_message,
        'final_bitrate': job.final_bitrate,
    }


def _iso(value):
    return value.isoformat() if value else None
