from django.db import models
from nanoid import generate


def generate_nanoid():
    """Generate NanoID with A-Z a-z 0-9 alphabet"""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
    return generate(alphabet, size=21)


class JobState(models.TextChoices):
    """Lifecycle state of a transcode job, derived from its timestamps"""

    PENDING = "pending", "Pending"
    QUEUED = "queued", "Queued"
    IN_PROGRESS = "in_progress", "In progress"
    SUCCEEDED = "succeeded", "Succeeded"
    ERRORED = "errored", "Errored"


class SourceAsset(models.Model):
    """Uploaded source media file that derivatives are produced from"""

    # Primary key
    guid = models.CharField(
        max_length=21, primary_key=True, default=generate_nanoid, editable=False
    )

    # Storage identity
    name = models.CharField(max_length=255, unique=True)
    path = models.CharField(max_length=1024, help_text="Local path to the original file")
    mime_type = models.CharField(max_length=100, blank=True)

    # Media properties
    duration = models.FloatField(default=0.0, help_text="Duration in seconds")
    width = models.PositiveIntegerField(default=0)
    height = models.PositiveIntegerField(default=0)
    frame_rate = models.FloatField(null=True, blank=True)
    interlaced = models.BooleanField(default=False)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.guid})"


class TranscodeJob(models.Model):
    """
    Durable state of one (asset, variant) derivative.

    No state column is stored. The lifecycle is read from which timestamps are
    set; started_at doubles as the fencing token of the current attempt.
    """

    asset = models.ForeignKey(
        SourceAsset, on_delete=models.CASCADE, related_name="transcode_jobs"
    )
    variant_key = models.CharField(max_length=100)

    queued_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    succeeded_at = models.DateTimeField(null=True, blank=True)
    errored_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    final_bitrate = models.BigIntegerField(null=True, blank=True)

    class Meta:
        ordering = ["asset", "variant_key"]
        constraints = [
            models.UniqueConstraint(
                fields=["asset", "variant_key"], name="unique_transcode_per_variant"
            ),
        ]
        indexes = [
            models.Index(fields=["variant_key"], name="transcode_variant_idx"),
            models.Index(fields=["started_at"], name="transcode_started_idx"),
        ]

    def __str__(self):
        return f"{self.asset_id}:{self.variant_key} ({self.state})"

    @property
    def state(self):
        if self.succeeded_at is not None:
            return JobState.SUCCEEDED
        if self.errored_at is not None:
            return JobState.ERRORED
        if self.started_at is not None:
            return JobState.IN_PROGRESS
        if self.queued_at is not None:
            return JobState.QUEUED
        return JobState.PENDING

    @property
    def is_terminal(self):
        return self.state in (JobState.SUCCEEDED, JobState.ERRORED)

    @property
    def duration_seconds(self):
        """Wall time of a successful encode, for status tables"""
        if self.succeeded_at is None or self.started_at is None:
            return None
        return int((self.succeeded_at - self.started_at).total_seconds())
