# Generated manually for the initial transcode schema

import django.db.models.deletion
from django.db import migrations, models

import transcode.models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='SourceAsset',
            fields=[
                (
                    'guid',
                    models.CharField(
                        default=transcode.models.generate_nanoid,
                        editable=False,
                        max_length=21,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ('name', models.CharField(max_length=255, unique=True)),
                (
                    'path',
                    models.CharField(help_text='Local path to the original file', max_length=1024),
                ),
                ('mime_type', models.CharField(blank=True, max_length=100)),
                ('duration', models.FloatField(default=0.0, help_text='Duration in seconds')),
                ('width', models.PositiveIntegerField(default=0)),
                ('height', models.PositiveIntegerField(default=0)),
                ('frame_rate', models.FloatField(blank=True, null=True)),
                ('interlaced', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='TranscodeJob',
            fields=[
                (
                    'id',
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name='ID'
                    ),
                ),
                ('variant_key', models.CharField(max_length=100)),
                ('queued_at', models.DateTimeField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('succeeded_at', models.DateTimeField(blank=True, null=True)),
                ('errored_at', models.DateTimeField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True)),
                ('final_bitrate', models.BigIntegerField(blank=True, null=True)),
                (
                    'asset',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='transcode_jobs',
                        to='transcode.sourceasset',
                    ),
                ),
            ],
            options={
                'ordering': ['asset', 'variant_key'],
                'indexes': [
                    models.Index(fields=['variant_key'], name='transcode_variant_idx'),
                    models.Index(fields=['started_at'], name='transcode_started_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(
                        fields=('asset', 'variant_key'), name='unique_transcode_per_variant'
                    )
                ],
            },
        ),
    ]
