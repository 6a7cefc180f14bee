"""
Django settings for the webvideo transcode project.

Transcode tunables are read from the environment so the same settings module
serves development, workers and tests.
"""

import os
import shlex
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_int(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return int(value)


def env_list(name, default=None):
    value = os.environ.get(name)
    if value is None:
        return list(default or [])
    return [part.strip() for part in value.split(',') if part.strip()]


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-webvideo-dev-key')

DEBUG = env_bool('DJANGO_DEBUG', True)

ALLOWED_HOSTS = env_list('DJANGO_ALLOWED_HOSTS', ['localhost', '127.0.0.1'])

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'huey.contrib.djhuey',
    'transcode',
]

MIDDLEWARE = []

ROOT_URLCONF = None

WSGI_APPLICATION = 'webvideo.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('WEBVIDEO_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

# Huey consumers run in their own processes; state summaries they invalidate
# must be dropped for the web and CLI processes too
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.filebased.FileBasedCache',
        'LOCATION': os.environ.get('WEBVIDEO_CACHE_DIR', str(BASE_DIR / 'cache')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'

# Huey task queue
HUEY = {
    'huey_class': 'huey.SqliteHuey',
    'name': 'webvideo',
    'filename': os.environ.get('WEBVIDEO_HUEY_DB', str(BASE_DIR / 'huey.sqlite3')),
    'immediate': env_bool('WEBVIDEO_HUEY_IMMEDIATE', DEBUG),
    'consumer': {
        'workers': env_int('WEBVIDEO_HUEY_WORKERS', 2),
        'worker_type': 'process',
    },
}

# Encoder binaries
TRANSCODE_FFMPEG_PATH = os.environ.get('TRANSCODE_FFMPEG_PATH', 'ffmpeg')
TRANSCODE_FLUIDSYNTH_PATH = os.environ.get('TRANSCODE_FLUIDSYNTH_PATH', 'fluidsynth')
TRANSCODE_SOUNDFONT_PATH = os.environ.get(
    'TRANSCODE_SOUNDFONT_PATH', '/usr/share/sounds/sf2/FluidR3_GM.sf2'
)
TRANSCODE_FFMPEG_THREADS = env_int('TRANSCODE_FFMPEG_THREADS', 1)
TRANSCODE_VP9_ROW_MT = env_bool('TRANSCODE_VP9_ROW_MT', False)
TRANSCODE_USE_FFMPEG2 = env_bool('TRANSCODE_USE_FFMPEG2', False)

# Sandbox limits: wall seconds, memory in KiB
TRANSCODE_TIME_LIMIT = env_int('TRANSCODE_TIME_LIMIT', 8 * 60 * 60)
TRANSCODE_MEMORY_LIMIT = env_int('TRANSCODE_MEMORY_LIMIT', 2 * 1024 * 1024)
TRANSCODE_SANDBOX_PREFIX = shlex.split(
    os.environ.get('TRANSCODE_SANDBOX_PREFIX', 'unshare --net --map-root-user')
)

# Estimated output size limits in KiB, 0 disables
TRANSCODE_HARD_SIZE_LIMIT = env_int('TRANSCODE_HARD_SIZE_LIMIT', 3 * 1024 * 1024)
TRANSCODE_SOFT_SIZE_LIMIT = env_int('TRANSCODE_SOFT_SIZE_LIMIT', 2 * 1024 * 1024)

# Storage
TRANSCODE_DERIVATIVE_DIR = os.environ.get(
    'TRANSCODE_DERIVATIVE_DIR', str(BASE_DIR / 'derivatives')
)
TRANSCODE_DERIVATIVE_BASE_URL = os.environ.get(
    'TRANSCODE_DERIVATIVE_BASE_URL', 'http://localhost:8000/transcoded/'
)
TRANSCODE_TMP_DIR = os.environ.get('TRANSCODE_TMP_DIR', '')
TRANSCODE_LOG_DIR = os.environ.get('TRANSCODE_LOG_DIR', str(BASE_DIR / 'logs'))

TRANSCODE_ENABLED_VARIANTS = env_list('TRANSCODE_ENABLED_VARIANTS')
TRANSCODE_HLS_SEGMENT_DURATION = env_int('TRANSCODE_HLS_SEGMENT_DURATION', 10)

# CDN invalidation
TRANSCODE_CDN_PURGE_ENABLED = env_bool('TRANSCODE_CDN_PURGE_ENABLED', False)
TRANSCODE_CDN_PURGE_TIMEOUT = env_int('TRANSCODE_CDN_PURGE_TIMEOUT', 5)
