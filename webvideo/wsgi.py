"""
WSGI entrypoint for the webvideo project.

The transcode engine runs in huey workers; the WSGI application exists so the
project can be served for status reads and administration.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'webvideo.settings')

application = get_wsgi_application()
