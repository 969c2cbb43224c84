"""
WSGI config for the payment orchestration engine.

The service is normally served over ASGI (see config/asgi.py); this WSGI
entry point exists for gunicorn-style deployments and management tooling.

This file exposes the WSGI callable as a module-level variable named `application`.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
