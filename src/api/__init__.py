"""
HTTP API for the OSS Hero webhook service.
"""

from .app import create_app
from .dependencies import WebhookServices, build_services

__all__ = [
    'create_app',
    'WebhookServices',
    'build_services'
]
