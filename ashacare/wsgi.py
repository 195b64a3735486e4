"""
WSGI config for the AshaCare project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'ashacare.settings.development')

application = get_wsgi_application()
