"""
AshaCare Django Settings - Test Environment
"""

from .base import *


DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

REST_FRAMEWORK['DEFAULT_THROTTLE_CLASSES'] = []

LOGGING['loggers']['apps']['level'] = 'WARNING'

# Deterministic pipeline: keyword extractor, no gateways, no backoff sleeps worth noticing
ASHACARE.update({
    'HF_TOKEN': '',
    'CHANNEL_GATEWAYS': {},
    'RETRY_BASE_DELAY_SECONDS': 0.0,
})
