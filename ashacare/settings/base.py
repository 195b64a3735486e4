"""
AshaCare Django Settings - Base
Shared by every environment; values come from the environment / .env via django-environ
"""

import os
from pathlib import Path

import environ
from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent.parent

env = environ.Env(
    DEBUG=(bool, False),
)
environ.Env.read_env(os.path.join(BASE_DIR, '.env'))

SECRET_KEY = env('SECRET_KEY', default='django-insecure-change-me')

DEBUG = env('DEBUG')

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=[])


# Application definition

DJANGO_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

THIRD_PARTY_APPS = [
    'rest_framework',
    'django_filters',
    'drf_spectacular',
    'corsheaders',
]

# cases must come before triage: the triage orchestrator is wired to the case engine
LOCAL_APPS = [
    'apps.core',
    'apps.conversations',
    'apps.cases',
    'apps.triage',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'ashacare.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'ashacare.wsgi.application'


# Database

DATABASES = {
    'default': env.db('DATABASE_URL', default=f"sqlite:///{os.path.join(BASE_DIR, 'db.sqlite3')}"),
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# Password validation

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]


# Internationalization

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'Asia/Kolkata'
USE_I18N = True
USE_TZ = True


# Static files

STATIC_URL = 'static/'
STATIC_ROOT = os.path.join(BASE_DIR, 'staticfiles')


# Django REST Framework

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
    ],
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    'EXCEPTION_HANDLER': 'apps.core.exceptions.api_exception_handler',
    'DEFAULT_THROTTLE_CLASSES': [
        'rest_framework.throttling.AnonRateThrottle',
        'rest_framework.throttling.UserRateThrottle',
    ],
    'DEFAULT_THROTTLE_RATES': {
        'anon': '600/hour',
        'user': '5000/hour',
    },
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'AshaCare Triage API',
    'DESCRIPTION': 'Symptom intake, risk triage and ASHA worker case management',
    'VERSION': '1.0.0',
    'SERVE_INCLUDE_SCHEMA': False,
}


# CORS

CORS_ALLOWED_ORIGINS = env.list('CORS_ALLOWED_ORIGINS', default=[])


# Celery

CELERY_BROKER_URL = env('CELERY_BROKER_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = env('CELERY_RESULT_BACKEND', default='redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    'dispatch-due-reminders': {
        'task': 'apps.cases.tasks.dispatch_due_reminders',
        'schedule': crontab(minute='*'),
    },
    'expire-stale-sessions': {
        'task': 'apps.triage.tasks.expire_stale_sessions',
        'schedule': crontab(minute='*/5'),
    },
}


# Logging

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': env('DJANGO_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': env('APPS_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
    },
}


# AshaCare triage core

ASHACARE = {
    'CLASSIFIER_CONFIDENCE_THRESHOLD': env.float('CLASSIFIER_CONFIDENCE_THRESHOLD', default=0.6),
    'SESSION_TIMEOUT_SECONDS': env.int('SESSION_TIMEOUT_SECONDS', default=1800),
    'ACK_BUDGET_SECONDS': env.int('ACK_BUDGET_SECONDS', default=30),
    'ASSESSMENT_BUDGET_SECONDS': env.int('ASSESSMENT_BUDGET_SECONDS', default=120),
    'INTAKE_CAPACITY': env.int('INTAKE_CAPACITY', default=100),
    'INTAKE_MAX_PENDING': env.int('INTAKE_MAX_PENDING', default=500),
    'EXTRACTION_RETRY_ATTEMPTS': env.int('EXTRACTION_RETRY_ATTEMPTS', default=3),
    'STORAGE_RETRY_ATTEMPTS': env.int('STORAGE_RETRY_ATTEMPTS', default=3),
    'RETRY_BASE_DELAY_SECONDS': env.float('RETRY_BASE_DELAY_SECONDS', default=0.5),
    'CHANNEL_GATEWAYS': {
        channel: url
        for channel, url in {
            'whatsapp': env('WHATSAPP_GATEWAY_URL', default=''),
            'sms': env('SMS_GATEWAY_URL', default=''),
            'ussd': env('USSD_GATEWAY_URL', default=''),
            'voice': env('VOICE_GATEWAY_URL', default=''),
            'web': env('WEB_GATEWAY_URL', default=''),
            'dashboard': env('DASHBOARD_GATEWAY_URL', default=''),
        }.items()
        if url
    },
    'GATEWAY_API_KEY': env('GATEWAY_API_KEY', default=None),
    'WORKER_NOTIFICATION_CHANNEL': env('WORKER_NOTIFICATION_CHANNEL', default='dashboard'),
    'HF_TOKEN': env('HF_TOKEN', default=None),
    'HF_MODEL': env('HF_MODEL', default='Qwen/Qwen2.5-7B-Instruct'),
}
