"""
Django settings for fomo_system project.

Все значения, зависящие от окружения, читаются из переменных окружения,
значения по умолчанию подходят для локальной разработки.
"""

import os
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_list(name: str, default=None) -> list:
    value = os.environ.get(name)
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(',') if item.strip()]


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-fomo-claims-key')
DEBUG = env_bool('DJANGO_DEBUG', True)
ALLOWED_HOSTS = env_list('DJANGO_ALLOWED_HOSTS', ['localhost', '127.0.0.1', 'testserver'])

# Публичный адрес магазина, используется в ссылках подтверждения
SITE_URL = os.environ.get('SITE_URL', 'http://localhost:8000')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',

    'apps.campaigns',
    'apps.eligibility',
    'apps.claims',
    'apps.verification',
    'apps.waitlist',
    'apps.integrations',
    'apps.audit',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'fomo_system.urls'
WSGI_APPLICATION = 'fomo_system.wsgi.application'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# База данных: SQLite по умолчанию, PostgreSQL через DB_ENGINE=postgres.
# Для SQLite транзакции открываются как BEGIN IMMEDIATE, поэтому
# конкурирующие резервирования выстраиваются в очередь на блокировке записи.
if os.environ.get('DB_ENGINE', 'sqlite') == 'postgres':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ.get('POSTGRES_DB', 'fomo'),
            'USER': os.environ.get('POSTGRES_USER', 'fomo'),
            'PASSWORD': os.environ.get('POSTGRES_PASSWORD', ''),
            'HOST': os.environ.get('POSTGRES_HOST', 'localhost'),
            'PORT': os.environ.get('POSTGRES_PORT', '5432'),
            'CONN_MAX_AGE': int(os.environ.get('POSTGRES_CONN_MAX_AGE', '60')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.environ.get('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
            'OPTIONS': {
                'transaction_mode': 'IMMEDIATE',
                'timeout': 20,
            },
            # файловая тестовая БД: потоки в тестах конкурентности видят одни данные
            'TEST': {'NAME': str(BASE_DIR / 'test_db.sqlite3')},
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

CACHES = {
    'default': {
        'BACKEND': os.environ.get('CACHE_BACKEND', 'django.core.cache.backends.locmem.LocMemCache'),
        'LOCATION': os.environ.get('CACHE_LOCATION', 'fomo-claims'),
    }
}

LANGUAGE_CODE = 'ru'
TIME_ZONE = os.environ.get('TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Почта (уведомления о подтверждении и выдаче кода)
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.console.EmailBackend')
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.environ.get('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.environ.get('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = env_bool('EMAIL_USE_TLS', True)
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'noreply@example.com')

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'sweep-expired-claims': {
        'task': 'apps.claims.tasks.sweep_expired_claims_task',
        'schedule': crontab(minute=0),
    },
    'cleanup-expired-claims': {
        'task': 'apps.claims.tasks.cleanup_expired_claims_task',
        'schedule': crontab(minute=30),
    },
    'retry-pending-issuance': {
        'task': 'apps.claims.tasks.retry_pending_issuance_task',
        'schedule': crontab(minute='*/15'),
    },
}

# Настройки выдачи кодов. Ключи, которых нет здесь, берутся из
# apps.claims.conf.DEFAULTS
FOMO_CLAIMS = {
    'VERIFICATION_TTL_MINUTES': int(os.environ.get('FOMO_VERIFICATION_TTL_MINUTES', '30')),
    'RATE_LIMIT_PER_HOUR': int(os.environ.get('FOMO_RATE_LIMIT_PER_HOUR', '5')),
    'BANNED_IPS': env_list('FOMO_BANNED_IPS'),
    'ISSUER': {
        'provider_type': os.environ.get('FOMO_ISSUER', 'dummy'),
        'base_url': os.environ.get('WC_BASE_URL', ''),
        'consumer_key': os.environ.get('WC_CONSUMER_KEY', ''),
        'consumer_secret': os.environ.get('WC_CONSUMER_SECRET', ''),
        'timeout': int(os.environ.get('WC_TIMEOUT', '10')),
    },
    'NOTIFIER': {
        'provider_type': os.environ.get('FOMO_NOTIFIER', 'email'),
    },
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
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
        'apps': {
            'handlers': ['console'],
            'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
