"""
Django settings for the Workshop Ops access-control service.
"""
import os
from pathlib import Path
import environ
import sentry_sdk
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from kombu import Queue, Exchange

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Initialize environment variables
env = environ.Env(
    DEBUG=(bool, False),
    ALLOWED_HOSTS=(list, []),
    DB_CONN_MAX_AGE=(int, 600),
    RATE_LIMIT_ENABLED=(bool, True),
    JSON_LOGS=(bool, False),
    LOG_LEVEL=(str, 'INFO'),
    JWT_EXPIRATION_HOURS=(int, 24),
    AUDIT_PAGE_SIZE=(int, 50),
    AUDIT_MAX_PAGE_SIZE=(int, 100),
)

# Read .env file if it exists
environ.Env.read_env(os.path.join(BASE_DIR, '.env'))

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = env('SECRET_KEY')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = env('DEBUG')

ALLOWED_HOSTS = env('ALLOWED_HOSTS')

USE_X_FORWARDED_HOST = True
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

# Application definition
INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.staticfiles',

    # Third-party apps
    'rest_framework',
    'drf_spectacular',
    'corsheaders',
    'django_ratelimit',

    # Workshop apps
    'apps.core',
    'apps.organizations',
    'apps.rbac',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',

    # Custom middleware
    'apps.core.middleware.RequestIDMiddleware',
    'apps.rbac.middleware.OrganizationContextMiddleware',
    'apps.rbac.middleware.TenantIsolationMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# Database
DATABASES = {
    'default': env.db('DATABASE_URL'),
}
DATABASES['default']['CONN_MAX_AGE'] = env('DB_CONN_MAX_AGE')

# Configure based on database engine
if 'postgresql' in DATABASES['default']['ENGINE']:
    DATABASES['default']['OPTIONS'] = {
        'connect_timeout': 10,
    }

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Custom User Model
# Identity rows are owned by apps.rbac; authentication is bearer JWT only
AUTH_USER_MODEL = 'rbac.User'

# REST Framework
REST_FRAMEWORK = {
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 50,
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'apps.core.authentication.MiddlewareAuthentication',  # Use user from OrganizationContextMiddleware
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'apps.core.permissions.HasPermissionKeys',
    ],
    'EXCEPTION_HANDLER': 'apps.core.exceptions.custom_exception_handler',
}

# DRF Spectacular (OpenAPI)
SPECTACULAR_SETTINGS = {
    'TITLE': 'Workshop Ops Access Control API',
    'DESCRIPTION': '''
Role-based access control for the workshop operations platform.

## Authentication

All API requests require JWT authentication:
- `Authorization: Bearer <token>`

The organization is always derived from the authenticated user. Organization ids
supplied by the client are never trusted.

## Authorization

Effective permissions are resolved per request:
1. A user holding an active role flagged `is_system` (the `admin` role) is allowed everything.
2. Otherwise: permissions of all active roles, plus active grant overrides, minus active
   revoke overrides. Revocation always wins.

Overrides with an `expires_at` in the past are ignored at read time.

## Errors

Permission denials, cross-organization access and missing rows all return the same
`403 NOT_AUTHORIZED` body so that the existence of a resource is never revealed.

## Cache invalidation

Every authenticated response carries `X-Access-Version`. When the value changes the
client must re-fetch `/v1/permissions/me`.
    ''',
    'VERSION': '1.0.0',
    'SERVE_INCLUDE_SCHEMA': False,
    'COMPONENT_SPLIT_REQUEST': True,
    'SCHEMA_PATH_PREFIX': r'/v1/',
    'SWAGGER_UI_SETTINGS': {
        'deepLinking': True,
        'persistAuthorization': True,
        'displayOperationId': True,
        'filter': True,
    },
    'SECURITY': [
        {
            'JWTAuth': []
        }
    ],
    'APPEND_COMPONENTS': {
        'securitySchemes': {
            'JWTAuth': {
                'type': 'http',
                'scheme': 'bearer',
                'bearerFormat': 'JWT',
                'description': 'JWT issued by the identity service or by `manage.py create_admin`.',
            }
        }
    },
    'TAGS': [
        {'name': 'System', 'description': 'Health checks'},
        {'name': 'RBAC - Permissions', 'description': 'Permission catalog and permission checks'},
        {'name': 'RBAC - Roles', 'description': 'Role management and permission assignments'},
        {'name': 'RBAC - Assignments', 'description': 'Role assignments for users'},
        {'name': 'RBAC - Overrides', 'description': 'Per-user permission overrides'},
        {'name': 'RBAC - Users', 'description': 'User access status'},
        {'name': 'RBAC - Audit', 'description': 'Audit log viewing for compliance'},
    ],
}

# ============================================================================
# SECURITY SETTINGS
# ============================================================================

if not DEBUG:
    SECURE_SSL_REDIRECT = env.bool('SECURE_SSL_REDIRECT', default=True)
    SECURE_HSTS_SECONDS = 31536000  # 1 year
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_PRELOAD = True
else:
    SECURE_SSL_REDIRECT = False
    SECURE_HSTS_SECONDS = 0

SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = 'DENY'

# CORS Configuration
CORS_ALLOW_ALL_ORIGINS = DEBUG  # Only allow all origins in development
CORS_ALLOWED_ORIGINS = env.list('CORS_ALLOWED_ORIGINS', default=[])

if not DEBUG:
    for origin in CORS_ALLOWED_ORIGINS:
        if not origin.startswith('https://'):
            raise environ.ImproperlyConfigured(
                f"CORS origin must use HTTPS in production: {origin}. "
                f"Update CORS_ALLOWED_ORIGINS in .env"
            )

CORS_ALLOW_HEADERS = [
    'accept',
    'accept-encoding',
    'authorization',
    'content-type',
    'origin',
    'user-agent',
    'x-request-id',
]
CORS_EXPOSE_HEADERS = ['x-access-version', 'x-request-id']

# Cache
# Redis is used whenever configured; the per-process cache only backs development
REDIS_URL = env('REDIS_URL', default=None)

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': REDIS_URL,
            'OPTIONS': {
                'CLIENT_CLASS': 'django_redis.client.DefaultClient',
                'SOCKET_CONNECT_TIMEOUT': 5,
                'SOCKET_TIMEOUT': 5,
                'CONNECTION_POOL_KWARGS': {
                    'max_connections': 50,
                    'retry_on_timeout': True,
                },
            },
            'KEY_PREFIX': 'workshop',
            'TIMEOUT': 300,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'workshop',
        }
    }

# Celery Configuration
CELERY_BROKER_URL = env('CELERY_BROKER_URL', default=REDIS_URL or 'memory://')
CELERY_RESULT_BACKEND = env('CELERY_RESULT_BACKEND', default=None)

CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'

CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 5 * 60
CELERY_TASK_SOFT_TIME_LIMIT = 4 * 60

CELERY_TASK_DEFAULT_QUEUE = 'default'
CELERY_TASK_DEFAULT_EXCHANGE = 'default'
CELERY_TASK_DEFAULT_ROUTING_KEY = 'default'

CELERY_TASK_QUEUES = (
    Queue('default', Exchange('default'), routing_key='default'),
    Queue('audit', Exchange('audit'), routing_key='audit'),
)

CELERY_TASK_ROUTES = {
    'apps.rbac.tasks.*': {'queue': 'audit'},
}

CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_ACKS_LATE = True

# Rate Limiting
RATE_LIMIT_ENABLED = env('RATE_LIMIT_ENABLED')

RATELIMIT_USE_CACHE = 'default'
RATELIMIT_ENABLE = RATE_LIMIT_ENABLED
RATELIMIT_VIEW = 'apps.core.exceptions.ratelimit_view'
RATELIMIT_CHECK_RATE = env('RATELIMIT_CHECK_RATE', default='600/m')

# Audit log pagination
AUDIT_PAGE_SIZE = env('AUDIT_PAGE_SIZE')
AUDIT_MAX_PAGE_SIZE = env('AUDIT_MAX_PAGE_SIZE')

# Logging Configuration
LOG_LEVEL = env('LOG_LEVEL')
JSON_LOGS = env('JSON_LOGS')
LOG_DIR = Path(env('LOG_DIR', default=str(BASE_DIR / 'logs')))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'json': {
            '()': 'apps.core.logging.JSONFormatter',
        },
        'verbose': {
            '()': 'apps.core.logging.MaskingFormatter',
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
        },
    },
    'filters': {
        'request_context': {
            '()': 'apps.core.middleware.LoggingFilter',
        },
    },
    'handlers': {
        'console': {
            'level': LOG_LEVEL,
            'class': 'logging.StreamHandler',
            'formatter': 'json' if JSON_LOGS else 'verbose',
            'filters': ['request_context'],
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'workshop.log',
            'maxBytes': 1024 * 1024 * 10,  # 10 MB
            'backupCount': 5,
            'formatter': 'json' if JSON_LOGS else 'verbose',
            'filters': ['request_context'],
        },
        'security': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'security.log',
            'maxBytes': 1024 * 1024 * 10,  # 10 MB
            'backupCount': 10,
            'formatter': 'json' if JSON_LOGS else 'verbose',
            'filters': ['request_context'],
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console', 'file'],
            'level': 'ERROR',
            'propagate': False,
        },
        'celery': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console', 'file'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'security': {
            'handlers': ['security', 'console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# Sentry Configuration
SENTRY_DSN = env('SENTRY_DSN', default=None)
SENTRY_ENVIRONMENT = env('SENTRY_ENVIRONMENT', default='development')
SENTRY_RELEASE = env('SENTRY_RELEASE', default=None)

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            CeleryIntegration(),
        ],
        environment=SENTRY_ENVIRONMENT,
        release=SENTRY_RELEASE,
        traces_sample_rate=0.1 if not DEBUG else 1.0,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
    )

# JWT Authentication Configuration
# SECURITY: JWT_SECRET_KEY must be set explicitly and must differ from SECRET_KEY
JWT_SECRET_KEY = env('JWT_SECRET_KEY')
JWT_ALGORITHM = 'HS256'
JWT_EXPIRATION_HOURS = env('JWT_EXPIRATION_HOURS')

if len(JWT_SECRET_KEY) < 32:
    raise environ.ImproperlyConfigured(
        "JWT_SECRET_KEY must be at least 32 characters long. "
        "Current length: {}. Generate a strong key with: "
        "python -c \"import secrets; print(secrets.token_urlsafe(32))\"".format(len(JWT_SECRET_KEY))
    )

if JWT_SECRET_KEY == SECRET_KEY:
    raise environ.ImproperlyConfigured(
        "JWT_SECRET_KEY must be different from SECRET_KEY. "
        "Generate a separate JWT key with: "
        "python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
