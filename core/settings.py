import os
from pathlib import Path
from dotenv import load_dotenv # 🔥 Cargador de secretos

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARGAR VARIABLES DE ENTORNO ---
# Carga el archivo .env desde la raíz del proyecto
load_dotenv(BASE_DIR / '.env')

# --- SEGURIDAD ---
SECRET_KEY = os.getenv('SECRET_KEY')
DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', '').split(',')

# -------------------------------------------------
# CSRF / CORS – consola web (SPA) que consume la API
# -------------------------------------------------
TRUSTED_URLS = [u for u in os.getenv('TRUSTED_ORIGINS', '').split(',') if u]

CSRF_TRUSTED_ORIGINS = TRUSTED_URLS
CORS_ALLOWED_ORIGINS = TRUSTED_URLS

CSRF_COOKIE_NAME = 'csrftoken'
CSRF_COOKIE_HTTPONLY = False
CSRF_COOKIE_SECURE = True
CSRF_COOKIE_SAMESITE = 'Lax'
CSRF_HEADER_NAME = 'HTTP_X_CSRFTOKEN'

SESSION_COOKIE_SECURE = True
SESSION_COOKIE_SAMESITE = 'Lax'

CORS_ALLOW_CREDENTIALS = True
CORS_ALLOW_HEADERS = [
    'accept',
    'accept-encoding',
    'authorization',
    'content-type',
    'origin',
    'user-agent',
    'x-csrftoken',
    'x-requested-with',
]

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
APPEND_SLASH = True

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',

    'rest_framework',
    'corsheaders',

    # Núcleo de workflows
    'bodega',
    'billing',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
]

ROOT_URLCONF = 'core.urls'

LANGUAGE_CODE = 'es-gt'
TIME_ZONE = 'America/Guatemala'
USE_I18N = True
USE_TZ = True

# --- Base de datos (sólo sesiones/auth; el estado de negocio vive en servicios externos) ---
DATABASES = {
    'default': {
        'ENGINE': os.getenv('DATABASE_ENGINE', 'django.db.backends.mysql'),
        'NAME': os.getenv('DATABASE_NAME'),
        'USER': os.getenv('DATABASE_USER'),
        'PASSWORD': os.getenv('DATABASE_PASSWORD'),
        'HOST': os.getenv('DATABASE_HOST', 'localhost'),
        'PORT': os.getenv('DATABASE_PORT', '3306'),
    }
}

# --- Cache compartida (estado FEL, sesiones y reservas de envío) ---
# Debe compartirse entre workers web y Celery; LocMemCache no sirve (ver FEL_REQUIRE_SHARED_CACHE).
CACHES = {
    'default': {
        'BACKEND': os.getenv(
            'CACHE_BACKEND',
            'django.core.cache.backends.redis.RedisCache',
        ),
        'LOCATION': os.getenv('CACHE_LOCATION', 'redis://localhost:6379/1'),
    }
}

# --- DRF ---
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------------------------------
# Celery (reconciliación FEL en background)
# -------------------------------------------------
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() == 'true'
CELERY_TIMEZONE = TIME_ZONE

# -------------------------------------------------
# FEL (Facturación Electrónica en Línea - SAT)
# -------------------------------------------------
FEL_CERTIFIER = os.getenv('FEL_CERTIFIER', 'digifact')
FEL_CERTIFIER_BASE_URL = os.getenv('FEL_CERTIFIER_BASE_URL', 'http://localhost:8000/api/v1')
FEL_CERTIFIER_TOKEN = os.getenv('FEL_CERTIFIER_TOKEN', '')
FEL_REQUEST_TIMEOUT = int(os.getenv('FEL_REQUEST_TIMEOUT', 15))  # segundos

FEL_POLL_INTERVAL_SECONDS = int(os.getenv('FEL_POLL_INTERVAL_SECONDS', 2))
FEL_TIMEOUT_SECONDS = int(os.getenv('FEL_TIMEOUT_SECONDS', 60))
FEL_DEFAULT_MAX_ATTEMPTS = int(os.getenv('FEL_DEFAULT_MAX_ATTEMPTS', 3))
FEL_MAX_POLL_FAILURES = int(os.getenv('FEL_MAX_POLL_FAILURES', 3))
FEL_RECONCILE_MAX_RETRIES = int(os.getenv('FEL_RECONCILE_MAX_RETRIES', 6))
# Reserva de orden / factura tras una cancelación local, hasta que la conciliación la libere
FEL_RECONCILE_HOLD_SECONDS = int(os.getenv('FEL_RECONCILE_HOLD_SECONDS', 2 * 60 * 60))
# Sesiones y reservas exigen una cache compartida entre procesos
FEL_REQUIRE_SHARED_CACHE = True

FEL_TRANSPORT_CLASS = 'billing.services.fel.client.CertifierClient'
FEL_INVOICE_STORE_CLASS = 'billing.services.fel.store.CacheInvoiceStore'
FEL_SESSION_REGISTRY_CLASS = 'billing.services.fel.store.CacheSessionRegistry'
FEL_ORDER_SERVICE_CLASS = 'billing.services.fel.client.OrderServiceClient'
FEL_ISSUER_ROLES = ('operario', 'supervisor', 'gerente', 'admin')

FEL_WALKIN_PLACEHOLDERS = ('C/F', 'CF', '0')
FEL_ELIGIBLE_ORDER_STATUSES = ('delivered',)
FEL_SUPPORT_EMAIL = os.getenv('FEL_SUPPORT_EMAIL', 'soporte@smartorders.com')

# --- LOGGING (archivo rotativo) ---
(BASE_DIR / 'logs').mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': BASE_DIR / 'logs/django.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': True,
        },
        'billing': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': False,
        },
        'bodega': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
