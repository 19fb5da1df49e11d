# scholarpay/settings.py

import os
import sys
from pathlib import Path

import dj_database_url
from django.core.management.utils import get_random_secret_key
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

# Django apps live in apps/ and are imported by their bare label
APPS_DIR = BASE_DIR / 'apps'
if str(APPS_DIR) not in sys.path:
    sys.path.insert(0, str(APPS_DIR))

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', get_random_secret_key())

DEBUG = os.environ.get('DJANGO_DEBUG', 'True').lower() == 'true'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', '127.0.0.1,localhost,testserver').split(',')


# =============================================================================
# APPLICATIONS
# =============================================================================

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',

    'utils',
    'academics',
    'students',
    'fees.apps.FeesConfig',
    'concessions.apps.ConcessionsConfig',
    'payments.apps.PaymentsConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'utils.middleware.AuditContextMiddleware',
    'scholarpay.middleware.ApiErrorMiddleware',
]

ROOT_URLCONF = 'scholarpay.urls'

TEMPLATES = []


# =============================================================================
# DATABASE
# =============================================================================

local_sqlite_url = 'sqlite:///' + str(BASE_DIR / 'db.sqlite3')

DATABASES = {
    'default': dj_database_url.config(
        default=os.environ.get('DATABASE_URL', local_sqlite_url),
        conn_max_age=int(os.environ.get('DATABASE_CONN_MAX_AGE', '600')),
    )
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('SCHOOL_TIME_ZONE', 'Asia/Kolkata')
USE_I18N = True
USE_TZ = True


# =============================================================================
# PAYMENT GATEWAYS
# =============================================================================

# Active gateway used for new payment requests: 'razorpay' or 'easebuzz'
PAYMENT_GATEWAY = os.environ.get('PAYMENT_GATEWAY', 'razorpay').lower()

PAYMENT_DEFAULT_CURRENCY = os.environ.get('PAYMENT_DEFAULT_CURRENCY', 'INR')
PAYMENT_DEFAULT_EXPIRY_HOURS = int(os.environ.get('PAYMENT_DEFAULT_EXPIRY_HOURS', '24'))
PAYMENT_LINK_EXPIRY_DAYS = int(os.environ.get('PAYMENT_LINK_EXPIRY_DAYS', '7'))
PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get('PAYMENT_GATEWAY_TIMEOUT', '15'))
PAYMENT_RECEIPT_ID_PREFIX = os.environ.get('PAYMENT_RECEIPT_ID_PREFIX', 'SCHOLAR')

# Receipt numbers look like RCP{branch code}/FIN/{session}/000001
FEE_RECEIPT_PREFIX = os.environ.get('FEE_RECEIPT_PREFIX', 'RCP')

APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:8000')

RAZORPAY_KEY_ID = os.environ.get('RAZORPAY_KEY_ID', '')
RAZORPAY_KEY_SECRET = os.environ.get('RAZORPAY_KEY_SECRET', '')
RAZORPAY_WEBHOOK_SECRET = os.environ.get('RAZORPAY_WEBHOOK_SECRET', '')

EASEBUZZ_MERCHANT_KEY = os.environ.get('EASEBUZZ_MERCHANT_KEY', '')
EASEBUZZ_MERCHANT_SALT = os.environ.get('EASEBUZZ_MERCHANT_SALT', '')
EASEBUZZ_ENV = os.environ.get('EASEBUZZ_ENV', 'test')


# =============================================================================
# LOGGING
# =============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'correlation_id': {
            '()': 'utils.log.CorrelationIdFilter',
        },
    },
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} [{correlation_id}] {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'filters': ['correlation_id'],
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO' if DEBUG else 'WARNING',
    },
    'loggers': {
        'payments': {
            'handlers': ['console'],
            'level': os.environ.get('PAYMENTS_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
