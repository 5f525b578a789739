"""
Django settings for HostPilot project.
"""

from pathlib import Path
import os
from dotenv import load_dotenv

load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-change-this-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'True') == 'True'

# ALLOWED_HOSTS: 允许访问的主机列表
# 如果设置了环境变量，会追加到默认值后面（支持追加模式）
default_allowed_hosts = ['localhost', '127.0.0.1']
env_allowed_hosts = os.getenv('ALLOWED_HOSTS', '')
if env_allowed_hosts:
    additional_hosts = [h.strip() for h in env_allowed_hosts.split(',') if h.strip()]
    ALLOWED_HOSTS = default_allowed_hosts + additional_hosts
else:
    ALLOWED_HOSTS = default_allowed_hosts

# Application definition
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'corsheaders',
    'apps.accounts',
    'apps.hosts',
    'apps.deployments',
    'apps.health',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
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
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# Database
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

# Custom User Model
AUTH_USER_MODEL = 'accounts.User'

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]

# Internationalization
LANGUAGE_CODE = 'zh-hans'
TIME_ZONE = 'Asia/Shanghai'
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# REST Framework settings
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
}

# CORS settings
# 如果设置了环境变量，会追加到默认值后面（支持追加模式）
default_cors_origins = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]
env_cors_origins = os.getenv('CORS_ALLOWED_ORIGINS', '')
if env_cors_origins:
    additional_origins = [origin.strip() for origin in env_cors_origins.split(',') if origin.strip()]
    CORS_ALLOWED_ORIGINS = default_cors_origins + additional_origins
else:
    CORS_ALLOWED_ORIGINS = default_cors_origins

CORS_ALLOW_CREDENTIALS = True

# Session settings
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = 'Lax'
CSRF_COOKIE_SAMESITE = 'Lax'
default_csrf_origins = list(default_cors_origins)
env_csrf_origins = os.getenv('CSRF_TRUSTED_ORIGINS', '')
if env_csrf_origins:
    additional_origins = [origin.strip() for origin in env_csrf_origins.split(',') if origin.strip()]
    CSRF_TRUSTED_ORIGINS = default_csrf_origins + additional_origins
else:
    CSRF_TRUSTED_ORIGINS = default_csrf_origins

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '[{asctime}] {levelname} {name} {threadName}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'paramiko': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}

# 敏感字段加密密钥（SSH密码、私钥、回调API Key）
# 必须通过环境变量提供，未配置时读写加密字段会报错
FIELD_ENCRYPTION_KEY = os.getenv('ENCRYPTION_KEY', '')

# 每个用户最多可添加的主机数量
MAX_HOSTS_PER_USER = int(os.getenv('MAX_HOSTS_PER_USER', '2'))

# SSH连接参数（秒）
SSH_CONNECT_TIMEOUT = int(os.getenv('SSH_CONNECT_TIMEOUT', '30'))
SSH_KEEPALIVE_INTERVAL = int(os.getenv('SSH_KEEPALIVE_INTERVAL', '15'))
# 存活探测超时，不超过5秒
SSH_PROBE_TIMEOUT = min(int(os.getenv('SSH_PROBE_TIMEOUT', '3')), 5)
# 连接监控间隔
SSH_MONITOR_INTERVAL = int(os.getenv('SSH_MONITOR_INTERVAL', '30'))

# 部署流水线
DEPLOYMENT_MAX_WORKERS = int(os.getenv('DEPLOYMENT_MAX_WORKERS', '4'))
DEPLOYMENT_VERIFY_GRACE_SECONDS = int(os.getenv('DEPLOYMENT_VERIFY_GRACE_SECONDS', '3'))
DEPLOYMENT_VERIFY_ATTEMPTS = int(os.getenv('DEPLOYMENT_VERIFY_ATTEMPTS', '5'))
# 超过该时长仍未结束的部署任务视为中断
DEPLOYMENT_STALE_MINUTES = int(os.getenv('DEPLOYMENT_STALE_MINUTES', '60'))
DEPLOYMENT_MONITOR_INTERVAL = int(os.getenv('DEPLOYMENT_MONITOR_INTERVAL', '60'))

# 控制面板对外地址（写入远程主机的实例描述文件）
CONTROL_PLANE_URL = os.getenv('CONTROL_PLANE_URL', 'http://localhost:8000')
