from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

FRONTEND_URL = 'https://shop.example.com'

BKASH = {
    **BKASH,
    'MOCK': True,
    'WEBHOOK_SECRET': '',
    'CALLBACK_URL': 'https://api.example.com/api/bkash/callback',
}
