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

RAZORPAY_KEY_ID = 'rzp_test_key'
RAZORPAY_SECRET_KEY = 'test-secret'
RAZORPAY_WEBHOOK_SECRET = 'test-webhook-secret'
RAZORPAY_BASE_URL = 'https://api.razorpay.test/v1'

PAYMENTS_RECONCILE_DELAY = 0
