# backend/settings.py

"""
Environment configuration for the storefront backend.

Values are read once at import time from the process environment, with a
`.env` file next to this module taking part via python-dotenv.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
MONGO_URL = os.environ['MONGO_URL']
DB_NAME = os.environ['DB_NAME']

# Midtrans payment gateway
MIDTRANS_SERVER_KEY = os.environ.get('MIDTRANS_SERVER_KEY', '')
MIDTRANS_CLIENT_KEY = os.environ.get('MIDTRANS_CLIENT_KEY', '')
MIDTRANS_IS_PRODUCTION = os.environ.get('MIDTRANS_IS_PRODUCTION', 'false').lower() == 'true'

# RajaOngkir (Komerce) shipping rates
RAJAONGKIR_API_KEY = os.environ.get('RAJAONGKIR_API_KEY', '')
RAJAONGKIR_PLAN = os.environ.get('RAJAONGKIR_PLAN', 'free')
STORE_ORIGIN_CITY_ID = os.environ.get('STORE_ORIGIN_CITY_ID', '')

# Resend Email Configuration
RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'onboarding@resend.dev')

# JWT Configuration (tokens are minted by the auth layer, only verified here)
JWT_SECRET = os.environ.get('JWT_SECRET', 'store-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"

# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    CORS_ORIGINS = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    CORS_ORIGINS = DEFAULT_CORS_ORIGINS
