import os

# Storage
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "artify")

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "43200"))  # 30 days

# Store
STORE_NAME = os.getenv("STORE_NAME", "Artify")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "inr")
GST_RATE = float(os.getenv("GST_RATE", "0.18"))  # 18%
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Stripe
STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_TIMEOUT = int(os.getenv("STRIPE_TIMEOUT", "10"))
STRIPE_STATEMENT_DESCRIPTOR = os.getenv("STRIPE_STATEMENT_DESCRIPTOR", "ARTIFY")

# Email
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "true").lower() == "true"
EMAIL_FROM = os.getenv("EMAIL_FROM", "orders@artify.local")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@artify.local")
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "5"))
EMAIL_MAX_ATTEMPTS = int(os.getenv("EMAIL_MAX_ATTEMPTS", "3"))
EMAIL_RETRY_WAIT = float(os.getenv("EMAIL_RETRY_WAIT", "4"))

# Uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("public", "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Development
ENABLE_DEV_SEED = os.getenv("ENABLE_DEV_SEED", "false").lower() == "true"
