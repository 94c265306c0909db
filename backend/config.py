import os


# ====== Configuração via variáveis de ambiente ======
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "event_registration_db")

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
REGISTRATIONS_QUEUE = os.getenv("REGISTRATIONS_QUEUE", "registrations_queue")
REGISTRATIONS_DLQ = os.getenv("REGISTRATIONS_DLQ", "registrations_dlq")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "3000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
