import os
from dotenv import load_dotenv

load_dotenv()

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "your-super-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

# Storage
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")  # memory | mongo
MONGODB_URL = os.getenv("MONGODB_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "shesurvived_db")

# Feeds
AUDIO_SOURCE = os.getenv("AUDIO_SOURCE", "simulated")  # simulated | device
LOCATION_SOURCE = os.getenv("LOCATION_SOURCE", "simulated")  # simulated | device
AUDIO_CHUNK_INTERVAL_SECONDS = float(os.getenv("AUDIO_CHUNK_INTERVAL_SECONDS", "5"))
LOCATION_INTERVAL_SECONDS = float(os.getenv("LOCATION_INTERVAL_SECONDS", "3"))
CONTACT_SCAN_INTERVAL_SECONDS = float(os.getenv("CONTACT_SCAN_INTERVAL_SECONDS", "5"))
LOCATION_JITTER_DEGREES = float(os.getenv("LOCATION_JITTER_DEGREES", "0.0005"))
LIVE_STREAM_ON_TRIGGER = os.getenv("LIVE_STREAM_ON_TRIGGER", "true").lower() == "true"

# Sessions
CONTEXT_IDLE_SECONDS = float(os.getenv("CONTEXT_IDLE_SECONDS", "1800"))
CONTEXT_REAP_INTERVAL_SECONDS = float(os.getenv("CONTEXT_REAP_INTERVAL_SECONDS", "60"))

# Agadir, Morocco
DEFAULT_LOCATION = (
    float(os.getenv("DEFAULT_LATITUDE", "30.4278")),
    float(os.getenv("DEFAULT_LONGITUDE", "-9.5981")),
)
INITIAL_LOCATION_SPREAD_DEGREES = 0.01

# Alarm tone played on trusted contacts' devices
TONE_OUTPUT = os.getenv("TONE_OUTPUT", "log")  # log | none
TONE_WAVEFORM = os.getenv("TONE_WAVEFORM", "square")
TONE_FREQUENCIES = (880.0, 660.0)
TONE_CADENCE_SECONDS = float(os.getenv("TONE_CADENCE_SECONDS", "0.5"))
TONE_GAIN = float(os.getenv("TONE_GAIN", "0.3"))

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
