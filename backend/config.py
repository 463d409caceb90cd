"""
Application Configuration

Loads configuration from environment variables with sensible defaults.
All hardcoded paths and settings should be defined here.
"""

import os
from pathlib import Path
from dotenv import load_dotenv
import psutil

# Load .env file if it exists (override=True means .env takes precedence over system env vars)
load_dotenv(override=True)

# =============================================================================
# BASE PATHS
# =============================================================================

# Base directory (where this config file is located)
BASE_DIR = Path(__file__).resolve().parent

# =============================================================================
# DATABASE CONFIGURATION
# =============================================================================

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./radiology_diagnostics.db")

# =============================================================================
# AUTHENTICATION
# =============================================================================

SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# =============================================================================
# APPLICATION SETTINGS
# =============================================================================

DEBUG = os.getenv("DEBUG", "True").lower() in ("true", "1", "yes")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# Set TESTING=1 to serve the deterministic mock backend instead of real weights
TESTING_MODE = os.getenv("TESTING", "0") == "1"

# =============================================================================
# FILE STORAGE
# =============================================================================

UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", str(BASE_DIR / "uploads")))
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

# Maximum file upload size (in bytes) - default 10MB
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Maximum number of images in one study upload
MAX_IMAGES_PER_UPLOAD = int(os.getenv("MAX_IMAGES_PER_UPLOAD", "5"))

# =============================================================================
# MODEL REGISTRY
# =============================================================================

# One subdirectory per model: {MODELS_ROOT}/{model_id}/model.json + weight shards
MODELS_ROOT = Path(os.getenv("MODELS_ROOT", str(BASE_DIR.parent / "ml-models")))

# =============================================================================
# MODEL INFERENCE SETTINGS
# =============================================================================

# "torch" loads TorchScript / state_dict weights, "mock" returns deterministic scores
INFERENCE_BACKEND = os.getenv("INFERENCE_BACKEND", "mock" if TESTING_MODE else "torch")

# Wall-clock limit for analysing one record
INFERENCE_TIMEOUT_MS = int(os.getenv("INFERENCE_TIMEOUT_MS", "60000"))

# Number of loaded models kept in memory (LRU)
MODEL_CACHE_CAPACITY = int(os.getenv("MODEL_CACHE_CAPACITY", "4"))

# Inference worker threads - defaults to the number of physical cores
WORKER_POOL_SIZE = int(os.getenv("WORKER_POOL_SIZE", "0")) or (psutil.cpu_count(logical=False) or 1)

# =============================================================================
# CORS SETTINGS
# =============================================================================

# Comma-separated list of allowed origins, or "*" for all
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
CORS_ALLOW_CREDENTIALS = os.getenv("CORS_ALLOW_CREDENTIALS", "True").lower() in ("true", "1", "yes")

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
# "stdout", "file" or "stdout,file"
LOG_OUTPUT = os.getenv("LOG_OUTPUT", "stdout")
LOG_FILE = os.getenv("LOG_FILE", str(BASE_DIR / "logs" / "app.json.log"))


# =============================================================================
# HELPER FUNCTION
# =============================================================================

def get_config_summary():
    """Returns a summary of current configuration (for debugging)."""
    return {
        "database_url": DATABASE_URL[:20] + "..." if len(DATABASE_URL) > 20 else DATABASE_URL,
        "debug": DEBUG,
        "host": HOST,
        "port": PORT,
        "uploads_dir": str(UPLOADS_DIR),
        "models_root": str(MODELS_ROOT),
        "models_root_exists": MODELS_ROOT.exists(),
        "inference_backend": INFERENCE_BACKEND,
        "inference_timeout_ms": INFERENCE_TIMEOUT_MS,
        "model_cache_capacity": MODEL_CACHE_CAPACITY,
        "worker_pool_size": WORKER_POOL_SIZE,
        "max_upload_bytes": MAX_UPLOAD_BYTES,
    }
