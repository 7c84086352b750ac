"""Canonical data-directory paths used throughout Parley."""

from pathlib import Path

DATA_DIR = Path("data")

PROMPTS_DIR = DATA_DIR / "prompts"
CRYPTO_DB_PATH = DATA_DIR / "matrix_crypto.db"
CONFIG_PATH = Path("config.yaml")
LOG_DIR = Path("logs")
