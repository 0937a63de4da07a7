"""
Configuration for the VisNovel server.
Values come from environment variables (optionally via a .env file).
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Storage
DATA_DIR = os.environ.get("VISNOVEL_DATA_DIR", ".")
UPLOADS_DIR = os.environ.get("VISNOVEL_UPLOADS_DIR", "uploads")

# Pagination
WORDS_PER_PAGE = int(os.environ.get("WORDS_PER_PAGE", "600"))
INDEX_CACHE_SIZE = int(os.environ.get("INDEX_CACHE_SIZE", "32"))
EPUB_PARSE_TIMEOUT = float(os.environ.get("EPUB_PARSE_TIMEOUT", "30"))
# "empty": pages past the end come back blank, "error": they raise
PAGE_OVERFLOW = os.environ.get("PAGE_OVERFLOW", "empty").lower()

# Image prompts
SUMMARY_CACHE_SIZE = int(os.environ.get("SUMMARY_CACHE_SIZE", "1000"))
CLOUDFLARE_ACCOUNT_ID = os.environ.get("CLOUDFLARE_ACCOUNT_ID", "")
CLOUDFLARE_API_TOKEN = os.environ.get("CLOUDFLARE_API_TOKEN", "")
HUGGINGFACE_API_TOKEN = os.environ.get("HUGGINGFACE_API_TOKEN", "")

# Public URLs
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
BACKEND_URL = os.environ.get("BACKEND_URL", "http://localhost:5000")

# Server
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "5000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str = LOG_LEVEL):
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
