"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = int(os.getenv("WS_RATE_LIMIT_PER_SEC", "10"))  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes

# --- Rooms ---
MAX_USERNAME_LENGTH = 20
MAX_ROOM_ID_LENGTH = 64
MAX_CHAT_LENGTH = 500

# --- Game ---
NEXT_ROUND_DELAY_MS = int(os.getenv("NEXT_ROUND_DELAY_MS", "5000"))
POINTS_PER_CORRECT_ANSWER = int(os.getenv("POINTS_PER_CORRECT_ANSWER", "100"))
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", "")  # empty = built-in questions

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
