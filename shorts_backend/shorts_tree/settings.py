import os
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "120"))

# Where images, audio and composed videos are written
GENERATED_DIR = os.getenv(
    "GENERATED_DIR",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "generated")),
)
FILE_MAX_AGE_HOURS = int(os.getenv("FILE_MAX_AGE_HOURS", "24"))

# Vertical short-form frame
VIDEO_WIDTH = int(os.getenv("VIDEO_WIDTH", "1080"))
VIDEO_HEIGHT = int(os.getenv("VIDEO_HEIGHT", "1920"))
FPS = int(os.getenv("FPS", "30"))

CAPTION_FONT_FILE = os.getenv("CAPTION_FONT_FILE", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf")
CAPTION_FONT_SIZE = int(os.getenv("CAPTION_FONT_SIZE", "48"))
# Caption wrap width in characters; about 28 bold glyphs fit a 1080px frame at 48px
CAPTION_LINE_CHARS = int(os.getenv("CAPTION_LINE_CHARS", "28"))

# Comma-separated list of allowed origins for CORS (e.g., "https://app.example.com,http://localhost:3000").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    # Replicate and ElevenLabs are only needed when a template routes to them
    keys_present = bool(OPENAI_API_KEY)
    if not keys_present:
        logger.warning("Missing API keys: OPENAI_API_KEY")
    optional_missing = []
    if not REPLICATE_API_TOKEN: optional_missing.append("REPLICATE_API_TOKEN")
    if not ELEVENLABS_API_KEY: optional_missing.append("ELEVENLABS_API_KEY")
    if optional_missing:
        logger.info(f"Optional provider keys not set: {', '.join(optional_missing)}")
    return keys_present
