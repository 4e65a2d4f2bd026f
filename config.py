import os
from dotenv import load_dotenv

load_dotenv()

ENV = os.getenv("ENV", "dev")
if ENV not in ("dev", "production"):
    raise ValueError(f"Invalid ENV value: '{ENV}'. Must be 'dev' or 'production'.")

# ── Recognition provider (Doubao / Volcengine Ark) ─────────────────────────────
# The key is read but not enforced here: a missing key must not stop the
# server from starting. recognition_client refuses every request instead
# (ConfigurationError → HTTP 500) so the misconfiguration is visible per call.
DOUBAO_API_KEY: str = os.getenv("DOUBAO_API_KEY", "").strip()
DOUBAO_API_URL: str = os.getenv(
    "DOUBAO_API_URL",
    "https://ark.cn-beijing.volces.com/api/v3/chat/completions",
)
DOUBAO_MODEL: str = os.getenv("DOUBAO_MODEL", "doubao-seed-1-6-250615")

# Hard wall-clock ceiling for one recognition round-trip, in seconds.
# The scheduler assumes every task settles, so this must stay finite.
RECOGNITION_TIMEOUT_SECONDS: float = float(os.getenv("RECOGNITION_TIMEOUT_SECONDS", "60"))

# ── Page access gate ───────────────────────────────────────────────────────────
# Either a plaintext password or a bcrypt hash of it. With neither set the
# gate refuses every attempt (fail closed).
# Generate hash: python -c "import bcrypt; print(bcrypt.hashpw(b'pw', bcrypt.gensalt()).decode())"
PAGE_ACCESS_PASSWORD: str = os.getenv("PAGE_ACCESS_PASSWORD", "")
PAGE_ACCESS_PASSWORD_HASH: str = os.getenv("PAGE_ACCESS_PASSWORD_HASH", "")

# ── Batch orchestration ────────────────────────────────────────────────────────
# Max recognition jobs in flight at once during "recognize all".
BATCH_CONCURRENCY: int = int(os.getenv("BATCH_CONCURRENCY", "5"))
if BATCH_CONCURRENCY < 1:
    raise ValueError(f"BATCH_CONCURRENCY must be >= 1, got {BATCH_CONCURRENCY}.")

# Whether "recognize all" re-offers jobs that previously failed.
# Off: a second "recognize all" over a fully resolved batch makes no calls,
# and failed jobs are retried one at a time via POST /jobs/{id}/recognize.
RERUN_FAILED: bool = os.getenv("RERUN_FAILED", "false").lower() == "true"

# ── Uploads ────────────────────────────────────────────────────────────────────
MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "10"))

# Longest edge (pixels) sent to the provider. Larger images are downscaled
# before submission — card text stays legible well below this.
MAX_IMAGE_EDGE: int = int(os.getenv("MAX_IMAGE_EDGE", "2048"))

# ── Mock mode ──────────────────────────────────────────────────────────────────
# Set MOCK_RECOGNITION=true in .env to skip all provider calls.
# Jobs still move through the full lifecycle but every card comes back
# with all five fields null. No tokens consumed, no API key needed.
MOCK_RECOGNITION: bool = os.getenv("MOCK_RECOGNITION", "false").lower() == "true"
