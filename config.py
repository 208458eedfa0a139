# Belief Market Engine Configuration
# Defaults for the consensus pipeline, collateral ledger and settlement cron.
# Live tunables are seeded from here into the protocol_config table.

from pathlib import Path
from dotenv import load_dotenv
import os

# Load environment variables
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path)

# ============================================================================
# RUNTIME MODE
# ============================================================================

# DRY_RUN: If True, settlement instructions are computed and queued but never
#          submitted to the external ledger
DRY_RUN = os.getenv("DRY_RUN", "true").lower() in ("true", "1", "yes")

JSON_LOGGING = os.getenv("JSON_LOGGING", "false").lower() in ("true", "1", "yes")

# ============================================================================
# EXTERNAL LEDGER
# ============================================================================

LEDGER_API_URL = os.getenv("LEDGER_API_URL", "http://127.0.0.1:8899")
LEDGER_API_KEY = os.getenv("LEDGER_API_KEY")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))
LEDGER_EVENT_PAGE_SIZE = 200

# ============================================================================
# UNITS
# ============================================================================

# Both currency and pool tokens use 6 decimals
USDC_DECIMALS = 6
TOKEN_DECIMALS = 6
MICRO_UNITS = 10 ** USDC_DECIMALS

# ============================================================================
# COLLATERAL (belief locks)
# ============================================================================

BASE_SKIM_RATE = float(os.getenv("BASE_SKIM_RATE", "0.02"))  # 2% of position cost basis
MAX_SKIM_RATE = float(os.getenv("MAX_SKIM_RATE", "0.30"))  # Hard cap on skim / trade notional

# ============================================================================
# CONSENSUS & REDISTRIBUTION
# ============================================================================

EPSILON_PROBABILITY = 1e-10  # Clamp for belief / meta values
EPSILON_STAKES = 1e-8  # Floor weight for an open position with a tiny lock
LOO_WEIGHT_TOLERANCE = 1e-10  # Leave-one-out weights must sum to 1 within this

LEARNING_THRESHOLD = float(os.getenv("LEARNING_THRESHOLD", "1e-3"))  # Min JS disagreement drop (bits)
PENALTY_RATE_CAP = float(os.getenv("PENALTY_RATE_CAP", "0.10"))  # Max penalty per epoch
NEUTRAL_SKIM_RATE = float(os.getenv("NEUTRAL_SKIM_RATE", "0.01"))  # Baseline penalty for a zero score
DECOMPOSITION_QUALITY_THRESHOLD = float(os.getenv("DECOMPOSITION_QUALITY_THRESHOLD", "0.3"))  # Below this, naive aggregate

# ============================================================================
# EPOCH SETTLEMENT
# ============================================================================

MIN_NEW_SUBMISSIONS_FOR_REBASE = int(os.getenv("MIN_NEW_SUBMISSIONS_FOR_REBASE", "2"))
MIN_SETTLE_INTERVAL_SECONDS = int(os.getenv("MIN_SETTLE_INTERVAL_SECONDS", "3600"))
SETTLE_CLAIM_TIMEOUT_SECONDS = int(os.getenv("SETTLE_CLAIM_TIMEOUT_SECONDS", "300"))

# Settlement factor bounds (ppm fixed point)
PPM = 1_000_000
MIN_RESERVE_RATIO_PPM = 1_000  # 0.1%
MAX_RESERVE_RATIO_PPM = 999_000  # 99.9%
MIN_SETTLE_FACTOR_PPM = 10_000  # 0.01x
MAX_SETTLE_FACTOR_PPM = 100_000_000  # 100x

# ============================================================================
# AMM
# ============================================================================

DEFAULT_CURVE_K = int(os.getenv("DEFAULT_CURVE_K", "1"))  # Price coefficient per side
MAX_U256 = (1 << 256) - 1

# ============================================================================
# CRON LOOP
# ============================================================================

CRON_INTERVAL_SECONDS = int(os.getenv("CRON_INTERVAL_SECONDS", "60"))
MAX_SETTLEMENTS_PER_CYCLE = 50

# ============================================================================
# PATHS
# ============================================================================

MEMORY_DIR = Path(__file__).resolve().parent / "memory"
PROTOCOL_DB_FILE = Path(os.getenv("PROTOCOL_DB_FILE", str(MEMORY_DIR / "protocol.db")))
LOG_DIR = MEMORY_DIR / "logs"
LOG_FILE = "belief_market.log"

# Create directories
MEMORY_DIR.mkdir(parents=True, exist_ok=True)
LOG_DIR.mkdir(parents=True, exist_ok=True)
