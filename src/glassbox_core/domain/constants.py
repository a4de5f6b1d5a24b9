"""
Domain Constants

Centrally manages constants shared across the execution engine.
"""

# Default model used when a test does not override it
DEFAULT_MODEL = "claude-haiku-4-5-20251001"

# Model pricing (USD / 1M tokens)
MODEL_PRICING = {
    # Google
    "gemini-3-pro-preview": {"input": 1.25, "output": 10.0},
    "gemini-3-flash-preview": {"input": 0.10, "output": 0.40},
    "gemini-2.5-pro": {"input": 1.25, "output": 5.0},
    "gemini-2.5-flash": {"input": 0.075, "output": 0.30},
    # Anthropic
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 0.80, "output": 4.0},
    "claude-opus-4-5-20251101": {"input": 15.0, "output": 75.0},
    "claude-3-opus": {"input": 15.0, "output": 75.0},
    "claude-3-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    # OpenAI
    "gpt-4": {"input": 30.0, "output": 60.0},
    "gpt-4-turbo": {"input": 10.0, "output": 30.0},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-3.5-turbo": {"input": 1.5, "output": 2.0},
}

# Pricing tier for models missing from MODEL_PRICING
DEFAULT_PRICING = {"input": 2.0, "output": 4.0}

# Default pricing for local models (LMStudio, echo, etc.)
_LOCAL_MODEL_PRICING = {"input": 0.0, "output": 0.0}
LOCAL_MODEL_PREFIXES = ("lmstudio/", "echo/")

# Characters per token by model family prefix
CHARS_PER_TOKEN = {
    "gpt": 4.0,
    "o1": 4.0,
    "o3": 4.0,
    "claude": 3.5,
    "gemini": 4.0,
}
DEFAULT_CHARS_PER_TOKEN = 4.0

# Ordered fallback chains (primary model -> alternates)
DEFAULT_FALLBACK_CHAINS = {
    "claude-haiku-4-5-20251001": ["gemini-2.5-flash"],
    "claude-sonnet-4-5-20250929": ["claude-haiku-4-5-20251001", "gemini-2.5-pro"],
    "claude-opus-4-5-20251101": ["claude-sonnet-4-5-20250929"],
    "gemini-2.5-pro": ["gemini-2.5-flash"],
    "gemini-3-pro-preview": ["gemini-2.5-pro"],
    "gpt-4o": ["gpt-4o-mini"],
}

# Duration distribution thresholds (ms): fast < 5s <= medium < 15s <= slow
FAST_DURATION_MS = 5_000
SLOW_DURATION_MS = 15_000
DURATION_BUCKETS = ("fast", "medium", "slow")

# Failure taxonomy
CATEGORY_CONTENT_MISMATCH = "content_mismatch"
CATEGORY_TIMEOUT = "timeout"
CATEGORY_NETWORK = "network"
CATEGORY_BUDGET = "budget"
CATEGORY_BACKEND_UNAVAILABLE = "backend_unavailable"
CATEGORY_UNKNOWN = "unknown"
CATEGORY_INTERNAL = "internal"

FAILURE_CATEGORIES = (
    CATEGORY_CONTENT_MISMATCH,
    CATEGORY_TIMEOUT,
    CATEGORY_NETWORK,
    CATEGORY_BUDGET,
    CATEGORY_BACKEND_UNAVAILABLE,
    CATEGORY_UNKNOWN,
)

# Placeholder for results that never reached a model
NO_MODEL = "none"
