"""Constants for the agent loop and subagent orchestration.

Single source of truth for the magic numbers used across the loop, the
subagent orchestrator and the provider adapters.
"""

# ---------------------------------------------------------------------------
# Agent loop limits
# ---------------------------------------------------------------------------
MAX_ITERATIONS = 25
DOOM_LOOP_THRESHOLD = 3

# ---------------------------------------------------------------------------
# Rate-limit backoff
# ---------------------------------------------------------------------------
MAX_BACKOFF_SECONDS = 60
BACKOFF_BASE_SECONDS = 2
RATE_LIMIT_STATUS_CODE = 429
RATE_LIMIT_REASON = "Rate limit exceeded"

# ---------------------------------------------------------------------------
# Provider defaults
# ---------------------------------------------------------------------------
DEFAULT_MAX_TOKENS = 8192
THINKING_PREFIX = "[Thinking] "

# ---------------------------------------------------------------------------
# Subagents
# ---------------------------------------------------------------------------
SPAWN_TOOL_NAME = "task"
SUMMARY_MAX_CHARS = 4000
AGGREGATE_SEPARATOR = "\n\n---\n\n"
SUBAGENT_CANCELLED_MESSAGE = "Subagent execution cancelled by user."
CONTINUE_MESSAGE = (
    "Continue working on the task. You have more iterations available now."
)
DEFAULT_SUBAGENT_TIMEOUT_SECONDS = 120
DEFAULT_MAX_CONCURRENT = 5

# ---------------------------------------------------------------------------
# Output truncation
# ---------------------------------------------------------------------------
TOOL_RESULT_LOG_PREVIEW_CHARS = 200
ERROR_EVENT_MAX_CHARS = 1000

# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------
CONFIRMATION_TIMEOUT_SECONDS = 300
MAX_PENDING_CONFIRMATIONS = 64
