STATE_DIR_NAME = ".plan_orchestrator"
CONFIG_FILE = "config.yaml"
RUNS_DIR = "runs"
LOCK_FILE = ".lock"

PLAN_FILE = "plan.yaml"
STATE_FILE = "state.json"
CHECKPOINT_FILE = "checkpoint.json"
CHECKPOINT_HISTORY_FILE = "checkpoints.jsonl"
EVENTS_FILE = "events.jsonl"
SUMMARY_FILE = "summary.md"
SNAPSHOTS_DIR = "snapshots"

WINDOWS_LOCK_BYTES = 4096

DEFAULT_CONCURRENCY = 4
DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_RETRIES = 2
DEFAULT_TASK_TIMEOUT_SECONDS = 1800.0
DEFAULT_POLL_SECONDS = 0.05
DEFAULT_LONG_RUNNING_MINUTES = 120.0
DEFAULT_TIE_BREAK = "lexicographic"
TIE_BREAK_CHOICES = ("lexicographic", "reverse_lexicographic")

# Retry budget per complexity tier.
DEFAULT_TIER_RETRIES = {
    "simple": 2,
    "moderate": 2,
    "complex": 3,
}

# Validation gate per complexity tier. Simple plans skip validation.
TIER_THRESHOLDS = {
    "simple": None,
    "moderate": 7,
    "complex": 8,
}
TIER_MAX_ITERATIONS = {
    "simple": 0,
    "moderate": 1,
    "complex": 2,
}

RUBRIC_CATEGORIES = (
    "completeness",
    "dependency_accuracy",
    "executor_assignment",
    "feasibility",
    "testability",
)
RUBRIC_MAX_CATEGORY_SCORE = 2

DEFAULT_SNAPSHOT_IGNORE = (
    ".git/*",
    ".git",
    "__pycache__/*",
    "*.pyc",
    ".venv/*",
    "node_modules/*",
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STRUCTURAL = 2
EXIT_ESCALATION = 3
EXIT_ROLLBACK = 4
