"""Project-wide constants for DiffPilot."""

GIT_BINARY = "git"
DEFAULT_REMOTE = "origin"
DEFAULT_GIT_TIMEOUT_SECONDS = 60.0
SENTINEL_EXIT_CODE = -1

WORKSPACE_ENV_VAR = "DIFFPILOT_WORKSPACE"

MAX_DIFF_CONTENT_LENGTH = 500_000
MAX_BRANCH_NAME_LENGTH = 250
MAX_REMOTE_NAME_LENGTH = 100
NO_CHANGES_MESSAGE = "No changes found between branches."
MAX_FOCUS_AREAS_LENGTH = 2_000
MAX_SCOPE_LENGTH = 50
MAX_TICKET_URL_LENGTH = 2_000
COMMIT_DIFF_PREVIEW_LENGTH = 50_000
