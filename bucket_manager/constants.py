"""Centralized constants for Bucket Manager to eliminate duplicate strings."""

# Reserved server name for the implicit local host target
LOCAL_SERVER_NAME = "local"

# Compose project markers, in lookup order
COMPOSE_FILE_NAMES = (
    "compose.yaml",
    "compose.yml",
    "docker-compose.yaml",
    "docker-compose.yml",
)

# Stack roots tried when no root is configured (local and remote)
DEFAULT_STACK_ROOTS = ("~/bucket", "~/compose-bucket")

# Container runtimes the compose commands can be issued through
SUPPORTED_RUNTIMES = ("podman", "docker")
DEFAULT_RUNTIME = "podman"

# SSH defaults
DEFAULT_SSH_PORT = 22
SSH_KEEPALIVE_INTERVAL = 30

# Concurrency limits
MAX_CONCURRENT_STATUS_CHECKS = 4
MAX_CONCURRENT_DISCOVERIES = 8

# Compose commands
COMPOSE_PS_ARGS = ("compose", "ps", "--format", "json", "-a")
REMOTE_FIND_TEMPLATE = (
    "find {root} -maxdepth 2 \\( -name 'compose.y*ml' -o -name 'docker-compose.y*ml' \\) "
    "-printf '%h\\n' | sort -u"
)

# Output substrings that mean "the stack simply is not running"
STATUS_DOWN_MARKERS = ("no containers found", "no such file or directory")
