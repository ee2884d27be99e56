import os
from typing import Optional, Tuple

# ========= Static config =========
LOG_PREFIX = "[SMART-E2B]"
SERVER_NAME = "smart-e2b"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"

SANDBOX_TTL_SECONDS = 60 * 60
IDLE_EVICTION_SECONDS = 30 * 60
SWEEP_INTERVAL_SECONDS = 60

DEFAULT_EXECUTION_TIMEOUT_MS = 180_000
MIN_EXECUTION_TIMEOUT_MS = 1
MAX_EXECUTION_TIMEOUT_MS = 60 * 60 * 1000

# Substrings that mark JSON-shaped chatter from dependencies rather than frames.
DEFAULT_DEBUG_MARKERS: Tuple[str, ...] = ("Creating",)

DEFAULT_SANDBOX_IDS = {
    "javascript": "default-js",
    "python": "default-py",
    "filesystem": "default-fs",
}

# ========= SSH backend =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
SSH_INTERPRETERS = {
    "python": "python3",
    "js": "node",
}
SSH_SCRATCH_DIR = "/tmp/smart-e2b"

BACKENDS = ("e2b", "ssh")


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.BACKEND: str = "e2b"
        self.E2B_API_KEY: Optional[str] = None
        self.DEBUG_MARKERS: Tuple[str, ...] = DEFAULT_DEBUG_MARKERS
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True

    def load_from_env(self):
        self.BACKEND = os.environ.get("SMART_E2B_BACKEND", self.BACKEND).strip().lower()
        self.E2B_API_KEY = os.environ.get("E2B_API_KEY", self.E2B_API_KEY)
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        markers_env = os.environ.get("SMART_E2B_DEBUG_MARKERS")
        if markers_env is not None:
            self.DEBUG_MARKERS = parse_markers(markers_env)


def parse_markers(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# Global instance
config = ServerConfig()
