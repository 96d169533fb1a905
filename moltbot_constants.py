"""Shared constants for the Moltbot sandbox supervisor.

Import-safe module with no dependencies, so it can be imported from anywhere
without risk of circular imports.
"""

# Port the gateway listens on inside the container
GATEWAY_PORT = 18789

# Port the gateway's Telegram webhook listener binds to (openclaw default)
TELEGRAM_WEBHOOK_PORT = 8787
TELEGRAM_WEBHOOK_PATH = "/telegram-webhook"

GATEWAY_HOST = "127.0.0.1"

# Maximum time to wait for the gateway to start listening (10 minutes)
STARTUP_TIMEOUT_SECONDS = 600
PORT_PROBE_TIMEOUT_SECONDS = 1.0
STATUS_PROBE_TIMEOUT_SECONDS = 5.0

# Object-store mount inside the container
R2_MOUNT_PATH = "/data/moltbot"

# clawdbot paths are still what the gateway reads internally
CONFIG_DIR = "/root/.clawdbot"
CONFIG_FILENAME = "clawdbot.json"
TEMPLATE_FILE = "/root/.clawdbot-templates/moltbot.json.template"
WORKSPACE_DIR = "/root/clawd"
SKILLS_DIR = "/root/clawd/skills"
OPENCLAW_HOME_DIR = "/root/.openclaw"
SYNC_MARKER_NAME = ".last-sync"

# Backup bundle layout, relative to the mount
BACKUP_CONFIG_SUBDIR = "clawdbot"
BACKUP_SKILLS_SUBDIR = "skills"
BACKUP_HOME_SUBDIR = "openclaw-home"

GATEWAY_BINARY_NAME = "openclaw"
PREFERRED_GATEWAY_BINARY = "/usr/local/bin/openclaw"
GATEWAY_PROCESS_PATTERN = "openclaw gateway|openclaw-gateway"
GATEWAY_LOCK_FILES = ("/tmp/clawdbot-gateway.lock",)
