"""
Gateway config reconciliation.

Overlays environment-derived settings onto the persisted clawdbot.json
without dropping keys it does not know about. Every run rewrites the whole
document; running twice with the same environment is a no-op on the second
pass.

This module provides:
- ReconcileInputs: every environment variable the reconciler understands
- reconcile(): pure document transform
- ConfigReconciler: load / seed / reconcile / write of the config file
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import moltbot_constants as C

logger = logging.getLogger(__name__)

TRUSTED_PROXIES = ["10.0.0.0/8"]
GATEWAY_MODE = "local"
DEFAULT_DISCORD_DM_POLICY = "pairing"

# Written by older startup scripts; newer gateway versions reject the schema.
LEGACY_PROVIDERS = ("openai", "anthropic")

STALE_PRIMARY_MODELS = frozenset({
    "openai/gpt-5.2",
    "openai/gpt-4.5-preview",
    "anthropic/claude-opus-4-5-20251101",
    "anthropic/claude-sonnet-4-5-20250929",
    "anthropic/claude-haiku-4-5-20251001",
})
OPENAI_DEFAULT_MODEL = "openai/gpt-5"
ANTHROPIC_DEFAULT_MODEL = "anthropic/claude-opus-4-5"

MINIMAL_CONFIG: Dict[str, Any] = {
    "agents": {"defaults": {"workspace": C.WORKSPACE_DIR}},
    "gateway": {"port": C.GATEWAY_PORT, "mode": GATEWAY_MODE},
}


def _env_value(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    return value if value else None


@dataclass(frozen=True)
class ReconcileInputs:
    """Environment inputs to reconciliation. Empty values count as unset."""

    gateway_token: Optional[str] = None
    dev_mode: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_webhook_url: Optional[str] = None
    telegram_webhook_secret: Optional[str] = None
    worker_url: Optional[str] = None
    discord_bot_token: Optional[str] = None
    discord_dm_policy: Optional[str] = None
    slack_bot_token: Optional[str] = None
    slack_app_token: Optional[str] = None
    preferred_provider: str = ""
    ai_gateway_base_url: str = ""

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ReconcileInputs":
        env = os.environ if env is None else env
        return cls(
            gateway_token=_env_value(env, "CLAWDBOT_GATEWAY_TOKEN"),
            dev_mode=env.get("CLAWDBOT_DEV_MODE") == "true",
            telegram_bot_token=_env_value(env, "TELEGRAM_BOT_TOKEN"),
            telegram_webhook_url=_env_value(env, "TELEGRAM_WEBHOOK_URL"),
            telegram_webhook_secret=_env_value(env, "TELEGRAM_WEBHOOK_SECRET"),
            worker_url=_env_value(env, "WORKER_PUBLIC_URL") or _env_value(env, "WORKER_URL"),
            discord_bot_token=_env_value(env, "DISCORD_BOT_TOKEN"),
            discord_dm_policy=_env_value(env, "DISCORD_DM_POLICY"),
            slack_bot_token=_env_value(env, "SLACK_BOT_TOKEN"),
            slack_app_token=_env_value(env, "SLACK_APP_TOKEN"),
            preferred_provider=(env.get("PREFERRED_PROVIDER") or "").lower(),
            ai_gateway_base_url=(env.get("AI_GATEWAY_BASE_URL") or "").rstrip("/"),
        )

    @property
    def telegram_webhook(self) -> Optional[str]:
        """Explicit webhook URL, else one derived from the worker URL."""
        if self.telegram_webhook_url:
            return self.telegram_webhook_url
        if self.worker_url:
            return self.worker_url.rstrip("/") + C.TELEGRAM_WEBHOOK_PATH
        return None


@dataclass
class ReconcileResult:
    config: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------


def _ensure_dict(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Return parent[key], replacing it with {} only if it is missing or not a mapping."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def _get_path(doc: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(doc, dict):
            return None
        doc = doc.get(key)
    return doc


def parse_config_text(text: Optional[str]) -> Dict[str, Any]:
    """Parse the persisted document; anything unusable becomes an empty document."""
    if not text:
        return {}
    try:
        doc = json.loads(text)
    except json.JSONDecodeError:
        logger.info("Starting with empty config (existing file is not valid JSON)")
        return {}
    if not isinstance(doc, dict):
        logger.info("Starting with empty config (existing document is not an object)")
        return {}
    return doc


def serialize_config(doc: Dict[str, Any]) -> str:
    return json.dumps(doc, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Reconciliation steps
# ---------------------------------------------------------------------------


def _drop_broken_anthropic_provider(config: Dict[str, Any]) -> None:
    # Older startup scripts wrote models without the required 'name' field
    models = _get_path(config, "models", "providers", "anthropic", "models")
    if not isinstance(models, list):
        return
    if any(not isinstance(m, dict) or not m.get("name") for m in models):
        logger.info("Removing broken anthropic provider config (missing model names)")
        del config["models"]["providers"]["anthropic"]


def _apply_gateway(gateway: Dict[str, Any], inputs: ReconcileInputs) -> None:
    gateway["port"] = C.GATEWAY_PORT
    gateway["mode"] = GATEWAY_MODE
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    if inputs.gateway_token:
        _ensure_dict(gateway, "auth")["token"] = inputs.gateway_token

    if inputs.dev_mode:
        _ensure_dict(gateway, "controlUi")["allowInsecureAuth"] = True


def _apply_telegram(channels: Dict[str, Any], inputs: ReconcileInputs, warnings: List[str]) -> None:
    if not inputs.telegram_bot_token:
        return
    telegram = _ensure_dict(channels, "telegram")
    telegram["botToken"] = inputs.telegram_bot_token
    telegram["enabled"] = True

    webhook_url = inputs.telegram_webhook
    if not webhook_url:
        message = (
            "No webhook URL configured. Set TELEGRAM_WEBHOOK_URL, WORKER_PUBLIC_URL, or WORKER_URL; "
            "Telegram may not work correctly without webhook mode"
        )
        logger.warning(message)
        warnings.append(message)
        return

    telegram["webhookUrl"] = webhook_url
    telegram["webhookPath"] = C.TELEGRAM_WEBHOOK_PATH
    # The gateway requires a secret alongside webhookUrl; the gateway token
    # keeps it stable across restarts when no explicit secret is given.
    secret = inputs.telegram_webhook_secret or inputs.gateway_token
    if secret:
        telegram["webhookSecret"] = secret
    logger.info("Telegram webhook URL: %s", webhook_url)


def _apply_discord(channels: Dict[str, Any], inputs: ReconcileInputs) -> None:
    if not inputs.discord_bot_token:
        return
    discord = _ensure_dict(channels, "discord")
    discord["token"] = inputs.discord_bot_token
    discord["enabled"] = True
    _ensure_dict(discord, "dm")["policy"] = inputs.discord_dm_policy or DEFAULT_DISCORD_DM_POLICY


def _apply_slack(channels: Dict[str, Any], inputs: ReconcileInputs) -> None:
    if not (inputs.slack_bot_token and inputs.slack_app_token):
        return
    slack = _ensure_dict(channels, "slack")
    slack["botToken"] = inputs.slack_bot_token
    slack["appToken"] = inputs.slack_app_token
    slack["enabled"] = True


def _drop_legacy_providers(config: Dict[str, Any]) -> None:
    providers = _get_path(config, "models", "providers")
    if not isinstance(providers, dict):
        return
    for name in LEGACY_PROVIDERS:
        providers.pop(name, None)


def preferred_primary_model(inputs: ReconcileInputs) -> Optional[str]:
    """Infer which default model to pin, or None when there is no signal."""
    base_url = inputs.ai_gateway_base_url
    looks_openai = base_url.endswith("/openai")
    if inputs.preferred_provider == "openai" or (base_url and looks_openai):
        return OPENAI_DEFAULT_MODEL
    if inputs.preferred_provider == "anthropic" or (base_url and not looks_openai):
        return ANTHROPIC_DEFAULT_MODEL
    return None


def _apply_model_pin(model: Dict[str, Any], inputs: ReconcileInputs) -> None:
    primary = model.get("primary")
    if isinstance(primary, str) and primary in STALE_PRIMARY_MODELS:
        logger.info("Clearing stale primary model pin %s", primary)
        del model["primary"]

    pinned = preferred_primary_model(inputs)
    if pinned:
        model["primary"] = pinned


def reconcile(doc: Optional[Dict[str, Any]], inputs: ReconcileInputs) -> ReconcileResult:
    """Overlay inputs onto a copy of doc. The input document is not modified."""
    config = copy.deepcopy(doc) if isinstance(doc, dict) else {}
    warnings: List[str] = []

    agents = _ensure_dict(config, "agents")
    defaults = _ensure_dict(agents, "defaults")
    model = _ensure_dict(defaults, "model")
    gateway = _ensure_dict(config, "gateway")
    channels = _ensure_dict(config, "channels")
    _ensure_dict(config, "commands")

    _drop_broken_anthropic_provider(config)
    _apply_gateway(gateway, inputs)
    _apply_telegram(channels, inputs, warnings)
    _apply_discord(channels, inputs)
    _apply_slack(channels, inputs)
    _drop_legacy_providers(config)
    _apply_model_pin(model, inputs)

    return ReconcileResult(config=config, warnings=warnings)


def reconcile_text(text: Optional[str], inputs: ReconcileInputs) -> str:
    """Parse, reconcile and serialize in one step."""
    return serialize_config(reconcile(parse_config_text(text), inputs).config)


# ---------------------------------------------------------------------------
# File-backed reconciler
# ---------------------------------------------------------------------------


def _secure_write(path: Path, data: str) -> None:
    """Write data to file with restrictive permissions (owner read/write only)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data, encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


class ConfigReconciler:
    """Owns the read-modify-write cycle of the persisted gateway config."""

    def __init__(self, config_file: Path, template_file: Optional[Path] = None):
        self.config_file = Path(config_file)
        self.template_file = Path(template_file) if template_file else None

    def _seed(self) -> None:
        if self.template_file and self.template_file.is_file():
            logger.info("No existing config found, initializing from template %s", self.template_file)
            text = self.template_file.read_text(encoding="utf-8")
        else:
            logger.info("No existing config found, writing minimal config")
            text = serialize_config(MINIMAL_CONFIG)
        _secure_write(self.config_file, text)

    def load(self) -> Dict[str, Any]:
        try:
            text = self.config_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.info("Starting with empty config (%s)", e)
            return {}
        return parse_config_text(text)

    def run(self, inputs: ReconcileInputs) -> ReconcileResult:
        """Reconcile the config file against inputs and overwrite it in full."""
        if not self.config_file.exists():
            self._seed()
        else:
            logger.info("Using existing config at %s", self.config_file)

        result = reconcile(self.load(), inputs)
        _secure_write(self.config_file, serialize_config(result.config))
        logger.info("Configuration updated successfully")
        return result
