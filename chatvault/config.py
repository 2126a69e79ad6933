"""
Config loader for chatvault.

config.yaml is read once and cached. Every string value may reference the
environment as ${VAR} or ${VAR:-fallback}; .env is loaded first, which is
how the API key gets in without living in the YAML. Missing sections and
keys are filled from DEFAULTS, so a config file only needs what it changes.

The file location is the repo-root config.yaml unless CHATVAULT_CONFIG
points elsewhere.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"
_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_config: dict | None = None

DEFAULTS: dict = {
    "server": {"host": "127.0.0.1", "port": 8000},
    "backend": {
        "provider": "anthropic",
        "url": "https://api.anthropic.com",
        "api_key": "",
        "model": "claude-3-5-sonnet-20240620",
        "anthropic_version": "2023-06-01",
        "max_tokens": 8192,
        "temperature": 0.3,
        "top_p": 1.0,
        "timeout": 120,
        "max_retries": 2,
    },
    "storage": {"sqlite_path": "./data/chatvault.db", "page_size": 50},
    "conversations": {"preview_chars": 100},
    "system_prompt": {"path": "./data/system_prompt.md"},
    "wiretap": {"path": "./data/wire.jsonl"},
    "logging": {"level": "INFO", "file": None},
}


def _resolve_env_vars(value: str) -> str:
    """Substitute ${VAR} / ${VAR:-fallback}; an unset VAR without fallback becomes ''."""
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)


def _expand(node):
    if isinstance(node, str):
        return _resolve_env_vars(node)
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(value) for value in node]
    return node


def _merge_defaults(raw: dict) -> dict:
    """Overlay `raw` on DEFAULTS, section by section. Unknown sections pass through."""
    merged = {name: {**section, **(raw.get(name) or {})} for name, section in DEFAULTS.items()}
    for name, value in raw.items():
        merged.setdefault(name, value)
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load, expand and cache the config. Later calls return the cached dict."""
    global _config
    if _config is not None:
        return _config

    config_path = Path(path or os.environ.get("CHATVAULT_CONFIG") or _CONFIG_PATH)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    _config = _merge_defaults(_expand(raw))
    return _config


def get_config() -> dict:
    return _config if _config is not None else load_config()


def setup_logging(cfg: dict):
    """Root logging from the `logging:` block: level plus an optional log file."""
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_cfg.get("file"):
        log_path = Path(log_cfg["file"])
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
