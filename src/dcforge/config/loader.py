# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/dcforge/config/loader.py

import logging
import os
import yaml
from pathlib import Path

from pydantic import ValidationError

from ..deploy.errors import ConfigError
from .models import DeploymentConfig

log = logging.getLogger("dcforge")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Empty override values never clobber a configured value.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        elif value not in (None, ""):
            base[key] = value
    return base


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    1. DCFORGE_SECRETS_FILE environment variable
    2. secrets.yaml next to the deployment config
    """
    env = os.environ.get("DCFORGE_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("DCFORGE_SECRETS_FILE=%s does not exist; skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p
    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_config(path: str | Path) -> DeploymentConfig:
    """
    Load and validate a deployment YAML config.

    Passwords (Proxmox, domain admin, DSRM) belong in a secrets file whose
    structure mirrors the config; it is deep-merged before validation.
    ``${ENV_VAR}`` placeholders work in both files.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found; proceeding without secrets merge")

    try:
        return DeploymentConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{path}: {e}") from e
