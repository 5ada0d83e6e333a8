#!/usr/bin/env python3
"""
Configuration Manager for TopoSentry

Loads the infrastructure graph manager configuration from YAML or JSON,
merges it over the built-in defaults and validates the result against a
JSON schema.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple, Union

import yaml
import jsonschema

logger = logging.getLogger("ConfigManager")

DEFAULT_CONFIG: Dict[str, Any] = {
    "nginx_sites_available": "/etc/nginx/sites-available",
    "nginx_sites_enabled": "/etc/nginx/sites-enabled",
    "default_site_name": "default",
    "default_interface": "eth0",
    "short_id_length": 12,
    "command_timeout": 30,       # seconds per remote command
    "collection_timeout": None,  # seconds per pass, None for no limit
    "include_stopped_containers": False,
    "count_volumes": True,
    "redis_enabled": False,
    "redis_host": "localhost",
    "redis_port": 6379,
    "redis_password": None,
    "redis_db": 0,
    "redis_namespace": "toposentry",
    "log_level": "INFO",
    "log_file": "infrastructure_graph.log",
    "server_host": "0.0.0.0",
    "server_port": 5000
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "nginx_sites_available": {"type": "string", "minLength": 1},
        "nginx_sites_enabled": {"type": "string", "minLength": 1},
        "default_site_name": {"type": "string"},
        "default_interface": {"type": "string", "minLength": 1},
        "short_id_length": {"type": "integer", "minimum": 1},
        "command_timeout": {"type": "number", "exclusiveMinimum": 0},
        "collection_timeout": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "include_stopped_containers": {"type": "boolean"},
        "count_volumes": {"type": "boolean"},
        "redis_enabled": {"type": "boolean"},
        "redis_host": {"type": "string"},
        "redis_port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "redis_password": {"type": ["string", "null"]},
        "redis_db": {"type": "integer", "minimum": 0},
        "redis_namespace": {"type": "string", "minLength": 1},
        "log_level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "log_file": {"type": ["string", "null"]},
        "server_host": {"type": "string"},
        "server_port": {"type": "integer", "minimum": 1, "maximum": 65535}
    }
}


class ConfigurationError(Exception):
    """Configuration does not satisfy the schema"""


def validate_against_schema(config: Dict[str, Any], schema: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate a document against a JSON schema

    Args:
        config: Document to validate
        schema: JSON Schema for validation

    Returns:
        Tuple of (is_valid, error_messages)
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(config), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        error_messages.append(f"At {path}: {error.message}")

    return False, error_messages


def _read_config_file(path: Path) -> Dict[str, Any]:
    with open(path, 'r') as f:
        if path.suffix.lower() in ('.yaml', '.yml'):
            config = yaml.safe_load(f)
        else:
            config = json.load(f)

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration in {path} must be a mapping")
    return config


def load_configuration(config_path: Optional[Union[str, Path]] = None,
                       overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load configuration from file and merge it with defaults

    A missing or unreadable file falls back to the defaults. Values that
    violate the schema raise ConfigurationError.

    Args:
        config_path: Path to a .yaml, .yml or .json file
        overrides: Values applied on top of the file contents

    Returns:
        Merged configuration dictionary
    """
    config = DEFAULT_CONFIG.copy()

    if not config_path:
        logger.debug("No configuration path provided, using defaults")
    else:
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Configuration file not found: {path}, using defaults")
        else:
            try:
                config.update(_read_config_file(path))
                logger.info(f"Loaded configuration from {path}")
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.error(f"Error loading configuration from {path}: {e}")

    if overrides:
        config.update(overrides)

    is_valid, errors = validate_against_schema(config, CONFIG_SCHEMA)
    if not is_valid:
        raise ConfigurationError("; ".join(errors))

    return config


def create_default_config(output_path: Union[str, Path]):
    """
    Write the default configuration to a file

    Args:
        output_path: Path to write the configuration file (.yaml/.yml or JSON)
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w') as f:
        if output_path.suffix.lower() in ('.yaml', '.yml'):
            yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(DEFAULT_CONFIG, f, indent=2)

    logger.info(f"Created default configuration at {output_path}")
