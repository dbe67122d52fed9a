"""
Configuration loading for the Cambial/IR calculators.

Settings live in ``config/settings.yaml``. A missing or unreadable file is
not fatal: the built-in defaults below are used and a warning is logged.
Sections found in the file are merged over the defaults key by key.
"""

import copy
import logging
from typing import Any, Dict, Optional

import yaml

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"

DEFAULT_SETTINGS: Dict[str, Any] = {
    'market': {
        'timezone': 'America/Sao_Paulo',
    },
    'ptax': {
        'api': {
            'base_url': "https://olinda.bcb.gov.br/olinda/servico/PTAX/versao/v1/odata",
            'timeout': 15,
            'max_retries': 0,
            'user_agent': 'cambial_ir_calc/1.0',
            'max_workers': 8,
        },
        'lookback_days': 7,
    },
    'taxes': {
        'cambial_rate': 0.15,
        'trade_rate': 0.15,
    },
    'ledger': {
        'balance_epsilon': 1e-6,
    },
    'reports': {
        'delimiter': None,
        'encoding': 'utf-8-sig',
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a YAML file merged over the defaults.

    Args:
        config_path (str): Path to configuration file; ``None`` uses defaults only

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_SETTINGS)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
        return copy.deepcopy(DEFAULT_SETTINGS)
    except yaml.YAMLError as e:
        logger.warning(f"Could not parse config {config_path}: {e}; using defaults")
        return copy.deepcopy(DEFAULT_SETTINGS)

    if not isinstance(config, dict):
        logger.warning(f"Config {config_path} is not a mapping, using defaults")
        return copy.deepcopy(DEFAULT_SETTINGS)

    logger.info(f"Configuration loaded from {config_path}")
    return _merge(DEFAULT_SETTINGS, config)
