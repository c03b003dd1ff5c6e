"""
Safety rules configuration loader.

Keyword sets, figurative-language guards and canned crisis responses live in
data/safety_rules.yml so they can be reviewed without touching code.
"""

import os
from functools import lru_cache
from typing import Any, Dict

import yaml


CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
    'data',
    'safety_rules.yml'
)


@lru_cache(maxsize=1)
def load_rules() -> Dict[str, Any]:
    """Load safety rules from YAML config."""
    with open(CONFIG_PATH, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f)
