import json
import logging
import os
from copy import deepcopy

DEFAULTS = {
    'db_path': None,
    'default_rounding_enabled': True,
    'undo_depth': 1,
    'temporary_label': '(temporary) ',
    'log_level': 'INFO',
}


def _config_dir():
    return os.path.join(os.path.expanduser('~'), '.milkround')


def _config_path():
    base = _config_dir()
    os.makedirs(base, exist_ok=True)
    return os.path.join(base, 'milkround_config.json')


def default_db_path():
    return os.path.join(_config_dir(), 'milkround.db')


def default_config() -> dict:
    return deepcopy(DEFAULTS)


def load_config(path: str = None) -> dict:
    path = path or _config_path()
    cfg = default_config()
    if not os.path.exists(path):
        return cfg
    try:
        with open(path, 'r', encoding='utf-8') as f:
            stored = json.load(f)
    except (OSError, ValueError) as e:
        logging.warning(f"Config {path} unreadable, using defaults: {e}")
        return cfg
    if isinstance(stored, dict):
        cfg.update({k: v for k, v in stored.items() if k in DEFAULTS})
    if not isinstance(cfg['undo_depth'], int) or cfg['undo_depth'] < 1:
        logging.warning(f"Invalid undo_depth {cfg['undo_depth']!r}, falling back to 1")
        cfg['undo_depth'] = 1
    return cfg


def save_config(cfg: dict, path: str = None):
    path = path or _config_path()
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(cfg, f, ensure_ascii=False, indent=2)
