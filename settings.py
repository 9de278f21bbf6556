from dataclasses import dataclass, fields, replace
from pathlib import Path

import utils
from constants import *


@dataclass(frozen=True)
class Settings:
    src_resc: str
    dest_resc: str
    log_file: Path
    collection: str | None = None
    multiplier: int = DEFAULT_MULTIPLIER
    db_host: str = DB_HOST
    db_port: int = DB_PORT
    db_name: str = DB_NAME
    db_user: str = DB_USER
    psql: str = PSQL
    iphymv: str = IPHYMV
    thread_hint: bool = False


def load_config_file(path: Path | None) -> dict:
    """Read the optional yaml overrides, rejecting keys we do not know."""
    if path is None:
        return {}
    cfg = utils.read_yaml_config(Path(path).expanduser())
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: expected a mapping, got {type(cfg).__name__}")
    unknown = sorted(set(cfg) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"{path}: unknown setting(s): {', '.join(unknown)}")
    if 'db_port' in cfg:
        cfg['db_port'] = int(cfg['db_port'])
    if 'thread_hint' in cfg and not isinstance(cfg['thread_hint'], bool):
        raise ValueError(f"{path}: thread_hint must be true or false")
    return cfg


def build_settings(src_resc, dest_resc, log_file, collection=None, multiplier=None, config_path=None) -> Settings:
    settings = Settings(src_resc=src_resc, dest_resc=dest_resc, log_file=Path(log_file))
    settings = replace(settings, **load_config_file(config_path))
    if collection:
        # iRODS collection names never carry a trailing slash
        settings = replace(settings, collection=collection.rstrip('/') or '/')
    if multiplier is not None:
        if multiplier < 1:
            raise ValueError("multiplier must be a positive integer")
        settings = replace(settings, multiplier=multiplier)
    return settings


def describe(settings: Settings) -> str:
    return ", ".join(f"{f.name}={getattr(settings, f.name)}" for f in fields(settings))
