from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Optional

import yaml

from dsinspect.system.paths import get_user_config_file

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[3]

# Global flag to track if logging has been set up in this process
_logging_initialized = False


def load_config(path: Optional[str] = None) -> dict:
    env_path = os.environ.get("DSINSPECT_CONFIG")
    p = Path(path or env_path or get_user_config_file())
    if not p.exists():
        # fall back to repo default if available
        repo_default = REPO_ROOT / "config" / "default.yaml"
        if repo_default.exists():
            logger.debug("Config not found at %s, using repo default: %s", p, repo_default)
            with open(repo_default, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        logger.debug("No config file found at %s or repo default, using empty config", p)
        return {}
    logger.info("Loading configuration from %s", p)
    with open(p, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _default_logging_conf() -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {"format": "%(levelname)s: %(message)s"},
            "verbose": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "dsinspect.utils.logging_handlers.UTF8StreamHandler",
                "level": "WARNING",
                "formatter": "simple",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "dsinspect": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "httpx": {"level": "WARNING"},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def setup_logging(
    cfg: dict,
    *,
    level: Optional[str] = None,
    stream: Optional[str] = None,
    logfile: Optional[str] = None,
    force: bool = False,
) -> None:
    """Initialize logging from ``config/logging.yaml`` (or a built-in default).

    Honors environment variables:
      - DSINSPECT_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR
      - DSINSPECT_LOG_STREAM: stdout|stderr (default stderr)
      - DSINSPECT_LOG_FILE: path to a rotating log file
      - DSINSPECT_DEBUG: any non-empty value enables DEBUG level

    Runs once per process unless ``force`` is set.
    """
    global _logging_initialized
    if _logging_initialized and not force:
        return
    _logging_initialized = True

    cfg_path = cfg.get("logging", {}).get("config_path") if isinstance(cfg, dict) else None
    if cfg_path and not Path(cfg_path).is_absolute():
        cfg_path = str(REPO_ROOT / cfg_path)

    is_debug = bool(os.environ.get("DSINSPECT_DEBUG"))
    env_level = (level or os.environ.get("DSINSPECT_LOG_LEVEL") or ("DEBUG" if is_debug else "")).upper()
    env_stream = (stream or os.environ.get("DSINSPECT_LOG_STREAM") or "").lower()
    env_file = logfile or os.environ.get("DSINSPECT_LOG_FILE")

    conf: dict
    if cfg_path and Path(cfg_path).exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            conf = yaml.safe_load(f) or {}
    else:
        conf = _default_logging_conf()

    conf.setdefault("version", 1)
    conf.setdefault("formatters", {})
    conf.setdefault("handlers", {})
    conf.setdefault("loggers", {})
    conf.setdefault("root", {})
    conf["formatters"].setdefault(
        "verbose",
        {"format": "%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s"},
    )

    console = conf["handlers"].setdefault(
        "console", {"class": "dsinspect.utils.logging_handlers.UTF8StreamHandler"}
    )
    if env_stream in ("stdout", "stderr"):
        console["stream"] = f"ext://sys.{env_stream}"
    console.setdefault("stream", "ext://sys.stderr")
    if env_level:
        console["level"] = env_level
    if console.get("class", "").rsplit(".", 1)[-1] == "UTF8StreamHandler":
        console["include_tracebacks"] = env_level == "DEBUG"

    if env_file:
        fh = conf["handlers"].setdefault("file", {"class": "logging.handlers.RotatingFileHandler"})
        fh["filename"] = env_file
        fh.setdefault("maxBytes", 10485760)  # 10 MB
        fh.setdefault("backupCount", 5)
        fh.setdefault("encoding", "utf-8")
        fh.setdefault("formatter", "verbose")
        fh["level"] = env_level or "INFO"
        Path(env_file).expanduser().parent.mkdir(parents=True, exist_ok=True)

    pkg = conf["loggers"].setdefault("dsinspect", {"handlers": ["console"], "propagate": False})
    pkg.setdefault("handlers", ["console"])
    if env_level:
        pkg["level"] = env_level
    elif env_file:
        pkg["level"] = "INFO"
    if "file" in conf["handlers"] and "file" not in pkg["handlers"]:
        pkg["handlers"].append("file")
    if env_level:
        conf["root"]["level"] = env_level

    logging.config.dictConfig(conf)
    logger.debug(
        "Logging configured: level=%s stream=%s file=%s",
        env_level or "default",
        console.get("stream"),
        env_file or "-",
    )
