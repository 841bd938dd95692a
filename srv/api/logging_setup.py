import os
import logging
from logging.handlers import RotatingFileHandler

# logger name -> (log file, tag used to avoid attaching twice)
_TARGETS = {
    "nk.request": ("navikinder-requests.log", "req"),
    "nk.doses": ("navikinder-doses.log", "doses"),
    "uvicorn.error": ("navikinder-uvicorn.log", "uvicorn"),
    "uvicorn.access": ("navikinder-access.log", "access"),
}


def log_dir() -> str:
    return os.environ.get("NK_LOG_DIR", "./logs")


def _mk_handler(path):
    h = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    h.setFormatter(fmt)
    h.setLevel(logging.INFO)
    return h


def configure_logging():
    outdir = log_dir()
    os.makedirs(outdir, exist_ok=True)
    for name, (filename, tag) in _TARGETS.items():
        lg = logging.getLogger(name)
        if any(
            isinstance(h, RotatingFileHandler) and getattr(h, "_nk_tag", "") == tag
            for h in lg.handlers
        ):
            continue
        h = _mk_handler(os.path.join(outdir, filename))
        h._nk_tag = tag
        lg.addHandler(h)
        lg.setLevel(logging.INFO)
        lg.propagate = True  # still print to console
