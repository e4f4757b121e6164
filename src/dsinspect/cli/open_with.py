"""Hand a materialized file to an external application."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from dsinspect.errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)


def default_opener() -> Optional[List[str]]:
    if sys.platform == "darwin":
        return ["open"]
    if os.name == "nt":
        return None  # os.startfile
    opener = shutil.which("xdg-open")
    return [opener] if opener else None


def open_path(path: str | os.PathLike, app: Optional[str] = None) -> None:
    """Launch ``path`` with ``app`` (a command line) or the platform default.

    Only paths of files that already exist are accepted; the launched process
    is detached and never waited on.
    """
    target = Path(path)
    if not target.is_file():
        raise NotFound("Materialized file does not exist", context={"path": str(target)})
    if app:
        cmd = shlex.split(app, posix=os.name != "nt") + [str(target)]
    else:
        opener = default_opener()
        if opener is None:
            if os.name == "nt":
                logger.info("Opening %s with the default application", target)
                os.startfile(str(target))  # type: ignore[attr-defined]
                return
            raise InvalidRequest("No default opener available; pass an application", context={"path": str(target)})
        cmd = opener + [str(target)]
    logger.info("Opening %s with %s", target, cmd[0])
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, start_new_session=True)
    except FileNotFoundError as exc:
        raise NotFound("Application not found", context={"app": cmd[0]}) from exc
