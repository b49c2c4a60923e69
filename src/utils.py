"""module contains identity and naming helpers"""

import base64
import getpass
import hashlib
import os
from pathlib import Path
import re
import sys
from PyQt5.QtCore import QSysInfo
from loguru import logger

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def get_executable_path() -> Path:
    """
    Path identifying the running application.

    Frozen builds (PyInstaller) are identified by the bundle executable, scripts by
    their __main__ file. Interactive sessions fall back to the interpreter.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    main_module = sys.modules.get("__main__")
    main_file = getattr(main_module, "__file__", None)
    if main_file:
        return Path(main_file).resolve()
    return Path(sys.executable).resolve()


def get_running_process_hash(path: Path | None = None) -> str:
    """sha256 of the canonical executable path, url-safe base64 without padding"""
    process_path = str(path or get_executable_path())
    digest = hashlib.sha256(process_path.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def get_user_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError) as exc:
        # containers without a passwd entry or LOGNAME
        logger.debug(f"Could not resolve login name: {exc}")
        if hasattr(os, "getuid"):
            return str(os.getuid())
        return "user"


def get_user_domain() -> str:
    return os.environ.get("USERDOMAIN") or QSysInfo.machineHostName() or "localhost"


def sanitize_name(value: str) -> str:
    """keep names valid as both file names and local socket names"""
    return _INVALID_NAME_CHARS.sub("_", value)


def build_endpoint_name(prefix: str, identity: str) -> str:
    name = f"{prefix}_{get_user_domain()}_{get_user_name()}_{identity}"
    return sanitize_name(name)


def build_pipe_name(prefix: str, identity: str, digest_length: int = 22) -> str:
    """
    Short local socket name for ``identity``.

    The socket lives under the temp dir and Unix socket paths are limited to
    104/108 bytes, so the scoped name is hashed instead of spelled out.
    """
    scoped = build_endpoint_name(prefix, identity)
    digest = hashlib.sha256(scoped.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return sanitize_name(f"{prefix}_{encoded[:digest_length]}")
