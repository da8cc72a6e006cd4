# /dirpush_server.py
"""
dirpush server
- Receives files pushed by the dirpush client on POST /receiver
  (multipart/form-data: file, target, optional token).
- Only writes beneath <home><limit-dir>; anything else is rejected with 400.
- Optional shared token; a mismatch is rejected with 401.
- Writes go to a temporary sibling first and are renamed into place, so
  readers never see a half-written file. Last upload wins.

Usage
  pip install dirpush
  dirpush-server -limit-dir /mirror
  dirpush-server -port 9000 -token s3cret -limit-dir /mirror
"""

from __future__ import annotations

import argparse
import contextlib
import hmac
import json
import logging
import os
import shutil
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from dirpush_log import log_action, setup_logger

APP_DIR = Path.home() / ".dirpush"
CONFIG_PATH = APP_DIR / "server.json"

DEFAULT_PORT = 8120
DEFAULT_HOST = "0.0.0.0"

_log = logging.getLogger("dirpush.server")


class ConfigError(Exception):
    """Startup configuration is missing or invalid."""


class TargetError(ValueError):
    """Upload target lies outside the sandbox or is not absolute."""


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class ServerConfig:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    token: str = ""
    limit_dir: str = ""
    home: Path = field(default_factory=Path.home)
    log_dir: Optional[Path] = None

    @property
    def sandbox_root(self) -> Path:
        return sandbox_root(self.home, self.limit_dir)


def sandbox_root(home: Path, limit_dir: str) -> Path:
    limit = limit_dir.strip("/")
    return (Path(home) / limit).resolve() if limit else Path(home).resolve()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dirpush-server", description="Receive files pushed by dirpush clients.")
    p.add_argument("-port", "--port", type=int, default=None, help=f"Port to listen on (default: {DEFAULT_PORT}).")
    p.add_argument("--host", default=None, help=f"Bind address (default: {DEFAULT_HOST}).")
    p.add_argument("-token", "--token", default=None, help="Token for authentication.")
    p.add_argument("-limit-dir", "--limit-dir", dest="limit_dir", default=None,
                   help="Limit directory, relative to the home directory.")
    p.add_argument("--log-dir", default=None, help="Directory for log files.")
    p.add_argument("--config", default=None, help=f"JSON file with defaults (default: {CONFIG_PATH}).")
    return p


def load_config_file(path: Path, required: bool = False) -> dict:
    if not path.exists():
        if required:
            raise ConfigError(f"config file not found: {path}")
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def build_server_config(args: argparse.Namespace) -> ServerConfig:
    saved = load_config_file(Path(args.config).expanduser() if args.config else CONFIG_PATH, required=bool(args.config))

    def pick(name: str, default=None):
        value = getattr(args, name)
        return value if value is not None else saved.get(name, default)

    try:
        port = int(pick("port", DEFAULT_PORT))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid port: {e}") from e
    if not 0 <= port <= 65535:
        raise ConfigError(f"invalid port: {port}")

    log_dir = pick("log_dir")
    return ServerConfig(
        port=port,
        host=pick("host", DEFAULT_HOST),
        token=pick("token", "") or "",
        limit_dir=pick("limit_dir", "") or "",
        log_dir=Path(log_dir).expanduser() if log_dir else None,
    )


# -------------------------
# Target validation + writing
# -------------------------

def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def resolve_target(target: str, sandbox: Path) -> Path:
    """Canonicalize *target* and make sure it lies strictly beneath *sandbox*.

    Symlinks and ``..`` segments are resolved before the comparison, and the
    comparison is per path segment, so ``<sandbox>Evil/x`` does not pass.
    """
    if not os.path.isabs(target):
        raise TargetError(f"target is not absolute: {target}")
    resolved = Path(target).resolve()
    if resolved == sandbox or not _is_subpath(resolved, sandbox):
        raise TargetError(f"target outside {sandbox}: {target}")
    return resolved


def write_upload(src: BinaryIO, dest: Path) -> None:
    """Copy *src* to *dest* via a temporary file in the same directory."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(src, out)
        os.replace(tmp, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


# -------------------------
# HTTP app
# -------------------------

def _form_text(value) -> str:
    return value if isinstance(value, str) else ""


def create_app(config: ServerConfig, logger: Optional[logging.Logger] = None) -> FastAPI:
    logger = logger or _log
    sandbox = config.sandbox_root
    app = FastAPI(title="dirpush receiver", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(StarletteHTTPException)
    async def plain_text_errors(request: Request, exc: StarletteHTTPException):
        return PlainTextResponse(f"{exc.detail}\n", status_code=exc.status_code, headers=exc.headers)

    @app.post("/receiver", response_class=PlainTextResponse)
    async def receiver(request: Request):
        form = await request.form()
        try:
            if config.token:
                supplied = _form_text(form.get("token"))
                if not hmac.compare_digest(supplied.encode(), config.token.encode()):
                    log_action(logger, "REJECT", f"invalid token from {request.client.host if request.client else '-'}",
                               level=logging.WARNING)
                    raise HTTPException(status_code=401, detail="Invalid token")

            upload = form.get("file")
            if not isinstance(upload, UploadFile):
                raise HTTPException(status_code=400, detail="Missing file")

            target = _form_text(form.get("target"))
            if not target:
                raise HTTPException(status_code=400, detail="Missing target")
            log_action(logger, "RECEIVE", f"Uploading to: {target}")

            try:
                dest = resolve_target(target, sandbox)
            except TargetError as e:
                log_action(logger, "REJECT", str(e), level=logging.WARNING)
                raise HTTPException(status_code=400, detail=f"Invalid target path, valid path: {sandbox}")

            try:
                await upload.seek(0)
                await run_in_threadpool(write_upload, upload.file, dest)
            except OSError as e:
                log_action(logger, "RECEIVE", f"ERROR writing {dest} | {e}", path=dest, level=logging.ERROR)
                raise HTTPException(status_code=500, detail=str(e))

            log_action(logger, "RECEIVE", f"{dest}", path=dest)
            return f"File uploaded successfully: {dest}\n"
        finally:
            await form.close()

    return app


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logger("dirpush.server", Path(args.log_dir).expanduser() if args.log_dir else None)

    try:
        cfg = build_server_config(args)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        parser.print_usage(sys.stderr)
        return 2

    logger.info("Sandbox root: %s", cfg.sandbox_root)
    if not cfg.token:
        logger.warning("No token configured; any client may upload")
    logger.info("Starting server at port %d...", cfg.port)

    uvicorn.run(create_app(cfg, logger), host=cfg.host, port=cfg.port)
    logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
