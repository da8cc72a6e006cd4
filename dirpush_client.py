# /dirpush_client.py
"""
dirpush client
- Watches a local folder and pushes created/modified files to a dirpush server.
- Initial sync on startup: every file (-mode all) or the files changed
  against the git remote (-mode git).
- One recursive watch on the watch root; new directories are scanned as soon
  as they appear so nothing written into them before the watch caught up is
  missed.
- Ignores backup files (*~) and hidden directories, plus any --ignore patterns.
- Waits for a file to stop changing before uploading it.
- Uploads run on a fixed pool of worker threads fed by a bounded queue.
- Failed uploads are logged and dropped, never retried.

Usage
  pip install dirpush
  dirpush -dir ~/src/project -url http://host:8120/receiver -target /home/me/mirror/project
  dirpush -mode git -dir . -url http://host:8120/receiver -target /home/me/mirror/project --token s3cret
"""

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import posixpath
import queue
import signal
import stat
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

import requests
from pathspec import PathSpec
from requests.adapters import HTTPAdapter
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from dirpush_log import log_action, setup_logger

APP_DIR = Path.home() / ".dirpush"
CONFIG_PATH = APP_DIR / "client.json"

MODES = ("all", "git")
DEFAULT_CONCURRENCY = 30
DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_SETTLE_CHECKS = 5
DEFAULT_TIMEOUT = 300.0
CONNECT_TIMEOUT = 10.0

# Backup files and hidden directories (with everything below them).
DEFAULT_IGNORE_PATTERNS = [
    "*~",
    ".*/",
]

_log = logging.getLogger("dirpush.client")


class ConfigError(Exception):
    """Startup configuration is missing or invalid."""


class UploadError(Exception):
    """A single upload failed (transport error or non-200 response)."""


# -------------------------
# Classification
# -------------------------

class Classification(enum.Enum):
    IGNORE = "ignore"
    DIRECTORY_TO_WATCH = "directory"
    FILE_TO_UPLOAD = "file"


def _stat_is_dir(path: Path) -> bool:
    try:
        return stat.S_ISDIR(os.stat(path).st_mode)
    except OSError:
        return False


class PathClassifier:
    """Decides what the pipeline does with a path below the watch root."""

    def __init__(self, watch_root: Path, extra_patterns: tuple[str, ...] = ()):
        self.watch_root = Path(watch_root)
        self.spec = PathSpec.from_lines("gitwildmatch", [*DEFAULT_IGNORE_PATTERNS, *extra_patterns])

    def classify(self, path: Path, is_dir: Optional[bool] = None) -> Classification:
        path = Path(path)
        if is_dir is None:
            is_dir = _stat_is_dir(path)

        try:
            rel = path.relative_to(self.watch_root)
        except ValueError:
            return Classification.IGNORE
        if rel == Path("."):
            return Classification.DIRECTORY_TO_WATCH

        rel_posix = rel.as_posix()
        if is_dir:
            rel_posix += "/"
        if self.spec.match_file(rel_posix):
            return Classification.IGNORE
        return Classification.DIRECTORY_TO_WATCH if is_dir else Classification.FILE_TO_UPLOAD


# -------------------------
# Jobs
# -------------------------

@dataclass(frozen=True)
class UploadJob:
    absolute_path: Path
    relative_path: PurePosixPath
    target_root: str

    @classmethod
    def for_path(cls, watch_root: Path, path: Path, target_root: str) -> "UploadJob":
        rel = Path(path).relative_to(watch_root)
        return cls(absolute_path=Path(path), relative_path=PurePosixPath(rel.as_posix()), target_root=target_root)

    @property
    def target_path(self) -> str:
        return posixpath.join(self.target_root, str(self.relative_path))


# -------------------------
# Watch registration
# -------------------------

class WatchRegistry:
    """Holds the one recursive watch on the watch root and the record of the
    directories known beneath it.

    The observer keeps every subdirectory of the root on a single inotify
    instance and adds new ones as they appear. The record only tracks which
    non-ignored directories have been seen; it never calls back into the
    observer, so it is safe to use from the dispatch thread.
    """

    def __init__(self, observer, logger: Optional[logging.Logger] = None):
        self.observer = observer
        self.logger = logger or _log
        self.handler: Optional[FileSystemEventHandler] = None
        self.root: Optional[Path] = None
        self._dirs: set[Path] = set()
        self._guard = threading.Lock()

    def attach(self, handler: FileSystemEventHandler) -> None:
        self.handler = handler

    @property
    def watched(self) -> frozenset[Path]:
        with self._guard:
            return frozenset(self._dirs)

    def watch_root(self, root: Path) -> bool:
        """Schedule the recursive watch. Returns False (after logging) when the
        observer refuses it; the tree then stays silent."""
        root = Path(root)
        try:
            self.observer.schedule(self.handler, str(root), recursive=True)
        except OSError as e:
            log_action(self.logger, "WATCH", f"ERROR adding directory to watcher: {root} | {e}",
                       path=root, is_dir=True, level=logging.ERROR)
            return False
        self.root = root
        log_action(self.logger, "WATCH", f"{root} (recursive)", path=root, is_dir=True)
        return True

    def add_directory(self, path: Path) -> bool:
        """Record *path* as watched. Returns False (after logging) when the
        root watch does not cover it."""
        path = Path(path)
        if self.root is None or (path != self.root and self.root not in path.parents):
            log_action(self.logger, "WATCH", f"ERROR directory is not under a watched root: {path}",
                       path=path, is_dir=True, level=logging.ERROR)
            return False
        with self._guard:
            if path in self._dirs:
                return True
            self._dirs.add(path)
        log_action(self.logger, "WATCH", f"{path}", path=path, is_dir=True, level=logging.DEBUG)
        return True

    def forget_directory(self, path: Path) -> set[Path]:
        """Drop a removed directory and everything recorded below it, so the
        same path is picked up again if it reappears. Returns what was dropped."""
        path = Path(path)
        with self._guard:
            gone = {p for p in self._dirs if p == path or path in p.parents}
            self._dirs -= gone
        for p in sorted(gone):
            log_action(self.logger, "WATCH", f"removed {p}", path=p, is_dir=True, level=logging.DEBUG)
        return gone


def walk_tree(
    directory: Path,
    classifier: PathClassifier,
    registry: Optional[WatchRegistry],
    logger: Optional[logging.Logger] = None,
) -> list[Path]:
    """Register every non-ignored directory under *directory* (itself included)
    and return the files that qualify for upload. Ignored directories are not
    descended into."""
    logger = logger or _log
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        current = Path(dirpath)
        if registry is not None:
            registry.add_directory(current)

        keep = []
        for name in sorted(dirnames):
            sub = current / name
            if classifier.classify(sub, is_dir=True) is Classification.DIRECTORY_TO_WATCH:
                keep.append(name)
            else:
                log_action(logger, "SKIP", f"ignored directory {sub}", path=sub, is_dir=True, level=logging.DEBUG)
        dirnames[:] = keep

        for name in sorted(filenames):
            p = current / name
            if classifier.classify(p, is_dir=False) is Classification.FILE_TO_UPLOAD:
                files.append(p)
    return files


# -------------------------
# Settle check
# -------------------------

def _signature(st: os.stat_result) -> tuple[int, int]:
    return st.st_size, st.st_mtime_ns


def wait_for_settle(
    path: Path,
    delay: float,
    checks: int,
    stop_event: Optional[threading.Event] = None,
) -> Optional[os.stat_result]:
    """Poll *path* every *delay* seconds until size and mtime are unchanged
    over two consecutive polls, giving up on stability after *checks* polls.

    Returns the last stat result, or None if the file vanished or shutdown
    was requested while waiting.
    """
    stop_event = stop_event or threading.Event()
    try:
        before = os.stat(path)
    except OSError:
        return None

    for _ in range(max(1, checks)):
        if stop_event.wait(delay):
            return None
        try:
            after = os.stat(path)
        except OSError:
            return None
        if _signature(after) == _signature(before):
            return after
        before = after
    return before


# -------------------------
# Event pipeline
# -------------------------

class EventPipeline(FileSystemEventHandler):
    def __init__(
        self,
        watch_root: Path,
        target_root: str,
        classifier: PathClassifier,
        registry: WatchRegistry,
        submit: Callable[[UploadJob], bool],
        logger: Optional[logging.Logger] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        settle_checks: int = DEFAULT_SETTLE_CHECKS,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__()
        self.watch_root = Path(watch_root)
        self.target_root = target_root
        self.classifier = classifier
        self.registry = registry
        self.submit = submit
        self.logger = logger or _log
        self.settle_delay = settle_delay
        self.settle_checks = settle_checks
        self.stop_event = stop_event or threading.Event()
        # last (size, mtime_ns) queued per path; only touched on the dispatch thread
        self._sent: dict[Path, tuple[int, int]] = {}
        registry.attach(self)

    def on_created(self, event):
        self._handle_change(Path(os.fsdecode(event.src_path)), "created")

    def on_modified(self, event):
        if event.is_directory:
            return
        self._handle_change(Path(os.fsdecode(event.src_path)), "modified")

    def on_deleted(self, event):
        src = Path(os.fsdecode(event.src_path))
        log_action(self.logger, "EVENT", f"removal {src}", path=src, is_dir=bool(event.is_directory))
        self._forget(src, event.is_directory)

    def on_moved(self, event):
        src = Path(os.fsdecode(event.src_path))
        dest = Path(os.fsdecode(event.dest_path))
        log_action(self.logger, "EVENT", f"rename {src} -> {dest}", path=src, is_dir=bool(event.is_directory))
        self._forget(src, event.is_directory)
        self._handle_change(dest, "moved")

    def _forget(self, path: Path, is_dir: bool) -> None:
        self._sent.pop(path, None)
        if is_dir:
            self.registry.forget_directory(path)
            for p in [p for p in self._sent if path in p.parents]:
                del self._sent[p]

    def _handle_change(self, path: Path, reason: str) -> None:
        kind = self.classifier.classify(path)
        if kind is Classification.IGNORE:
            log_action(self.logger, "SKIP", f"({reason}) {path}", path=path, level=logging.DEBUG)
            return

        if kind is Classification.DIRECTORY_TO_WATCH:
            log_action(self.logger, "EVENT", f"new directory {path}", path=path, is_dir=True)
            self.register_tree(path)
            return

        st = wait_for_settle(path, self.settle_delay, self.settle_checks, self.stop_event)
        if st is None:
            log_action(self.logger, "SKIP", f"({reason}) gone before upload: {path}", path=path, level=logging.DEBUG)
            return
        self._enqueue(path, st, reason)

    def register_tree(self, directory: Path) -> None:
        """Watch a freshly discovered directory and queue whatever already
        landed in it before the watch was active."""
        for file_path in walk_tree(directory, self.classifier, self.registry, self.logger):
            try:
                st = os.stat(file_path)
            except OSError:
                continue
            self._enqueue(file_path, st, "new directory")

    def _enqueue(self, path: Path, st: os.stat_result, reason: str) -> None:
        sig = _signature(st)
        if self._sent.get(path) == sig:
            log_action(self.logger, "SKIP", f"({reason}) unchanged since last upload: {path}", path=path,
                       level=logging.DEBUG)
            return
        job = UploadJob.for_path(self.watch_root, path, self.target_root)
        if self.submit(job):
            self._sent[path] = sig
            log_action(self.logger, "QUEUE", f"({reason}) {path}", path=path)


# -------------------------
# Worker pool
# -------------------------

_STOP = object()


class UploadWorkerPool:
    """Fixed number of threads draining a queue whose capacity equals the
    thread count, so producers block once every worker is busy."""

    def __init__(
        self,
        upload: Callable[[UploadJob], None],
        concurrency: int = DEFAULT_CONCURRENCY,
        logger: Optional[logging.Logger] = None,
        put_interval: float = 0.5,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.upload = upload
        self.concurrency = concurrency
        self.logger = logger or _log
        self.put_interval = put_interval
        self.jobs: queue.Queue = queue.Queue(maxsize=concurrency)
        self._closing = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for worker_id in range(1, self.concurrency + 1):
            t = threading.Thread(target=self._run, args=(worker_id,), name=f"dirpush-worker-{worker_id}", daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, job: UploadJob) -> bool:
        """Queue *job*, blocking while the queue is full. Returns False if the
        pool is closing."""
        while not self._closing.is_set():
            try:
                self.jobs.put(job, timeout=self.put_interval)
                return True
            except queue.Full:
                continue
        return False

    def close(self, drain: bool = True, timeout: Optional[float] = None) -> int:
        """Stop the workers. With *drain* queued jobs are uploaded first;
        otherwise they are thrown away. Returns the number discarded."""
        self._closing.set()
        discarded = 0
        if not drain:
            while True:
                try:
                    self.jobs.get_nowait()
                except queue.Empty:
                    break
                self.jobs.task_done()
                discarded += 1

        for _ in self._threads:
            self.jobs.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        return discarded

    def _run(self, worker_id: int) -> None:
        while True:
            job = self.jobs.get()
            try:
                if job is _STOP:
                    return
                self.upload(job)
            except Exception as e:
                log_action(self.logger, "UPLOAD",
                           f"Worker {worker_id} failed to upload file: {job.absolute_path} | {e}",
                           path=job.absolute_path, level=logging.ERROR)
            finally:
                self.jobs.task_done()


# -------------------------
# HTTP upload
# -------------------------

class UploadClient:
    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        concurrency: int = DEFAULT_CONCURRENCY,
        session=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = (CONNECT_TIMEOUT, timeout)
        self.logger = logger or _log
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=concurrency)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def upload(self, job: UploadJob) -> None:
        target = job.target_path
        log_action(self.logger, "UPLOAD", f"{job.absolute_path} -> {target}", path=job.absolute_path)

        data = {"target": target}
        if self.token:
            data["token"] = self.token

        with open(job.absolute_path, "rb") as fh:
            files = {"file": (job.absolute_path.name, fh, "application/octet-stream")}
            try:
                resp = self.session.post(self.url, files=files, data=data, timeout=self.timeout)
            except requests.RequestException as e:
                raise UploadError(f"request to {self.url} failed: {e}") from e

        if resp.status_code != 200:
            raise UploadError(f"failed to upload file: {resp.status_code} {resp.text.strip()}")


# -------------------------
# Initial selection
# -------------------------

def initial_files_git(watch_root: Path, classifier: PathClassifier, logger: Optional[logging.Logger] = None) -> list[Path]:
    """Files that differ from the git remote, relative to *watch_root*."""
    logger = logger or _log
    cmd = ["git", "diff", "origin", "--name-only", "--relative"]
    try:
        proc = subprocess.run(cmd, cwd=watch_root, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise ConfigError(f"{' '.join(cmd)} failed in {watch_root}: {e.stderr.strip()}") from e
    except OSError as e:
        raise ConfigError(f"could not run git: {e}") from e

    files = []
    for line in proc.stdout.splitlines():
        if not line:
            continue
        p = watch_root / line
        if not p.is_file():
            log_action(logger, "SKIP", f"(git) not a file any more: {p}", path=p)
            continue
        if classifier.classify(p, is_dir=False) is Classification.FILE_TO_UPLOAD:
            files.append(p)
    return files


class PushSession:
    """Wires classifier, watch registry, event pipeline and worker pool
    together for one watch root."""

    def __init__(self, cfg: "ClientConfig", upload: Callable[[UploadJob], None],
                 logger: Optional[logging.Logger] = None, observer=None):
        self.cfg = cfg
        self.logger = logger or _log
        self.stop_event = threading.Event()
        self.classifier = PathClassifier(cfg.watch_root, cfg.ignore_patterns)
        self.observer = observer if observer is not None else Observer()
        self.registry = WatchRegistry(self.observer, self.logger)
        self.pool = UploadWorkerPool(upload, cfg.concurrency, self.logger)
        self.pipeline = EventPipeline(
            watch_root=cfg.watch_root,
            target_root=cfg.target_root,
            classifier=self.classifier,
            registry=self.registry,
            submit=self.pool.submit,
            logger=self.logger,
            settle_delay=cfg.settle_delay,
            settle_checks=cfg.settle_checks,
            stop_event=self.stop_event,
        )
        self._started = False

    def start(self) -> int:
        """Start watching and queue the initial file set. Returns how many
        files were queued."""
        root = self.cfg.watch_root
        git_files = initial_files_git(root, self.classifier, self.logger) if self.cfg.mode == "git" else None

        self.pool.start()
        self.observer.start()
        self._started = True

        # schedule after start so an inotify failure surfaces here
        watching = self.registry.watch_root(root)
        all_files = walk_tree(root, self.classifier, self.registry if watching else None, self.logger)
        self.logger.info("Watching directory: %s (%d directories)", root, len(self.registry.watched))

        if git_files is None:
            files = all_files
            self.logger.info("Uploading all files: %d", len(files))
        else:
            files = git_files
            self.logger.info("Uploading git diff files: %d", len(files))

        queued = 0
        for p in files:
            if not self.pool.submit(UploadJob.for_path(root, p, self.cfg.target_root)):
                break
            queued += 1
        return queued

    def stop(self, drain: bool = False, timeout: float = 10.0) -> None:
        self.stop_event.set()
        if not self._started:
            return
        discarded = self.pool.close(drain=drain, timeout=timeout)
        self.observer.stop()
        self.observer.join(timeout=timeout)
        if discarded:
            self.logger.info("Discarded %d queued uploads", discarded)
        self._started = False


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class ClientConfig:
    watch_root: Path
    url: str
    target_root: str
    mode: str = "all"
    token: str = ""
    concurrency: int = DEFAULT_CONCURRENCY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    settle_checks: int = DEFAULT_SETTLE_CHECKS
    timeout: float = DEFAULT_TIMEOUT
    ignore_patterns: tuple[str, ...] = ()
    log_dir: Optional[Path] = None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dirpush", description="Push changes in a local folder to a dirpush server.")
    p.add_argument("-mode", "--mode", default=None, help="Initial upload: 'all' files or 'git' diff against origin (default: all).")
    p.add_argument("-dir", "--dir", default=None, help="Directory to watch.")
    p.add_argument("-url", "--url", default=None, help="Server URL, e.g. http://host:8120/receiver.")
    p.add_argument("-target", "--target", default=None, help="Target directory on the server.")
    p.add_argument("-token", "--token", default=None, help="Shared secret expected by the server.")
    p.add_argument("--concurrency", type=int, default=None, help="Upload workers and queue size (default: 30).")
    p.add_argument("--settle-delay", type=float, default=None, help="Seconds between size/mtime checks (default: 2).")
    p.add_argument("--settle-checks", type=int, default=None, help="Checks before uploading anyway (default: 5).")
    p.add_argument("--timeout", type=float, default=None, help="Upload read timeout in seconds (default: 300).")
    p.add_argument("--ignore", action="append", default=None, metavar="PATTERN", help="Extra gitignore-style pattern (repeatable).")
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


def build_effective_config(args: argparse.Namespace) -> ClientConfig:
    saved = load_config_file(Path(args.config).expanduser() if args.config else CONFIG_PATH, required=bool(args.config))

    def pick(name: str, key: Optional[str] = None, default=None):
        value = getattr(args, name)
        if value is not None:
            return value
        return saved.get(key or name, default)

    watch_dir = pick("dir")
    url = pick("url")
    target = pick("target")
    missing = [f"-{name}" for name, value in (("dir", watch_dir), ("url", url), ("target", target)) if not value]
    if missing:
        raise ConfigError(f"Please set the flags before running the program: {', '.join(missing)}")

    mode = pick("mode", default="all")
    if mode not in MODES:
        raise ConfigError(f"Unknown mode: {mode}")

    watch_root = Path(watch_dir).expanduser().resolve()
    if not watch_root.is_dir():
        raise ConfigError(f"Watch directory does not exist or is not a folder: {watch_root}")

    try:
        concurrency = int(pick("concurrency", default=DEFAULT_CONCURRENCY))
        settle_delay = float(pick("settle_delay", default=DEFAULT_SETTLE_DELAY))
        settle_checks = int(pick("settle_checks", default=DEFAULT_SETTLE_CHECKS))
        timeout = float(pick("timeout", default=DEFAULT_TIMEOUT))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid numeric setting: {e}") from e
    if concurrency < 1:
        raise ConfigError("concurrency must be at least 1")
    if settle_delay < 0 or settle_checks < 1:
        raise ConfigError("settle delay must be >= 0 and settle checks >= 1")

    ignore = tuple(saved.get("ignore", ())) + tuple(args.ignore or ())
    log_dir = pick("log_dir")

    return ClientConfig(
        watch_root=watch_root,
        url=url,
        target_root=target,
        mode=mode,
        token=pick("token", default="") or "",
        concurrency=concurrency,
        settle_delay=settle_delay,
        settle_checks=settle_checks,
        timeout=timeout,
        ignore_patterns=ignore,
        log_dir=Path(log_dir).expanduser() if log_dir else None,
    )


# -------------------------
# Main
# -------------------------

def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logger("dirpush.client", Path(args.log_dir).expanduser() if args.log_dir else None)

    try:
        cfg = build_effective_config(args)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        parser.print_usage(sys.stderr)
        return 2

    logger.info("Watch root: %s", cfg.watch_root)
    logger.info("Server    : %s -> %s", cfg.url, cfg.target_root)

    client = UploadClient(cfg.url, token=cfg.token, timeout=cfg.timeout, concurrency=cfg.concurrency, logger=logger)
    session = PushSession(cfg, client.upload, logger)

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    status = 0
    try:
        session.start()
        logger.info("Watching... (Ctrl+C to stop)")
        while True:
            time.sleep(0.5)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        status = 2
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        session.stop()
        signal.signal(signal.SIGTERM, previous_handler)
        logger.info("Stopped.")
    return status


if __name__ == "__main__":
    raise SystemExit(main())
