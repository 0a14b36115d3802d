#!/usr/bin/env python3
# treehole: anonymous confession wall backed by GitHub Issues
#
# Hotkeys (terminal UI)
#   n  compose a new secret (Enter submits, Esc closes the box)
#   r  reload the wall (or retry after an error)
#   m  load the next page
#   j/k scroll
#   q  quit
#
# Config highlights (all optional, YAML)
#   owner: octocat
#   repo: treehole
#   label: treehole
#   page_size: 10
#   cache_ttl_ms: 300000
#   proxy: {enabled: true, url: "http://127.0.0.1:8787/api"}
#   backend: github            # or "local" (messages.json, never talks to GitHub)
#
# Notes
# - Submissions are Issues carrying the configured label; the Issue number is
#   the only identity and is never used to update or deduplicate.
# - Only the first page is cached, in a single local storage slot with a TTL.
# - With proxy enabled the client never holds a token; run `treehole --serve`
#   on the machine that does.
#
# Environment
# - GITHUB_TOKEN (needs issues write on the target repo)
# - TREEHOLE_OWNER / TREEHOLE_REPO / TREEHOLE_PROXY_URL (override config)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import os
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import ConditionalContainer, HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


LOGGER_NAME = 'treehole'
GITHUB_API_VERSION = '2022-11-28'
DEFAULT_DB_PATH = os.path.expanduser("~/.treehole.db")
DEFAULT_LOG_PATH = os.path.expanduser("~/.treehole.log")
ALERT_SECONDS = 3.0

SUBMIT_FAILED = "Submission failed"
LOAD_FAILED = "Failed to load secrets"


# -----------------------------
# Errors
# -----------------------------
class TreeholeError(Exception):
    """Base class for every error surfaced to the user as a banner."""


class RequestError(TreeholeError):
    """Non-success HTTP status (or transport failure) talking to the backend."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ValidationError(TreeholeError):
    pass


class TokenMissingError(TreeholeError):
    pass


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    repo_owner: str = "YOUR_GITHUB_USERNAME"
    repo_name: str = "YOUR_REPO_NAME"
    api_base_url: str = "https://api.github.com"
    label: str = "treehole"
    page_size: int = 10
    cache_ttl_ms: int = 5 * 60 * 1000
    use_proxy: bool = False
    proxy_url: str = "http://127.0.0.1:8787/api"
    backend: str = "github"          # "github" | "local"
    messages_path: str = "messages.json"
    title_prefix: str = "Treehole"
    redirect_delay: float = 1.5
    request_timeout: float = 20.0

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @property
    def issues_url(self) -> str:
        if self.use_proxy:
            return f"{self.proxy_url.rstrip('/')}/issues"
        return f"{self.api_base_url.rstrip('/')}/repos/{self.repo_owner}/{self.repo_name}/issues"


_CONFIG_KEYS = {
    "owner": "repo_owner",
    "repo_owner": "repo_owner",
    "repo": "repo_name",
    "repo_name": "repo_name",
    "api_base_url": "api_base_url",
    "label": "label",
    "page_size": "page_size",
    "cache_ttl_ms": "cache_ttl_ms",
    "backend": "backend",
    "messages_path": "messages_path",
    "title_prefix": "title_prefix",
    "redirect_delay": "redirect_delay",
    "request_timeout": "request_timeout",
}

_ENV_OVERRIDES = {
    "TREEHOLE_OWNER": "repo_owner",
    "TREEHOLE_REPO": "repo_name",
    "TREEHOLE_PROXY_URL": "proxy_url",
}


def load_config(path: Optional[str] = None) -> Config:
    """Build a Config from an optional YAML file plus TREEHOLE_* env overrides."""
    raw: dict = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config: top level must be a mapping.")
    values: Dict[str, object] = {}
    for key, attr in _CONFIG_KEYS.items():
        if key in raw and raw[key] is not None:
            values[attr] = raw[key]
    proxy = raw.get("proxy")
    if isinstance(proxy, dict):
        if "enabled" in proxy:
            values["use_proxy"] = bool(proxy.get("enabled"))
        if proxy.get("url"):
            values["proxy_url"] = str(proxy["url"])
    elif proxy is not None:
        values["use_proxy"] = bool(proxy)
    for env_key, attr in _ENV_OVERRIDES.items():
        env_val = os.environ.get(env_key)
        if env_val:
            values[attr] = env_val
            if attr == "proxy_url":
                values["use_proxy"] = True
    try:
        cfg = Config(**values)
        cfg.page_size = int(cfg.page_size)
        cfg.cache_ttl_ms = int(cfg.cache_ttl_ms)
        cfg.redirect_delay = float(cfg.redirect_delay)
        cfg.request_timeout = float(cfg.request_timeout)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Config: {exc}") from exc
    cfg.backend = str(cfg.backend).strip().lower()
    if cfg.backend not in ("github", "local"):
        raise ValueError(f"Config: unknown backend {cfg.backend!r} (expected 'github' or 'local').")
    # GitHub caps per_page at 100
    if not 1 <= cfg.page_size <= 100:
        raise ValueError("Config: 'page_size' must be between 1 and 100.")
    if cfg.cache_ttl_ms < 0:
        raise ValueError("Config: 'cache_ttl_ms' must not be negative.")
    if not cfg.label:
        raise ValueError("Config: 'label' is required.")
    return cfg


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or GITHUB_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "GITHUB_TOKEN") and v:
                        return v
        except OSError:
            logging.getLogger(LOGGER_NAME).warning("Unable to read %s", path, exc_info=True)
            continue
    return None


def resolve_token() -> str:
    token = os.environ.get("GITHUB_TOKEN") or load_dotenv_token()
    if not token:
        raise TokenMissingError("GitHub token is not configured (set GITHUB_TOKEN)")
    return token


def setup_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    # Reset handlers so repeated calls (tests, --serve reloads) honour the new level.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path or DEFAULT_LOG_PATH, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Models / formatting
# -----------------------------
@dataclass(frozen=True)
class Submission:
    body: str
    created_at: str
    html_url: str = ""
    number: int = 0

    @classmethod
    def from_api(cls, item: dict) -> "Submission":
        # GitHub returns null for an empty issue body
        return cls(
            body=item.get("body") or "",
            created_at=item.get("created_at") or "",
            html_url=item.get("html_url") or "",
            number=int(item.get("number") or 0),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "body": self.body,
            "created_at": self.created_at,
            "html_url": self.html_url,
            "number": self.number,
        }


_HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#039;"),
)


def escape_html(unsafe: Optional[str]) -> str:
    out = unsafe or ""
    for ch, entity in _HTML_ESCAPES:
        out = out.replace(ch, entity)
    return out


def _parse_iso(s: Optional[str]) -> Optional[dt.datetime]:
    if not s:
        return None
    raw = s.strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    try:
        return dt.datetime.fromisoformat(raw)
    except ValueError:
        return None


def format_date(value, tz: Optional[dt.tzinfo] = None) -> str:
    """Render an ISO-8601 timestamp as local 'YYYY/MM/DD HH:MM'.

    Naive timestamps are taken as UTC (GitHub always reports UTC). Anything that
    does not parse is returned as-is so a bad record never breaks the wall.
    """
    parsed = value if isinstance(value, dt.datetime) else _parse_iso(value)
    if parsed is None:
        return str(value or "")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(tz).strftime('%Y/%m/%d %H:%M')


def issue_title(prefix: str, today: Optional[dt.date] = None) -> str:
    d = today or dt.date.today()
    return f"{prefix} {d.year}/{d.month}/{d.day}"


def validate_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Content must not be empty")
    return text


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# -----------------------------
# Local storage / cache
# -----------------------------
class LocalStorage:
    """String key/value slots persisted in SQLite, the local stand-in for a browser's localStorage."""

    CREATE_TABLE_SQL = """      CREATE TABLE IF NOT EXISTS local_storage (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
      )
    """

    def __init__(self, path: str):
        if path != ':memory:':
            directory = os.path.dirname(os.path.abspath(path))
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
        # the terminal UI loads from a worker thread and the server from a threadpool
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(self.CREATE_TABLE_SQL)
        self.conn.commit()
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM local_storage WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO local_storage(key, value, updated_at) VALUES (?,?,datetime('now')) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, value),
            )
            self.conn.commit()

    def remove_item(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM local_storage WHERE key=?", (key,))
            self.conn.commit()

    def keys(self) -> List[str]:
        with self._lock:
            return [r[0] for r in self.conn.execute("SELECT key FROM local_storage ORDER BY key")]

    def close(self) -> None:
        self.conn.close()


class CacheService:
    """Single-slot cache of the first page of submissions, valid for cfg.cache_ttl_ms."""

    def __init__(self, storage: LocalStorage, cfg: Config, clock: Callable[[], int] = _now_ms,
                 namespace: Optional[str] = None):
        self.storage = storage
        self.cfg = cfg
        self.clock = clock
        self.namespace = namespace

    @property
    def key(self) -> str:
        key = f"gh_issues_cache_{self.cfg.repo_owner}_{self.cfg.repo_name}"
        # local and mock pages never share the GitHub slot
        source = self.namespace or self.cfg.backend
        if source != "github":
            key += f"_{source}"
        return key

    def get(self, now_ms: Optional[int] = None) -> Optional[List[Submission]]:
        raw = self.storage.get_item(self.key)
        if not raw:
            return None
        try:
            entry = json.loads(raw)
            data = entry["data"]
            timestamp = int(entry["timestamp"])
            items = [Submission.from_api(item) for item in data]
        except (ValueError, KeyError, TypeError, AttributeError):
            logging.getLogger(LOGGER_NAME).warning("Ignoring unreadable cache entry %s", self.key)
            return None
        now = self.clock() if now_ms is None else now_ms
        if now - timestamp > self.cfg.cache_ttl_ms:
            return None
        return items

    def set(self, data: Iterable[Submission], now_ms: Optional[int] = None) -> None:
        entry = {
            "data": [s.to_dict() for s in data],
            "timestamp": self.clock() if now_ms is None else now_ms,
        }
        self.storage.set_item(self.key, json.dumps(entry, ensure_ascii=False))

    def clear(self) -> None:
        self.storage.remove_item(self.key)


# -----------------------------
# Backends
# -----------------------------
def _session(token: Optional[str]) -> requests.Session:
    s = requests.Session()
    if token:
        s.headers["Authorization"] = f"token {token}"
    s.headers["Accept"] = "application/vnd.github.v3+json"
    s.headers["Content-Type"] = "application/json"
    s.headers["X-GitHub-Api-Version"] = GITHUB_API_VERSION
    return s


def _error_message(resp: requests.Response, fallback: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return fallback
    if isinstance(data, dict):
        msg = data.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg
    return fallback


class IssuePage(list):
    """One page of submissions; `fetched` counts the raw items before pull requests were dropped."""

    fetched: int = 0


class GitHubService:
    """Create/list submissions through the GitHub Issues REST API (or the treehole proxy)."""

    def __init__(self, cfg: Config, token: Optional[str] = None):
        self.cfg = cfg
        self._token = token
        self._session: Optional[requests.Session] = None

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            # proxy mode never attaches a credential
            token = None if self.cfg.use_proxy else (self._token or resolve_token())
            self._session = _session(token)
        return self._session

    def _request(self, method: str, fallback: str, **kwargs) -> requests.Response:
        url = self.cfg.issues_url
        try:
            resp = self.session.request(method, url, timeout=self.cfg.request_timeout, **kwargs)
        except requests.RequestException as exc:
            logging.getLogger(LOGGER_NAME).warning('%s %s failed: %s', method, url, exc)
            raise RequestError(f"{fallback}: {exc}") from exc
        if resp.status_code >= 300:
            logging.getLogger(LOGGER_NAME).warning('%s %s HTTP %s: %s', method, url, resp.status_code, resp.text[:200])
            raise RequestError(_error_message(resp, fallback), resp.status_code)
        return resp

    @staticmethod
    def _parse(item: dict, resp: requests.Response, fallback: str) -> Submission:
        try:
            return Submission.from_api(item)
        except (TypeError, ValueError) as exc:
            raise RequestError(f"{fallback}: unexpected response ({exc})", resp.status_code) from exc

    @staticmethod
    def _json(resp: requests.Response, fallback: str):
        try:
            return resp.json()
        except ValueError as exc:
            raise RequestError(f"{fallback}: invalid JSON response", resp.status_code) from exc

    def create_issue(self, content: str) -> Submission:
        if self.cfg.use_proxy:
            payload: Dict[str, object] = {"content": content}
        else:
            payload = {
                "title": issue_title(self.cfg.title_prefix),
                "body": content,
                "labels": [self.cfg.label],
            }
        resp = self._request("POST", SUBMIT_FAILED, json=payload)
        data = self._json(resp, SUBMIT_FAILED)
        if not isinstance(data, dict):
            raise RequestError(f"{SUBMIT_FAILED}: unexpected response", resp.status_code)
        created = self._parse(data, resp, SUBMIT_FAILED)
        logging.getLogger(LOGGER_NAME).info("Created submission #%s", created.number)
        return created

    def get_issues(self, page: int = 1) -> List[Submission]:
        if self.cfg.use_proxy:
            params: Dict[str, object] = {"page": page}
        else:
            params = {
                "labels": self.cfg.label,
                "per_page": self.cfg.page_size,
                "page": page,
                "sort": "created",
                "direction": "desc",
            }
        resp = self._request("GET", LOAD_FAILED, params=params)
        data = self._json(resp, LOAD_FAILED)
        if not isinstance(data, list):
            raise RequestError(f"{LOAD_FAILED}: unexpected response", resp.status_code)
        # the issues endpoint also lists pull requests
        items = IssuePage(
            self._parse(item, resp, LOAD_FAILED)
            for item in data
            if isinstance(item, dict) and "pull_request" not in item
        )
        items.fetched = len(data)
        return items


def _read_messages(path: str) -> List[Dict[str, str]]:
    if not os.path.isfile(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise TreeholeError(f"Unreadable messages file {path}: {exc}") from exc
    if not isinstance(data, list):
        raise TreeholeError(f"Unreadable messages file {path}: expected a list")
    return data


def _append_message(path: str, record: Dict[str, str]) -> int:
    messages = _read_messages(path)
    messages.append(record)
    try:
        directory = os.path.dirname(os.path.abspath(path))
        if directory and not os.path.isdir(directory):
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(messages, f, indent=2, ensure_ascii=False)
    except OSError as exc:
        raise TreeholeError(f"Cannot write messages file {path}: {exc}") from exc
    return len(messages)


def save_message(message: str, path: str = "messages.json") -> Dict[str, str]:
    """Append one {content, time} record to the messages file, creating it if needed."""
    record = {"content": message, "time": _utc_now_iso()}
    _append_message(path, record)
    return record


class LocalMessageStore:
    """Backend that keeps submissions in a local messages.json and never talks to GitHub."""

    def __init__(self, path: str, page_size: int = 10):
        self.path = path
        self.page_size = page_size

    def create_issue(self, content: str) -> Submission:
        validate_content(content)
        record = {"content": content, "time": _utc_now_iso()}
        number = _append_message(self.path, record)
        logging.getLogger(LOGGER_NAME).info("Saved local submission #%d to %s", number, self.path)
        return Submission(body=content, created_at=record["time"], number=number)

    def get_issues(self, page: int = 1) -> List[Submission]:
        items = [
            Submission(body=str(m.get("content") or ""), created_at=str(m.get("time") or ""), number=i + 1)
            for i, m in enumerate(_read_messages(self.path))
            if isinstance(m, dict)
        ]
        items.reverse()
        start = (max(1, page) - 1) * self.page_size
        return items[start:start + self.page_size]


class MockService:
    """In-memory backend used by MOCK_FETCH=1."""

    def __init__(self, submissions: List[Submission], page_size: int = 10):
        self.submissions = list(submissions)
        self.page_size = page_size

    def create_issue(self, content: str) -> Submission:
        created = Submission(
            body=content,
            created_at=_utc_now_iso(),
            html_url=f"https://github.com/mock/treehole/issues/{len(self.submissions) + 1}",
            number=len(self.submissions) + 1,
        )
        self.submissions.insert(0, created)
        return created

    def get_issues(self, page: int = 1) -> List[Submission]:
        start = (max(1, page) - 1) * self.page_size
        return self.submissions[start:start + self.page_size]


def generate_mock_submissions(cfg: Config, count: int = 23) -> List[Submission]:
    lines = [
        "I still listen to the voicemail from my grandmother.",
        "I pretend to understand jazz.",
        "I rewrote the whole module over the weekend and nobody noticed.",
        "Sometimes I take the long way home just to finish a song.",
        "I have never once read the terms and conditions.",
    ]
    base = dt.datetime(2024, 1, 31, 12, 0, tzinfo=dt.timezone.utc)
    out: List[Submission] = []
    for i in range(count):
        number = count - i
        created = base - dt.timedelta(hours=7 * i)
        out.append(Submission(
            body=lines[i % len(lines)],
            created_at=created.isoformat().replace('+00:00', 'Z'),
            html_url=f"https://github.com/{cfg.repo_full_name}/issues/{number}",
            number=number,
        ))
    return out


def build_service(cfg: Config, token: Optional[str] = None):
    if cfg.backend == "local":
        return LocalMessageStore(cfg.messages_path, cfg.page_size)
    return GitHubService(cfg, token=token)


# -----------------------------
# Controller
# -----------------------------
FORM_ID = 'secretForm'
TEXT_ID = 'secretText'
CONTAINER_ID = 'secretsContainer'
LOADING_ID = 'loadingIndicator'
ERROR_ID = 'errorMessage'
EMPTY_ID = 'noSecretsMessage'
LOAD_MORE_ID = 'loadMoreBtn'

ELEMENT_IDS = (FORM_ID, TEXT_ID, CONTAINER_ID, LOADING_ID, ERROR_ID, EMPTY_ID, LOAD_MORE_ID)
FORM_ELEMENTS = frozenset((FORM_ID, TEXT_ID))
LIST_ELEMENTS = frozenset((CONTAINER_ID, LOADING_ID, ERROR_ID, EMPTY_ID, LOAD_MORE_ID))
ALL_ELEMENTS = FORM_ELEMENTS | LIST_ELEMENTS


@dataclass
class WallState:
    page: int = 1
    requested_page: int = 1
    phase: str = "idle"            # idle | loading | rendered | empty | error
    submit_phase: str = "idle"     # idle | submitting | success | failure
    items: List[Submission] = field(default_factory=list)
    has_more: bool = False
    error: Optional[str] = None
    from_cache: bool = False


class WallView:
    """Binding surface the controller renders through.

    `elements` names the page elements this view provides; a feature whose
    elements are missing is skipped without error. Every hook is a no-op here
    so a view only overrides what it can show.
    """

    elements: frozenset = frozenset()

    def has(self, element_id: str) -> bool:
        return element_id in self.elements

    def get_input(self) -> str:
        return ""

    def clear_input(self) -> None:
        pass

    def set_submitting(self, busy: bool) -> None:
        pass

    def show_alert(self, message: str, kind: str = "info") -> None:
        pass

    def clear_secrets(self) -> None:
        pass

    def render_secrets(self, items: List[Submission]) -> None:
        pass

    def set_loading(self, visible: bool) -> None:
        pass

    def show_error(self, message: str) -> None:
        pass

    def hide_error(self) -> None:
        pass

    def set_empty(self, visible: bool) -> None:
        pass

    def set_load_more(self, visible: bool) -> None:
        pass

    def redirect(self, target: str, delay: float) -> None:
        pass


class TreeholeController:
    """Drives submit and load events against a backend, a cache and a view."""

    LIST_TARGET = 'view'

    def __init__(self, cfg: Config, service, cache: Optional[CacheService], view: WallView):
        self.cfg = cfg
        self.service = service
        self.cache = cache
        self.view = view
        self.state = WallState()

    def init(self) -> None:
        if self.view.has(CONTAINER_ID):
            self.load_secrets(1)

    def handle_submit(self, text: Optional[str] = None) -> bool:
        logger = logging.getLogger(LOGGER_NAME)
        if not self.view.has(FORM_ID):
            return False
        if self.state.submit_phase == "submitting":
            logger.debug("Submit ignored; a request is already in flight")
            return False
        raw = self.view.get_input() if text is None else text
        try:
            content = validate_content(raw)
        except ValidationError:
            logger.debug("Submit ignored; empty content")
            return False

        self.state.submit_phase = "submitting"
        self.view.set_submitting(True)
        try:
            self.service.create_issue(content)
        except TreeholeError as exc:
            logger.error("Submit failed: %s", exc)
            self.state.submit_phase = "failure"
            self.view.show_alert(f"{SUBMIT_FAILED}: {exc}", "error")
            return False
        finally:
            # anything other than a TreeholeError propagates; the next submit must still go through
            if self.state.submit_phase == "submitting":
                self.state.submit_phase = "idle"
            self.view.set_submitting(False)

        self.state.submit_phase = "success"
        self.view.show_alert("Submitted!", "success")
        self.view.clear_input()
        # a page that only carries the form sends the user on to the wall
        if not self.view.has(CONTAINER_ID):
            self.view.redirect(self.LIST_TARGET, self.cfg.redirect_delay)
        return True

    def load_secrets(self, page: int = 1) -> bool:
        if not self.view.has(CONTAINER_ID):
            return False
        logger = logging.getLogger(LOGGER_NAME)
        st = self.state
        st.phase = "loading"
        st.error = None
        st.requested_page = page
        if page == 1:
            self._reset_items()
        self.view.set_loading(True)
        self.view.hide_error()
        self.view.set_empty(False)
        try:
            if page == 1 and self.cache is not None:
                cached = self.cache.get()
                if cached is not None:
                    logger.debug("Rendering %d cached submissions", len(cached))
                    st.items = list(cached)
                    st.from_cache = True
                    self.view.render_secrets(cached)

            issues = self.service.get_issues(page)
            if page == 1 and self.cache is not None:
                self.cache.set(issues)
            logger.info("Loaded %d submissions (page %d)", len(issues), page)

            if page == 1:
                self._reset_items()
            st.page = page
            # filtered pages (pull requests dropped) still count as full
            st.has_more = getattr(issues, "fetched", len(issues)) == self.cfg.page_size
            self.view.set_load_more(st.has_more)
            if not issues and page == 1:
                st.phase = "empty"
                self.view.set_empty(True)
            else:
                st.items.extend(issues)
                self.view.render_secrets(issues)
                st.phase = "rendered"
            return True
        except TreeholeError as exc:
            logger.error("Load failed (page %d): %s", page, exc)
            st.phase = "error"
            st.error = str(exc)
            st.has_more = False
            self.view.set_load_more(False)
            self.view.show_error(str(exc))
            return False
        finally:
            self.view.set_loading(False)

    def _reset_items(self) -> None:
        # nothing loaded yet, so load_more() starts again from page 1
        self.state.page = 0
        self.state.has_more = False
        self.state.items = []
        self.state.from_cache = False
        self.view.clear_secrets()

    def reload(self) -> bool:
        return self.load_secrets(1)

    def load_more(self) -> bool:
        return self.load_secrets(self.state.page + 1)

    def retry(self) -> bool:
        return self.load_secrets(self.state.requested_page)


# -----------------------------
# HTML view
# -----------------------------
def render_secret_card(item: Submission, tz: Optional[dt.tzinfo] = None) -> str:
    link = ""
    if item.html_url:
        link = (
            f'\n    <a href="{escape_html(item.html_url)}" target="_blank" rel="noopener" class="gh-link">'
            'View on GitHub</a>'
        )
    return (
        '<div class="secret-card">\n'
        f'  <div class="secret-content">{escape_html(item.body)}</div>\n'
        '  <div class="secret-meta">\n'
        f'    <span class="secret-date">{escape_html(format_date(item.created_at, tz))}</span>'
        f'{link}\n'
        '  </div>\n'
        '</div>'
    )


def _display(visible: bool) -> str:
    return "block" if visible else "none"


class HtmlWallView(WallView):
    """Collects the wall as HTML markup, the way the browser DOM would hold it."""

    def __init__(self, elements: Iterable[str] = ALL_ELEMENTS, input_text: str = "",
                 page_href: Optional[Callable[[int], str]] = None,
                 targets: Optional[Dict[str, str]] = None, tz: Optional[dt.tzinfo] = None):
        self.elements = frozenset(elements)
        self.input_text = input_text
        self.page_href = page_href
        self.targets = targets or {TreeholeController.LIST_TARGET: "view.html"}
        self.tz = tz
        self.cards: List[str] = []
        self.alerts: List[Tuple[str, str]] = []
        self.loading = False
        self.error: Optional[str] = None
        self.empty = False
        self.load_more = False
        self.submitting = False
        self.redirect_to: Optional[Tuple[str, float]] = None
        self.page = 1

    def get_input(self) -> str:
        return self.input_text

    def clear_input(self) -> None:
        self.input_text = ""

    def set_submitting(self, busy: bool) -> None:
        self.submitting = busy

    def show_alert(self, message: str, kind: str = "info") -> None:
        self.alerts.append((kind, message))

    def clear_secrets(self) -> None:
        self.cards = []

    def render_secrets(self, items: List[Submission]) -> None:
        self.cards.extend(render_secret_card(item, self.tz) for item in items)

    def set_loading(self, visible: bool) -> None:
        self.loading = visible

    def show_error(self, message: str) -> None:
        self.error = message

    def hide_error(self) -> None:
        self.error = None

    def set_empty(self, visible: bool) -> None:
        self.empty = visible

    def set_load_more(self, visible: bool) -> None:
        self.load_more = visible

    def redirect(self, target: str, delay: float) -> None:
        self.redirect_to = (self.targets.get(target, target), delay)

    def render_alerts(self) -> str:
        out = []
        for kind, message in self.alerts:
            icon = "check-circle" if kind == "success" else "exclamation-circle"
            out.append(f'<div class="alert alert-{escape_html(kind)}"><i class="fas fa-{icon}"></i> {escape_html(message)}</div>')
        return "\n".join(out)

    def render_form(self, action: str = "") -> str:
        if not self.has(FORM_ID):
            return ""
        disabled = " disabled" if self.submitting else ""
        return (
            f'<form id="{FORM_ID}" method="post" action="{escape_html(action)}">\n'
            f'  <textarea id="{TEXT_ID}" name="content" rows="5" required>{escape_html(self.input_text)}</textarea>\n'
            f'  <button type="submit"{disabled}>Submit</button>\n'
            '</form>'
        )

    def render_list(self, page: Optional[int] = None) -> str:
        if not self.has(CONTAINER_ID):
            return ""
        parts = [
            f'<div id="{LOADING_ID}" style="display: {_display(self.loading)}">Loading…</div>',
            f'<div id="{ERROR_ID}" style="display: {_display(self.error is not None)}">'
            f'<span id="errorText">{escape_html(self.error or "")}</span>'
            f' <a class="retry" href="{escape_html(self._href(page or 1))}">Retry</a></div>',
            f'<div id="{EMPTY_ID}" style="display: {_display(self.empty)}">No secrets yet.</div>',
            f'<div id="{CONTAINER_ID}">\n' + "\n".join(self.cards) + '\n</div>',
        ]
        if self.load_more and self.page_href is not None:
            parts.append(f'<a id="{LOAD_MORE_ID}" href="{escape_html(self.page_href((page or 1) + 1))}">Load more</a>')
        return "\n".join(parts)

    def _href(self, page: int) -> str:
        if self.page_href is None:
            return ""
        return self.page_href(page)

    def render_page(self, title: str = "Treehole", page: Optional[int] = None, form_action: str = "") -> str:
        head = ['<meta charset="utf-8">', f'<title>{escape_html(title)}</title>']
        if self.redirect_to is not None:
            target, delay = self.redirect_to
            head.append(f'<meta http-equiv="refresh" content="{delay:g};url={escape_html(target)}">')
        body = [f'<h1>{escape_html(title)}</h1>', self.render_alerts(), self.render_form(form_action), self.render_list(page)]
        return (
            "<!DOCTYPE html>\n<html>\n<head>\n" + "\n".join(head) + "\n</head>\n<body>\n"
            + "\n".join(b for b in body if b) + "\n</body>\n</html>\n"
        )


def export_html(cfg: Config, service, cache: Optional[CacheService], out_path: str) -> bool:
    view = HtmlWallView(elements=LIST_ELEMENTS)
    controller = TreeholeController(cfg, service, cache, view)
    ok = controller.load_secrets(1)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(view.render_page(title=f"Treehole · {cfg.repo_full_name}"))
    return ok


# -----------------------------
# Console view (CLI)
# -----------------------------
class ConsoleWallView(WallView):
    """Plain stdout rendering for --submit and --list; the list is printed once loading settles."""

    def __init__(self, elements: Iterable[str], input_text: str = "", out=None, tz: Optional[dt.tzinfo] = None):
        self.elements = frozenset(elements)
        self.input_text = input_text
        self.out = out
        self.tz = tz
        self.items: List[Submission] = []
        self.empty = False
        self.has_more = False

    def _print(self, text: str, err: bool = False) -> None:
        stream = self.out or (sys.stderr if err else sys.stdout)
        print(text, file=stream)

    def get_input(self) -> str:
        return self.input_text

    def clear_input(self) -> None:
        self.input_text = ""

    def show_alert(self, message: str, kind: str = "info") -> None:
        self._print(message, err=(kind == "error"))

    def clear_secrets(self) -> None:
        self.items = []

    def render_secrets(self, items: List[Submission]) -> None:
        self.items.extend(items)

    def show_error(self, message: str) -> None:
        self._print(f"error: {message}", err=True)

    def set_empty(self, visible: bool) -> None:
        self.empty = visible

    def set_load_more(self, visible: bool) -> None:
        self.has_more = visible

    def flush(self) -> None:
        for item in self.items:
            self._print(f"#{item.number}  {format_date(item.created_at, self.tz)}  {item.html_url}".rstrip())
            for line in (item.body or "").splitlines() or [""]:
                self._print(f"    {line}")
        if self.empty:
            self._print("No secrets yet.")
        elif self.has_more:
            self._print("(more available: use --page)")


# -----------------------------
# Terminal UI
# -----------------------------
WALL_STYLE: Dict[str, str] = {
    'card.meta': '#87d7ff',
    'card.body': '#f0f0f0',
    'card.link': '#5f5f5f',
    'hint': 'italic #8a8a8a',
    'error': 'bold #ff8787',
    'status': 'bg:#303030 #f0f0f0',
    'status.success': 'bg:#303030 bold #87ff5f',
    'status.error': 'bg:#303030 bold #ff8787',
    'compose': '#ffffff',
}


def build_wall_fragments(items: List[Submission], *, loading: bool = False, error: Optional[str] = None,
                         empty: bool = False, has_more: bool = False, offset: int = 0,
                         tz: Optional[dt.tzinfo] = None) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the wall's FormattedTextControl."""
    frags: List[Tuple[str, str]] = []
    if error:
        frags.append(("class:error", f"Error: {error}"))
        frags.append(("class:hint", "  (press r to retry)\n\n"))
    if empty:
        frags.append(("class:hint", "No secrets yet. Press n to share one.\n"))
    for item in items[max(0, offset):]:
        frags.append(("class:card.meta", f"#{item.number}  {format_date(item.created_at, tz)}\n"))
        for line in (item.body or "").splitlines() or [""]:
            frags.append(("class:card.body", f"  {line}\n"))
        if item.html_url:
            frags.append(("class:card.link", f"  {item.html_url}\n"))
        frags.append(("", "\n"))
    if loading:
        frags.append(("class:hint", "Loading…\n"))
    elif has_more:
        frags.append(("class:hint", "── press m to load more ──\n"))
    if not frags:
        return [("class:hint", "Nothing to show. Press r to load.")]
    return frags


class TerminalWallView(WallView):
    elements = ALL_ELEMENTS

    def __init__(self, tz: Optional[dt.tzinfo] = None):
        self.tz = tz
        self.items: List[Submission] = []
        self.loading = False
        self.error: Optional[str] = None
        self.empty = False
        self.has_more = False
        self.submitting = False
        self.compose_mode = False
        self.compose_buffer = ""
        self.alert: Optional[Tuple[str, str, float]] = None
        self.offset = 0
        self.app: Optional[Application] = None

    def invalidate(self) -> None:
        if self.app is not None:
            self.app.invalidate()

    def get_input(self) -> str:
        return self.compose_buffer

    def clear_input(self) -> None:
        self.compose_buffer = ""
        self.compose_mode = False
        self.invalidate()

    def set_submitting(self, busy: bool) -> None:
        self.submitting = busy
        self.invalidate()

    def show_alert(self, message: str, kind: str = "info") -> None:
        self.alert = (message, kind, time.monotonic() + ALERT_SECONDS)
        self.invalidate()

    def current_alert(self, now: Optional[float] = None) -> Optional[Tuple[str, str]]:
        if self.alert is None:
            return None
        message, kind, expires = self.alert
        if (time.monotonic() if now is None else now) >= expires:
            self.alert = None
            return None
        return message, kind

    def clear_secrets(self) -> None:
        self.items = []
        self.offset = 0
        self.invalidate()

    def render_secrets(self, items: List[Submission]) -> None:
        self.items.extend(items)
        self.invalidate()

    def set_loading(self, visible: bool) -> None:
        self.loading = visible
        self.invalidate()

    def show_error(self, message: str) -> None:
        self.error = message
        self.invalidate()

    def hide_error(self) -> None:
        self.error = None

    def set_empty(self, visible: bool) -> None:
        self.empty = visible

    def set_load_more(self, visible: bool) -> None:
        self.has_more = visible

    def scroll(self, delta: int) -> None:
        self.offset = min(max(0, self.offset + delta), max(0, len(self.items) - 1))
        self.invalidate()

    def wall_fragments(self) -> List[Tuple[str, str]]:
        return build_wall_fragments(
            self.items, loading=self.loading, error=self.error, empty=self.empty,
            has_more=self.has_more, offset=self.offset, tz=self.tz,
        )

    def compose_fragments(self) -> List[Tuple[str, str]]:
        if self.submitting:
            return [("class:hint", "Submitting…")]
        return [("class:compose", self.compose_buffer), ("class:hint", "▏ Enter=submit  Esc=close")]

    def status_fragments(self) -> List[Tuple[str, str]]:
        alert = self.current_alert()
        if alert is not None:
            message, kind = alert
            cls = 'class:status.error' if kind == 'error' else 'class:status.success'
            return [(cls, f" {message}")]
        shown = f"{len(self.items)} secrets" if self.items else "no secrets loaded"
        return [('class:status', f" {shown}  n:new  r:reload  m:more  j/k:scroll  q:quit")]


def build_ui(controller: TreeholeController, view: TerminalWallView) -> Application:
    logger = logging.getLogger(LOGGER_NAME)
    kb = KeyBindings()
    is_compose = Condition(lambda: view.compose_mode)
    is_normal = Condition(lambda: not view.compose_mode)

    async def run_action(fn: Callable[[], object]) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, fn)
        except Exception as exc:
            logger.exception("Background action failed")
            view.show_alert(f"Error: {exc}", "error")
        finally:
            view.invalidate()

    def spawn(fn: Callable[[], object]) -> None:
        asyncio.create_task(run_action(fn))

    @kb.add('q', filter=is_normal)
    @kb.add('c-c')
    def _(event):
        event.app.exit()

    @kb.add('n', filter=is_normal)
    def _(event):
        view.compose_mode = True
        view.invalidate()

    @kb.add('escape', filter=is_compose)
    def _(event):
        view.compose_mode = False
        view.invalidate()

    @kb.add('enter', filter=is_compose)
    def _(event):
        # the trigger stays disabled until the request settles
        if view.submitting:
            return
        spawn(controller.handle_submit)

    @kb.add('backspace', filter=is_compose)
    def _(event):
        if view.compose_buffer:
            view.compose_buffer = view.compose_buffer[:-1]
            view.invalidate()

    @kb.add(Keys.Any, filter=is_compose)
    def _(event):
        ch = event.data or ""
        if ch and not view.submitting:
            view.compose_buffer += ch
            view.invalidate()

    @kb.add('r', filter=is_normal)
    def _(event):
        if view.loading:
            return
        spawn(controller.retry if view.error else controller.reload)

    @kb.add('m', filter=is_normal)
    def _(event):
        if view.loading or not view.has_more:
            return
        spawn(controller.load_more)

    @kb.add('j', filter=is_normal)
    @kb.add('down', filter=is_normal)
    def _(event):
        view.scroll(1)

    @kb.add('k', filter=is_normal)
    @kb.add('up', filter=is_normal)
    def _(event):
        view.scroll(-1)

    wall_window = Window(FormattedTextControl(view.wall_fragments), wrap_lines=True)
    compose_window = ConditionalContainer(
        Frame(Window(FormattedTextControl(view.compose_fragments), height=3, wrap_lines=True), title="New secret"),
        filter=is_compose,
    )
    status_window = Window(FormattedTextControl(view.status_fragments), height=1, style='class:status')
    root = HSplit([wall_window, compose_window, status_window])
    app = Application(layout=Layout(root), key_bindings=kb, full_screen=True, style=Style.from_dict(WALL_STYLE))
    view.app = app
    return app


def run_ui(controller: TreeholeController, view: TerminalWallView) -> None:
    app = build_ui(controller, view)

    async def _ticker():
        # repaint once a second so alerts expire on time
        while True:
            await asyncio.sleep(1)
            view.invalidate()

    async def _initial_load():
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, controller.init)

    def _start() -> None:
        app.create_background_task(_ticker())
        app.create_background_task(_initial_load())

    app.run(pre_run=_start)


# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Anonymous confession wall backed by GitHub Issues")
    ap.add_argument("--config", help="Path to YAML config (optional)")
    ap.add_argument("--db", default=DEFAULT_DB_PATH, help="Path to the local storage sqlite DB")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", default=DEFAULT_LOG_PATH, help="Path to the rotating log file")
    ap.add_argument("--local", action="store_true", help="Keep submissions in messages.json; never talk to GitHub")
    ap.add_argument("--submit", metavar="TEXT", help="Post one secret and exit ('-' reads stdin)")
    ap.add_argument("--list", action="store_true", help="Print one page of secrets and exit")
    ap.add_argument("--page", type=int, default=1, help="Page for --list (default 1)")
    ap.add_argument("--export-html", metavar="PATH", help="Write the first page as a static HTML wall")
    ap.add_argument("--serve", action="store_true", help="Run the HTTP proxy that holds the token server side")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8787)
    ap.add_argument("--clear-cache", action="store_true", help="Drop the cached first page and exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.local:
        cfg.backend = "local"
    if args.page < 1:
        print("error: --page must be >= 1", file=sys.stderr)
        sys.exit(2)

    setup_logging(args.log_level, args.log_file)

    mock_fetch = os.environ.get("MOCK_FETCH") == "1" and not args.serve
    storage = LocalStorage(args.db)
    cache = CacheService(storage, cfg, namespace="mock" if mock_fetch else None)

    if args.clear_cache:
        cache.clear()
        print(f"Cleared cache {cache.key}")
        return

    if args.serve:
        import uvicorn
        from treehole_server import create_app
        uvicorn.run(create_app(cfg, cache=cache), host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    if mock_fetch:
        logging.getLogger(LOGGER_NAME).info("MOCK_FETCH enabled; serving generated submissions")
        service = MockService(generate_mock_submissions(cfg), cfg.page_size)
    else:
        service = build_service(cfg)

    if args.submit is not None:
        text = sys.stdin.read() if args.submit == "-" else args.submit
        view = ConsoleWallView(FORM_ELEMENTS, input_text=text)
        controller = TreeholeController(cfg, service, cache, view)
        if not text.strip():
            print("error: nothing to submit", file=sys.stderr)
            sys.exit(1)
        if not controller.handle_submit():
            sys.exit(1)
        return

    if args.list:
        view = ConsoleWallView(LIST_ELEMENTS)
        ok = TreeholeController(cfg, service, cache, view).load_secrets(args.page)
        view.flush()
        if not ok:
            sys.exit(1)
        return

    if args.export_html:
        if not export_html(cfg, service, cache, args.export_html):
            print(f"warning: wrote {args.export_html} with an error block", file=sys.stderr)
            sys.exit(1)
        print(f"Wrote {args.export_html}")
        return

    view = TerminalWallView()
    run_ui(TreeholeController(cfg, service, cache, view), view)


if __name__ == "__main__":
    main()
