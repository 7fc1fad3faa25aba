#!/usr/bin/env python3
"""
A single-file project tracker whose admin API is unlocked by signed Nostr events.
"""

import json
import os
import sqlite3
import uuid
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, NamedTuple
from urllib.parse import urlparse

import click
from flask import Flask, Response, g, request
from nostr_sdk import Event as NostrEvent
from websockets.sync.client import connect as ws_connect
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("PLEBONE_DB", str(ROOT / "tracker.sqlite3")))
ENV_FILE = ROOT / ".env"

AUTH_KIND = 22242  # reserved for admin credentials
AUTH_CHALLENGE_TAG = ["challenge", "admin-login"]
AUTH_MAX_SKEW = 300
RELAY_TIMEOUT = 5.0
RELAY_MAX_WORKERS = 16
RELAY_SCHEMES = ("wss", "ws")
DEFAULT_RELAYS = (
    "wss://relay.damus.io",
    "wss://relay.nostr.band",
    "wss://nos.lol",
    "wss://relay.primal.net",
)
RELAYS_SETTING = "nostr_relays"

TASK_TYPES = ("bug", "feature", "task")
TASK_STATUSES = ("open", "in_progress", "completed", "closed")
TITLE_MAX = 200
TEXT_MAX = 2000
HEX_CHARS = frozenset("0123456789abcdefABCDEF")

try:
    __version__ = version("plebone")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(DATABASE=str(DB_FILE), RATELIMIT_ENABLED=True)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Errors
###############################################################################
class TrackerError(Exception):
    """Base class for errors the API turns into a JSON response."""


class NotFoundError(TrackerError):
    pass


class ValidationError(TrackerError, ValueError):
    pass


class NoReplyTarget(ValidationError):
    """The task was never announced, so there is nothing to reply to."""


class PublishError(TrackerError):
    """A relay publication failed. Logged, never shown to the caller."""


class AuthFailure(str, Enum):
    MISSING_OR_MALFORMED_HEADER = "missing_or_malformed_header"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    MALFORMED_TOKEN = "malformed_token"
    INVALID_SIGNATURE = "invalid_signature"
    STALE_OR_FUTURE_TOKEN = "stale_or_future_token"
    IDENTITY_NOT_AUTHORIZED = "identity_not_authorized"


class AuthError(TrackerError):
    def __init__(self, reason: AuthFailure, detail: str = ""):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        ------------------------------------------------------------
        -- 2.  Projects (managed from the CLI)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS project (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            url         TEXT,
            repository  TEXT,
            active      INTEGER NOT NULL DEFAULT 1,
            created_at  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 3.  Tasks (bug reports, feature requests, chores)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS task (
            id             TEXT PRIMARY KEY,
            project_id     TEXT NOT NULL,
            type           TEXT NOT NULL DEFAULT 'task',   -- bug | feature | task
            title          TEXT NOT NULL,
            description    TEXT NOT NULL,
            status         TEXT NOT NULL DEFAULT 'open',
            priority       INTEGER NOT NULL DEFAULT 0,
            ignored        INTEGER NOT NULL DEFAULT 0,
            author_pubkey  TEXT,
            nostr_event_id TEXT,
            admin_notes    TEXT,
            created_at     TEXT NOT NULL,
            updated_at     TEXT NOT NULL,
            CHECK (NOT (priority AND ignored)),
            FOREIGN KEY (project_id) REFERENCES project(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_task_project ON task(project_id, updated_at);

        ------------------------------------------------------------
        -- 4.  Comments
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS task_comment (
            id             TEXT PRIMARY KEY,
            task_id        TEXT NOT NULL,
            content        TEXT NOT NULL,
            author_pubkey  TEXT,
            nostr_event_id TEXT,
            is_admin       INTEGER NOT NULL DEFAULT 0,
            created_at     TEXT NOT NULL,
            FOREIGN KEY (task_id) REFERENCES task(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_comment_task ON task_comment(task_id, created_at);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _stamp() -> str:
    # fixed width so the TEXT columns sort chronologically
    return utc_now().isoformat(timespec="microseconds")


###############################################################################
# Settings + configuration
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def validate_relay_url(url) -> str:
    """Return the stripped relay URL or raise ValidationError."""
    if not isinstance(url, str):
        raise ValidationError("Relay URL must be a string")
    url = url.strip()
    parsed = urlparse(url)
    if (
        not url
        or any(ch.isspace() for ch in url)
        or parsed.scheme not in RELAY_SCHEMES
        or not parsed.hostname
    ):
        raise ValidationError(f"Invalid relay URL: {url!r}")
    return url


def _split_csv(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@dataclass(frozen=True)
class NostrConfig:
    """Process-wide Nostr policy. Built once, never mutated."""

    admin_pubkeys: frozenset = frozenset()
    relays: tuple = DEFAULT_RELAYS
    max_skew: int = AUTH_MAX_SKEW
    relay_timeout: float = RELAY_TIMEOUT

    def __post_init__(self):
        object.__setattr__(self, "admin_pubkeys", frozenset(self.admin_pubkeys))
        object.__setattr__(self, "relays", tuple(self.relays))

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "NostrConfig":
        """
        Read ADMIN_PUBKEYS / NOSTR_RELAYS / NOSTR_AUTH_MAX_SKEW /
        NOSTR_RELAY_TIMEOUT from the process env (falling back to .env).
        """
        if env is None:
            env = {**_read_env_file(), **os.environ}

        relays = DEFAULT_RELAYS
        if env.get("NOSTR_RELAYS", "").strip():
            accepted = []
            for url in _split_csv(env["NOSTR_RELAYS"]):
                try:
                    accepted.append(validate_relay_url(url))
                except ValidationError:
                    app.logger.warning("Ignoring invalid relay in NOSTR_RELAYS: %r", url)
            relays = tuple(accepted)

        return cls(
            admin_pubkeys=frozenset(_split_csv(env.get("ADMIN_PUBKEYS"))),
            relays=relays,
            max_skew=_env_number(env, "NOSTR_AUTH_MAX_SKEW", int, AUTH_MAX_SKEW),
            relay_timeout=_env_number(env, "NOSTR_RELAY_TIMEOUT", float, RELAY_TIMEOUT),
        )


def _env_number(env: dict[str, str], key: str, cast, default):
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        value = None
    if value is None or not value >= 0:
        app.logger.warning("Ignoring invalid %s=%r; using %s", key, raw, default)
        return default
    return value


def relay_endpoints() -> list[str]:
    """Admin override from the settings table, else the configured defaults."""
    raw = get_setting(RELAYS_SETTING)
    if raw is None:
        return list(nostr_config().relays)
    try:
        relays = json.loads(raw)
        return [validate_relay_url(url) for url in relays]
    except (ValueError, TypeError):
        app.logger.warning("Stored relay list is unreadable; publishing disabled")
        return []


def save_relay_endpoints(relays) -> list[str]:
    if not isinstance(relays, list) or not relays:
        raise ValidationError("Please provide at least one relay URL (wss://...)")
    cleaned = list(dict.fromkeys(validate_relay_url(url) for url in relays))
    set_setting(RELAYS_SETTING, json.dumps(cleaned))
    return cleaned


###############################################################################
# Signed events
###############################################################################
def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_signed_event(raw) -> dict:
    """
    Accept a JSON string or an already-decoded dict and check the shape of
    a Nostr event. Says nothing about the signature.
    """
    if raw is None:
        raise ValidationError("Missing signed event")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValidationError("Signed event is not valid JSON") from None
    if not isinstance(raw, dict):
        raise ValidationError("Signed event must be a JSON object")

    missing = {"pubkey", "created_at", "kind", "tags", "content", "sig"} - raw.keys()
    if missing:
        raise ValidationError(f"Signed event lacks {', '.join(sorted(missing))}")

    pubkey = raw["pubkey"]
    if not (isinstance(pubkey, str) and len(pubkey) == 64 and set(pubkey) <= HEX_CHARS):
        raise ValidationError("Signed event pubkey must be 64 hex characters")
    if not _is_int(raw["created_at"]) or not _is_int(raw["kind"]):
        raise ValidationError("Signed event created_at and kind must be integers")
    tags = raw["tags"]
    if not isinstance(tags, list) or not all(
        isinstance(t, list) and all(isinstance(x, str) for x in t) for t in tags
    ):
        raise ValidationError("Signed event tags must be a list of string lists")
    if not isinstance(raw["content"], str) or not isinstance(raw["sig"], str):
        raise ValidationError("Signed event content and sig must be strings")
    return raw


def verify_event(event) -> bool:
    """
    True iff *event* carries a valid id and Schnorr signature for its own
    pubkey. Malformed input of any kind is simply invalid.
    """
    try:
        return bool(NostrEvent.from_json(json.dumps(event)).verify())
    except Exception:
        return False


###############################################################################
# Authentication
###############################################################################
def check_freshness(created_at: int, now: int, max_skew: int = AUTH_MAX_SKEW) -> bool:
    """Symmetric window: |now - created_at| <= max_skew."""
    return abs(now - created_at) <= max_skew


def is_admin(identity: str | None, allowlist) -> bool:
    if not identity or not allowlist:
        return False
    return identity in allowlist


class AuthGate:
    """
    Stateless bearer-credential check:
        Authorization: Nostr <json-encoded signed event>
    Every request is judged on its own; nothing is remembered.
    """

    scheme = "Nostr"

    def __init__(self, config: NostrConfig, verify: Callable[[dict], bool] = verify_event):
        self.config = config
        self.verify = verify

    def authenticate(self, raw_header: str | None, now: int | None = None) -> str:
        """Return the verified admin pubkey or raise AuthError."""
        scheme, _, token = (raw_header or "").strip().partition(" ")
        token = token.strip()
        if not scheme or not token:
            raise AuthError(AuthFailure.MISSING_OR_MALFORMED_HEADER)
        if scheme != self.scheme:
            raise AuthError(AuthFailure.UNSUPPORTED_SCHEME, scheme[:20])

        try:
            event = parse_signed_event(token)
        except ValidationError as exc:
            raise AuthError(AuthFailure.MALFORMED_TOKEN, str(exc)) from None

        if not self.verify(event):
            raise AuthError(AuthFailure.INVALID_SIGNATURE, _short(event["pubkey"]))

        now = int(time()) if now is None else now
        if not check_freshness(event["created_at"], now, self.config.max_skew):
            raise AuthError(
                AuthFailure.STALE_OR_FUTURE_TOKEN,
                f"skew {abs(now - event['created_at'])}s",
            )

        if not is_admin(event["pubkey"], self.config.admin_pubkeys):
            raise AuthError(AuthFailure.IDENTITY_NOT_AUTHORIZED, _short(event["pubkey"]))

        return event["pubkey"]


def _short(pubkey: str | None) -> str:
    return f"{(pubkey or '')[:16]}…"


def admin_required(view):
    """Run the auth gate, bind the pubkey to ``g.nostr_pubkey``."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            g.nostr_pubkey = auth_gate().authenticate(request.headers.get("Authorization"))
        except AuthError as exc:
            app.logger.warning(
                "Admin auth rejected on %s %s: %s", request.method, request.path, exc
            )
            raise
        return view(*args, **kwargs)

    return wrapped


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not app.config.get("RATELIMIT_ENABLED", True):
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            # forget clients whose whole window has expired
            for stale in [k for k, q in hits.items() if not q or now - q[-1] > window]:
                del hits[stale]

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    json.dumps({"message": "Too many requests – try again later."}),
                    status=429,
                    mimetype="application/json",
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


###############################################################################
# Relay publishing
###############################################################################
class PublishResult(NamedTuple):
    event_id: str | None
    attempted: int
    succeeded: int


def send_to_relay(endpoint: str, event: dict, timeout: float) -> None:
    """
    Deliver one event to one relay and wait for its ``OK``.
    Raises on refusal, silence or any transport problem.
    """
    deadline = time() + timeout
    with ws_connect(endpoint, open_timeout=timeout, close_timeout=1) as ws:
        ws.send(json.dumps(["EVENT", event]))
        while True:
            remaining = deadline - time()
            if remaining <= 0:
                raise PublishError(f"{endpoint}: no OK within {timeout}s")
            try:
                msg = json.loads(ws.recv(timeout=remaining))
            except TimeoutError:
                raise PublishError(f"{endpoint}: no OK within {timeout}s") from None
            except ValueError:
                continue
            if isinstance(msg, list) and len(msg) >= 3 and msg[0] == "OK":
                if msg[1] != event.get("id"):
                    continue
                if msg[2] is True:
                    return
                reason = msg[3] if len(msg) > 3 else ""
                raise PublishError(f"{endpoint} refused the event: {reason}")


class RelayPublisher:
    """
    Best-effort fan-out of pre-signed events. Every relay is tried once,
    concurrently; a dead relay only lowers the success count.
    """

    def __init__(
        self,
        config: NostrConfig,
        verify: Callable[[dict], bool] = verify_event,
        send: Callable[[str, dict, float], None] = send_to_relay,
        max_workers: int = RELAY_MAX_WORKERS,
    ):
        self.config = config
        self.verify = verify
        self.send = send
        self.max_workers = max_workers

    def publish(self, event: dict, endpoints) -> PublishResult:
        endpoints = list(endpoints or ())
        if not endpoints:
            app.logger.warning("No relays configured. Skipping Nostr publishing.")
            return PublishResult(None, 0, 0)

        if not self.verify(event):
            raise PublishError("Refusing to publish an event that does not verify")

        event_id = event.get("id")
        succeeded = 0
        workers = min(len(endpoints), self.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.send, url, event, self.config.relay_timeout): url
                for url in endpoints
            }
            for fut in as_completed(futures):
                try:
                    fut.result()
                except Exception as exc:
                    app.logger.warning("Relay %s failed: %s", futures[fut], exc)
                else:
                    succeeded += 1

        if succeeded:
            app.logger.info(
                "Published to %d/%d relays. Event ID: %s",
                succeeded,
                len(endpoints),
                event_id,
            )
        else:
            app.logger.error(
                "Event %s reached none of %d relays", event_id, len(endpoints)
            )
        return PublishResult(event_id, len(endpoints), succeeded)


# -------------------------------------------------------------------------
# Wiring
# -------------------------------------------------------------------------
def configure(
    config: NostrConfig | None = None,
    *,
    verify: Callable[[dict], bool] = verify_event,
    send: Callable[[str, dict, float], None] = send_to_relay,
) -> NostrConfig:
    """Install the auth gate and relay publisher built from *config*."""
    config = config or NostrConfig.from_env()
    app.config["NOSTR"] = config
    app.extensions["plebone"] = {
        "verify": verify,
        "gate": AuthGate(config, verify=verify),
        "publisher": RelayPublisher(config, verify=verify, send=send),
    }
    return config


def nostr_config() -> NostrConfig:
    return app.config["NOSTR"]


def auth_gate() -> AuthGate:
    return app.extensions["plebone"]["gate"]


def relay_publisher() -> RelayPublisher:
    return app.extensions["plebone"]["publisher"]


def event_verifier() -> Callable[[dict], bool]:
    return app.extensions["plebone"]["verify"]


def announce(event: dict) -> str | None:
    """
    Publish *event*; return its id once the fan-out was attempted, even if
    every relay refused it. Relay trouble is logged here and goes no further.
    """
    try:
        result = relay_publisher().publish(event, relay_endpoints())
    except PublishError as exc:
        app.logger.error("Not publishing %s: %s", event.get("id"), exc)
        return None
    return result.event_id if result.attempted else None


def verified_submission_event(raw) -> dict:
    """A signed event attached to a public submission, checked end to end."""
    event = parse_signed_event(raw)
    if not event_verifier()(event):
        raise ValidationError("Invalid Nostr event signature")
    return event


configure()


###############################################################################
# Task workflow
###############################################################################
UNSET = object()


def _new_id() -> str:
    return str(uuid.uuid4())


def _clean_text(value, field: str, *, max_len: int = TEXT_MAX, required=True) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if required and not value:
        raise ValidationError(f"{field} is required")
    if len(value) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return value


def get_project(project_id: str, *, db):
    row = db.execute("SELECT * FROM project WHERE id=?", (project_id,)).fetchone()
    if not row:
        raise NotFoundError("Project not found")
    return row


def get_task(task_id: str, *, db):
    row = db.execute("SELECT * FROM task WHERE id=?", (task_id,)).fetchone()
    if not row:
        raise NotFoundError("Task not found")
    return row


def create_project(
    name: str,
    *,
    description: str = "",
    url: str | None = None,
    repository: str | None = None,
    db,
) -> str:
    project_id = _new_id()
    db.execute(
        """INSERT INTO project (id, name, description, url, repository, created_at)
                VALUES (?,?,?,?,?,?)""",
        (project_id, name, description, url, repository, _stamp()),
    )
    db.commit()
    return project_id


def create_task(project_id: str, submission: dict, author_pubkey: str | None = None, *, db):
    """
    Store a new task in *project_id*. Only ``type``, ``title`` and
    ``description`` are read from *submission*; the author comes from a
    verified signed event or stays empty.
    """
    get_project(project_id, db=db)

    kind = submission.get("type")
    if kind not in TASK_TYPES:
        raise ValidationError(f"type must be one of {', '.join(TASK_TYPES)}")
    title = _clean_text(submission.get("title"), "title", max_len=TITLE_MAX)
    description = _clean_text(submission.get("description"), "description", required=False)

    task_id = _new_id()
    now = _stamp()
    db.execute(
        """INSERT INTO task
                  (id, project_id, type, title, description, status,
                   priority, ignored, author_pubkey, created_at, updated_at)
           VALUES (?,?,?,?,?,'open',0,0,?,?,?)""",
        (task_id, project_id, kind, title, description, author_pubkey, now, now),
    )
    db.commit()
    return get_task(task_id, db=db)


def _update_task(task_id: str, assignments: str, params: tuple, *, db):
    cur = db.execute(
        f"UPDATE task SET {assignments}, updated_at=? WHERE id=?",
        (*params, _stamp(), task_id),
    )
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError("Task not found")
    return get_task(task_id, db=db)


def update_task_status(task_id: str, status, admin_notes=UNSET, *, db):
    """
    Any status may follow any other. Omitted notes stay as they were;
    ``""`` or ``None`` clears them.
    """
    if status not in TASK_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(TASK_STATUSES)}")
    if admin_notes is UNSET:
        return _update_task(task_id, "status=?", (status,), db=db)
    if admin_notes is not None:
        admin_notes = _clean_text(admin_notes, "adminNotes", required=False)
    return _update_task(
        task_id, "status=?, admin_notes=?", (status, admin_notes or None), db=db
    )


# SET expressions see the pre-update row, so each toggle is one atomic statement.
def toggle_priority(task_id: str, *, db):
    return _update_task(
        task_id,
        "priority = 1 - priority, "
        "ignored = CASE WHEN priority = 0 THEN 0 ELSE ignored END",
        (),
        db=db,
    )


def toggle_ignored(task_id: str, *, db):
    return _update_task(
        task_id,
        "ignored = 1 - ignored, "
        "priority = CASE WHEN ignored = 0 THEN 0 ELSE priority END",
        (),
        db=db,
    )


def mark_completed(task_id: str, *, db):
    return _update_task(task_id, "status='completed', priority=0", (), db=db)


def set_task_event_id(task_id: str, event_id: str, *, db):
    return _update_task(task_id, "nostr_event_id=?", (event_id,), db=db)


def remove_task(task_id: str, *, db) -> None:
    cur = db.execute("DELETE FROM task WHERE id=?", (task_id,))
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError("Task not found")


def list_tasks(project_id: str, *, db):
    get_project(project_id, db=db)
    return db.execute(
        "SELECT * FROM task WHERE project_id=? ORDER BY updated_at DESC",
        (project_id,),
    ).fetchall()


def list_all_tasks(*, db, project_id: str | None = None, status: str | None = None):
    sql = """SELECT t.*, p.name AS project_name
               FROM task t
               JOIN project p ON p.id = t.project_id"""
    where, params = [], []
    if project_id:
        where.append("t.project_id=?")
        params.append(project_id)
    if status:
        where.append("t.status=?")
        params.append(status)
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY t.updated_at DESC"
    return db.execute(sql, params).fetchall()


def task_stats(project_id: str, *, db) -> dict[str, int]:
    get_project(project_id, db=db)
    counts = dict.fromkeys(TASK_STATUSES, 0)
    for row in db.execute(
        "SELECT status, COUNT(*) AS n FROM task WHERE project_id=? GROUP BY status",
        (project_id,),
    ):
        counts[row["status"]] = row["n"]
    return {
        "open": counts["open"],
        "inProgress": counts["in_progress"],
        "completed": counts["completed"],
        "closed": counts["closed"],
    }


def create_comment(
    task_id: str,
    content,
    author_pubkey: str | None = None,
    *,
    is_admin: bool = False,
    db,
):
    """Add a comment and bump the parent task's activity timestamp."""
    get_task(task_id, db=db)
    content = _clean_text(content, "content")

    comment_id = _new_id()
    now = _stamp()
    db.execute(
        """INSERT INTO task_comment
                  (id, task_id, content, author_pubkey, is_admin, created_at)
           VALUES (?,?,?,?,?,?)""",
        (comment_id, task_id, content, author_pubkey, int(is_admin), now),
    )
    db.execute("UPDATE task SET updated_at=? WHERE id=?", (now, task_id))
    db.commit()
    return db.execute("SELECT * FROM task_comment WHERE id=?", (comment_id,)).fetchone()


def set_comment_event_id(comment_id: str, event_id: str, *, db):
    db.execute(
        "UPDATE task_comment SET nostr_event_id=? WHERE id=?", (event_id, comment_id)
    )
    db.commit()
    return db.execute("SELECT * FROM task_comment WHERE id=?", (comment_id,)).fetchone()


def list_comments(task_id: str, *, db):
    get_task(task_id, db=db)
    return db.execute(
        "SELECT * FROM task_comment WHERE task_id=? ORDER BY created_at ASC",
        (task_id,),
    ).fetchall()


def reply_to_task(task, signed_event, *, publisher: RelayPublisher, endpoints) -> PublishResult:
    """
    Relay an admin's pre-signed reply to the task's original event.
    The reply is never built here, only checked and forwarded.
    """
    if not task["nostr_event_id"]:
        raise NoReplyTarget("Task has no associated Nostr event")
    event = parse_signed_event(signed_event)
    if not publisher.verify(event):
        raise ValidationError("Invalid Nostr event signature")
    try:
        return publisher.publish(event, endpoints)
    except PublishError as exc:
        app.logger.error("Reply to task %s not published: %s", task["id"], exc)
        return PublishResult(None, 0, 0)


# -------------------------------------------------------------------------
# JSON shapes
# -------------------------------------------------------------------------
def project_json(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "url": row["url"],
        "repository": row["repository"],
        "active": bool(row["active"]),
        "createdAt": row["created_at"],
    }


def task_json(row) -> dict:
    data = {
        "id": row["id"],
        "projectId": row["project_id"],
        "type": row["type"],
        "title": row["title"],
        "description": row["description"],
        "status": row["status"],
        "priority": bool(row["priority"]),
        "ignored": bool(row["ignored"]),
        "authorPubkey": row["author_pubkey"],
        "nostrEventId": row["nostr_event_id"],
        "adminNotes": row["admin_notes"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if "project_name" in row.keys():
        data["projectName"] = row["project_name"]
    return data


def comment_json(row) -> dict:
    return {
        "id": row["id"],
        "taskId": row["task_id"],
        "content": row["content"],
        "authorPubkey": row["author_pubkey"],
        "nostrEventId": row["nostr_event_id"],
        "isAdmin": bool(row["is_admin"]),
        "createdAt": row["created_at"],
    }


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it exists)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"   {app.config['DATABASE']}\n")


@app.cli.command("add-project")
@click.option("--name", prompt=True, help="Project name shown to submitters")
@click.option("--description", default="", help="Short description")
@click.option("--url", default=None, help="Homepage")
@click.option("--repository", default=None, help="Source repository")
def cli_add_project(name: str, description: str, url: str | None, repository: str | None):
    """Register a project that accepts task submissions."""
    project_id = create_project(
        name.strip(),
        description=description.strip(),
        url=url,
        repository=repository,
        db=get_db(),
    )
    click.secho("\n📁  Project created.", fg="green")
    click.echo(f"\n{project_id}\n")


@app.cli.command("relays")
def cli_relays():
    """Print the relays events are published to."""
    relays = relay_endpoints()
    if not relays:
        click.secho("No relays configured – publishing is disabled.", fg="yellow")
        return
    for url in relays:
        click.echo(url)


@app.cli.command("check-credential")
@click.argument("source", type=click.File("r"), default="-")
def cli_check_credential(source):
    """Run the admin auth gate against a signed event (file or stdin)."""
    token = source.read().strip()
    try:
        pubkey = auth_gate().authenticate(f"{AuthGate.scheme} {token}")
    except AuthError as exc:
        click.secho(f"❌  Rejected: {exc}", fg="red")
        raise click.exceptions.Exit(1)
    click.secho(f"✅  Admitted: {pubkey}", fg="green")

    event = parse_signed_event(token)
    if event["kind"] != AUTH_KIND or AUTH_CHALLENGE_TAG not in event["tags"]:
        click.secho(
            f"⚠️   Not a kind {AUTH_KIND} admin-login credential; "
            "it is accepted but should not be used as one.",
            fg="yellow",
        )


###############################################################################
# Public API
###############################################################################
@app.route("/")
def index():
    return {"name": "plebone", "version": __version__}


@app.route("/api/projects")
def projects_list():
    rows = get_db().execute(
        "SELECT * FROM project WHERE active=1 ORDER BY created_at DESC"
    ).fetchall()
    return [project_json(r) for r in rows]


@app.route("/api/projects/<project_id>")
def project_detail(project_id):
    return project_json(get_project(project_id, db=get_db()))


@app.route("/api/projects/<project_id>/tasks")
def project_tasks(project_id):
    return [task_json(r) for r in list_tasks(project_id, db=get_db())]


@app.route("/api/projects/<project_id>/tasks/stats")
def project_task_stats(project_id):
    return task_stats(project_id, db=get_db())


@app.route("/api/projects/<project_id>/tasks", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def submit_task(project_id):
    data = _json_body()
    submission = data.get("task")
    if not isinstance(submission, dict):
        raise ValidationError("task must be an object")

    event = None
    if data.get("signedEvent") is not None:
        event = verified_submission_event(data["signedEvent"])

    db = get_db()
    task = create_task(project_id, submission, event["pubkey"] if event else None, db=db)
    if event is not None:
        event_id = announce(event)
        if event_id:
            task = set_task_event_id(task["id"], event_id, db=db)
    return task_json(task), 201


@app.route("/api/tasks/<task_id>/comments")
def task_comments(task_id):
    return [comment_json(r) for r in list_comments(task_id, db=get_db())]


def _add_comment(task_id: str, data: dict, *, is_admin: bool):
    event = None
    if data.get("signedEvent") is not None:
        event = verified_submission_event(data["signedEvent"])

    if is_admin:
        author = g.nostr_pubkey
    else:
        author = event["pubkey"] if event else None

    db = get_db()
    comment = create_comment(task_id, data.get("content"), author, is_admin=is_admin, db=db)
    if event is not None:
        event_id = announce(event)
        if event_id:
            comment = set_comment_event_id(comment["id"], event_id, db=db)
    return comment_json(comment), 201


@app.route("/api/tasks/<task_id>/comments", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def submit_comment(task_id):
    return _add_comment(task_id, _json_body(), is_admin=False)


@app.route("/api/nostr/relays")
def public_relays():
    return {"relays": relay_endpoints()}


###############################################################################
# Admin API
###############################################################################
@app.route("/api/admin/me")
@admin_required
def admin_me():
    return {"pubkey": g.nostr_pubkey}


@app.route("/api/admin/tasks")
@admin_required
def admin_tasks():
    status = request.args.get("status") or None
    if status is not None and status not in TASK_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(TASK_STATUSES)}")
    rows = list_all_tasks(
        db=get_db(), project_id=request.args.get("project") or None, status=status
    )
    return [task_json(r) for r in rows]


def _reply_report(task, signed_event) -> dict:
    try:
        result = reply_to_task(
            task, signed_event, publisher=relay_publisher(), endpoints=relay_endpoints()
        )
    except ValidationError as exc:
        return {"published": False, "message": str(exc)}
    return {
        "published": result.succeeded > 0,
        "eventId": result.event_id if result.attempted else None,
        "relays": result.succeeded,
        "attempted": result.attempted,
    }


@app.route("/api/admin/tasks/<task_id>/status", methods=["PUT"])
@admin_required
def admin_update_status(task_id):
    data = _json_body()
    task = update_task_status(
        task_id, data.get("status"), data.get("adminNotes", UNSET), db=get_db()
    )
    payload = task_json(task)
    if data.get("shouldReplyNostr"):
        payload["nostrReply"] = _reply_report(task, data.get("signedEvent"))
    return payload


@app.route("/api/admin/tasks/<task_id>/priority", methods=["POST"])
@admin_required
def admin_toggle_priority(task_id):
    return task_json(toggle_priority(task_id, db=get_db()))


@app.route("/api/admin/tasks/<task_id>/ignored", methods=["POST"])
@admin_required
def admin_toggle_ignored(task_id):
    return task_json(toggle_ignored(task_id, db=get_db()))


@app.route("/api/admin/tasks/<task_id>/complete", methods=["POST"])
@admin_required
def admin_mark_completed(task_id):
    return task_json(mark_completed(task_id, db=get_db()))


@app.route("/api/admin/tasks/<task_id>", methods=["DELETE"])
@admin_required
def admin_delete_task(task_id):
    remove_task(task_id, db=get_db())
    return {"message": "Task deleted successfully"}


@app.route("/api/admin/tasks/<task_id>/comments", methods=["POST"])
@admin_required
def admin_comment(task_id):
    return _add_comment(task_id, _json_body(), is_admin=True)


@app.route("/api/admin/tasks/<task_id>/reply-nostr", methods=["POST"])
@admin_required
def admin_reply_nostr(task_id):
    data = _json_body()
    task = get_task(task_id, db=get_db())
    result = reply_to_task(
        task,
        data.get("signedEvent"),
        publisher=relay_publisher(),
        endpoints=relay_endpoints(),
    )
    return {
        "eventId": result.event_id if result.attempted else None,
        "relays": result.succeeded,
        "attempted": result.attempted,
    }


@app.route("/api/admin/settings/nostr-relays", methods=["GET", "POST"])
@admin_required
def admin_relays():
    if request.method == "POST":
        relays = save_relay_endpoints(_json_body().get("relays"))
        app.logger.info("Relay list updated by %s: %d relays", _short(g.nostr_pubkey), len(relays))
        return {"relays": relays}
    return {"relays": relay_endpoints()}


###############################################################################
# Response hardening + error pages
###############################################################################
@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    if request.path.startswith("/api/admin"):
        resp.headers["Cache-Control"] = "no-store"
    return resp


@app.errorhandler(AuthError)
def unauthorized(exc):
    # the precise reason was logged by admin_required
    return (
        {"message": "Unauthorized"},
        401,
        {"WWW-Authenticate": AuthGate.scheme},
    )


@app.errorhandler(NotFoundError)
def missing_record(exc):
    return {"message": str(exc)}, 404


@app.errorhandler(ValidationError)
def bad_request(exc):
    return {"message": str(exc)}, 400


@app.errorhandler(404)
def not_found(exc):
    return {"message": "Not found"}, 404


@app.errorhandler(405)
def method_not_allowed(exc):
    return {"message": "Method not allowed"}, 405


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 body for production. With debug on, Flask bypasses this
    handler and Werkzeug shows the traceback instead.
    """
    return {"message": "Internal server error"}, 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
