"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import json
import time
import uuid
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from plebone.tracker import (  # noqa: WPS433 (importing from a module)
    AUTH_CHALLENGE_TAG,
    AUTH_KIND,
    NostrConfig,
    app,
    configure,
    create_project,
    get_db,
    init_db,
)

ADMIN = "abc123" + "0" * 58
STRANGER = "def456" + "1" * 58
GOOD_SIG = "f" * 128
RELAYS = ("wss://relay.one", "wss://relay.two", "wss://relay.three")


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        # Rate-limit is off for unit tests – test_rate_limit turns it back on
        RATELIMIT_ENABLED=False,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch plebone.tracker.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from plebone import tracker  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(tracker, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── fake signer + relays ────────────────────────
def fake_verify(event) -> bool:
    """Stand-in for the Schnorr check: only GOOD_SIG verifies."""
    return isinstance(event, dict) and event.get("sig") == GOOD_SIG


class FakeRelays:
    """Records every delivery; URLs in ``failing`` raise instead."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    def send(self, endpoint: str, event: dict, timeout: float) -> None:
        if endpoint in self.failing:
            raise ConnectionError(f"{endpoint} is down")
        self.sent.append((endpoint, event["id"]))


@pytest.fixture(autouse=True)
def relays() -> Generator[FakeRelays, None, None]:
    """
    Every test runs against fake crypto + fake relays, with ADMIN on the
    allow-list and no relay override stored.
    """
    saved_cfg = app.config.get("NOSTR")
    saved_ext = app.extensions.get("plebone")

    fake = FakeRelays()
    configure(
        NostrConfig(admin_pubkeys={ADMIN}, relays=RELAYS, relay_timeout=0.5),
        verify=fake_verify,
        send=fake.send,
    )
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM settings WHERE key='nostr_relays'")
        db.commit()

    yield fake

    app.config["NOSTR"] = saved_cfg
    app.extensions["plebone"] = saved_ext


@pytest.fixture
def make_event() -> Callable[..., dict]:
    def _make(
        *,
        pubkey: str = ADMIN,
        created_at: int | None = None,
        kind: int = 1,
        tags: list[list[str]] | None = None,
        content: str = "",
        sig: str = GOOD_SIG,
    ) -> dict:
        return {
            "id": uuid.uuid4().hex * 2,
            "pubkey": pubkey,
            "created_at": int(time.time()) if created_at is None else created_at,
            "kind": kind,
            "tags": tags if tags is not None else [],
            "content": content,
            "sig": sig,
        }

    return _make


@pytest.fixture
def credential(make_event) -> Callable[..., str]:
    """Return a ready-to-send ``Authorization`` header value."""

    def _cred(**kw) -> str:
        kw.setdefault("kind", AUTH_KIND)
        kw.setdefault("tags", [list(AUTH_CHALLENGE_TAG)])
        kw.setdefault("content", "Authenticate to PlebOne admin")
        return "Nostr " + json.dumps(make_event(**kw))

    return _cred


@pytest.fixture
def admin_headers(credential) -> dict[str, str]:
    return {"Authorization": credential()}


@pytest.fixture
def project_id(client) -> str:
    return create_project(
        "PlebOne",
        description="Bitcoin tooling",
        url="https://pleb.one",
        db=get_db(),
    )
