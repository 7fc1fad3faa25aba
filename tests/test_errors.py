"""
tests/test_errors.py
"""
from __future__ import annotations

from plebone.tracker import app


def test_404_json(client):
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert resp.get_json() == {"message": "Not found"}


def test_missing_record_names_itself(client):
    resp = client.get("/api/projects/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"message": "Project not found"}

    resp = client.get("/api/tasks/nope/comments")
    assert resp.get_json() == {"message": "Task not found"}


def test_405_json(client):
    resp = client.delete("/api/projects")
    assert resp.status_code == 405
    assert resp.get_json() == {"message": "Method not allowed"}


def test_auth_checked_before_method_body(client):
    """A bad body never leaks past the auth gate."""
    resp = client.put("/api/admin/tasks/x/status", data="not json")
    assert resp.status_code == 401


def test_500_handler_hides_the_traceback(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler answers.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert resp.get_json() == {"message": "Internal server error"}
    assert b"kaboom" not in resp.data
