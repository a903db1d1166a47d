import argparse
import os

import pytest

from support_desk import cli
from support_desk.schemas.models import UserRole
from support_desk.utils.settings import get_settings, reset_settings

MANAGED_ENVS = [
    "DATA_DIR",
    "DATABASE_PATH",
    "ADMIN_EMAILS",
    "API_RATE_LIMIT",
    "CUSTOMER_CAN_REOPEN_RESOLVED",
    "SUMMARIZER_MODEL",
    "JWT_SECRET",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in MANAGED_ENVS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.sqlite"))
    reset_settings()
    yield
    for name in MANAGED_ENVS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()


def test_cmd_serve_invokes_uvicorn(monkeypatch):
    called = {}

    def fake_run(app, host, port, reload):  # pragma: no cover
        called.update({"app": app, "host": host, "port": port, "reload": reload})

    monkeypatch.setattr("support_desk.cli.uvicorn.run", fake_run)

    args = argparse.Namespace(app="support_desk.agents.http_api:app", host="127.0.0.1", port=9000, reload=True)
    cli.cmd_serve(args, {})

    assert called == {
        "app": "support_desk.agents.http_api:app",
        "host": "127.0.0.1",
        "port": 9000,
        "reload": True,
    }


def test_apply_config_maps_sections_to_env(monkeypatch):
    config = {
        "auth": {"rate_limit": 5, "admin_emails": ["Root@Example.com"], "jwt_secret": "ignored"},
        "conversations": {"customer_can_reopen_resolved": False},
        "summarizer": {"model": "small-model"},
    }

    cli._apply_config(config)

    assert os.environ["API_RATE_LIMIT"] == "5"
    assert os.environ["SUMMARIZER_MODEL"] == "small-model"
    assert "JWT_SECRET" not in os.environ
    settings = get_settings()
    assert settings.api_rate_limit == 5
    assert settings.customer_can_reopen_resolved is False
    assert settings.admin_emails == ["root@example.com"]


def test_create_user_promotes_admin_emails(monkeypatch, capsys):
    monkeypatch.setenv("ADMIN_EMAILS", "root@example.com")
    reset_settings()

    cli.cmd_create_user(argparse.Namespace(email="Root@example.com", full_name="Root", role="customer"), {})
    cli.cmd_create_user(argparse.Namespace(email="alice@example.com", full_name=None, role="customer"), {})

    users, _, _ = cli._open_stores()
    assert users.get_user_by_email("root@example.com").role == UserRole.admin
    assert users.get_user_by_email("alice@example.com").role == UserRole.customer
    assert "root@example.com | admin" in capsys.readouterr().out


def test_issue_token_round_trips(capsys):
    cli.cmd_create_user(argparse.Namespace(email="bob@example.com", full_name="Bob", role="agent"), {})
    capsys.readouterr()

    cli.cmd_issue_token(argparse.Namespace(email="bob@example.com", expire_minutes=None), {})
    token = capsys.readouterr().out.strip()

    _, _, verifier = cli._open_stores()
    identity = verifier.verify(token)
    assert identity.role == UserRole.agent
    assert identity.name == "Bob"


def test_issue_token_unknown_user_exits():
    with pytest.raises(SystemExit):
        cli.cmd_issue_token(argparse.Namespace(email="ghost@example.com", expire_minutes=None), {})


def test_list_conversations_empty(capsys):
    args = argparse.Namespace(status=None, customer_id=None, agent_id=None, skip=0, limit=20)
    cli.cmd_list_conversations(args, {})
    assert "No conversations." in capsys.readouterr().out


def test_parser_knows_every_command():
    parser = cli.build_parser()
    for argv in (
        ["serve"],
        ["create-user", "a@example.com"],
        ["issue-token", "a@example.com"],
        ["list-conversations", "--status", "open"],
        ["summarize", "conv-1"],
    ):
        args = parser.parse_args(argv)
        assert callable(args.func)
