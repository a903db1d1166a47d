from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any, Dict, Tuple

import uvicorn
import yaml

from support_desk.pipelines.summarize import summarize_conversation
from support_desk.schemas.models import ConversationStatus, UserRole
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import SupportDeskError
from support_desk.utils.identity import IdentityVerifier
from support_desk.utils.logging import get_logger
from support_desk.utils.settings import get_settings, load_env_file, reset_settings
from support_desk.utils.storage import Database
from support_desk.utils.user_store import UserStore, normalize_email

load_env_file()
log = get_logger(__name__)

_ENV_MAP = {
    "storage": {
        "data_dir": "DATA_DIR",
        "database_path": "DATABASE_PATH",
    },
    "auth": {
        "algorithm": "JWT_ALGORITHM",
        "token_expire_minutes": "ACCESS_TOKEN_EXPIRE_MINUTES",
        "rate_limit": "API_RATE_LIMIT",
        "rate_window": "API_RATE_WINDOW",
    },
    "conversations": {
        "customer_can_reopen_resolved": "CUSTOMER_CAN_REOPEN_RESOLVED",
    },
    "summarizer": {
        "base": "SUMMARIZER_BASE",
        "model": "SUMMARIZER_MODEL",
        "timeout_seconds": "SUMMARIZER_TIMEOUT_SECONDS",
        "max_attempts": "SUMMARIZER_MAX_ATTEMPTS",
    },
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    for section, mapping in _ENV_MAP.items():
        values = config.get(section) or {}
        for key, env_var in mapping.items():
            value = values.get(key)
            if value is None or value == "":
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            os.environ[env_var] = str(value)

    auth_cfg = config.get("auth") or {}
    if "jwt_secret" in auth_cfg:
        log.warning("config_jwt_secret_ignored", msg="Use .env for JWT_SECRET")
    admin_emails = auth_cfg.get("admin_emails")
    if admin_emails:
        if isinstance(admin_emails, str):
            admin_emails = [admin_emails]
        os.environ["ADMIN_EMAILS"] = ",".join(str(email) for email in admin_emails)
    reset_settings()


def _open_stores() -> Tuple[UserStore, ConversationStore, IdentityVerifier]:
    settings = get_settings()
    database = Database(settings.database_path)
    users = UserStore(database)
    verifier = IdentityVerifier(
        users,
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )
    return users, ConversationStore(database), verifier


def cmd_create_user(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    users, _, _ = _open_stores()
    role = UserRole(args.role)
    if normalize_email(args.email) in get_settings().admin_emails:
        role = UserRole.admin
    try:
        user = users.create_user(args.email, full_name=args.full_name, role=role)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    log.info("user_created", user_id=user.user_id, role=user.role.value)
    print(f"{user.user_id} | {user.email} | {user.role.value}")


def cmd_issue_token(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    users, _, verifier = _open_stores()
    user = users.get_user_by_email(args.email)
    if user is None:
        raise SystemExit(f"User not found: {args.email}")
    print(verifier.issue_token(user, expire_minutes=args.expire_minutes))


def cmd_list_conversations(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    _, conversations, _ = _open_stores()
    status = ConversationStatus(args.status) if args.status else None
    items = conversations.list_by_filter(
        status=status,
        customer_id=args.customer_id,
        agent_id=args.agent_id,
        skip=args.skip,
        limit=args.limit,
    )
    if not items:
        print("No conversations.")
        return
    for conv in items:
        agent = conv.agent_id or "-"
        subject = conv.subject or "(no subject)"
        print(
            f"{conv.id} | {conv.status.value} | customer={conv.customer_id} | agent={agent} | "
            f"last={conv.last_message_at.isoformat()} | {subject}"
        )


def cmd_summarize(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    _, conversations, _ = _open_stores()
    try:
        result = asyncio.run(summarize_conversation(conversations, args.conversation_id))
    except SupportDeskError as exc:
        raise SystemExit(exc.message) from exc
    print(result.conversation.summary or "")


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Customer support chat platform CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP and WebSocket server")
    p_serve.add_argument("--app", default="support_desk.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    p_user = sub.add_parser("create-user", help="Register a user account")
    p_user.add_argument("email")
    p_user.add_argument("--full-name", dest="full_name")
    p_user.add_argument("--role", choices=[role.value for role in UserRole], default=UserRole.customer.value)
    p_user.set_defaults(func=cmd_create_user)

    p_token = sub.add_parser("issue-token", help="Print an access token for an existing user")
    p_token.add_argument("email")
    p_token.add_argument("--expire-minutes", dest="expire_minutes", type=int, default=None)
    p_token.set_defaults(func=cmd_issue_token)

    p_list = sub.add_parser("list-conversations", help="List conversations, newest activity first")
    p_list.add_argument("--status", choices=[status.value for status in ConversationStatus])
    p_list.add_argument("--customer-id", dest="customer_id")
    p_list.add_argument("--agent-id", dest="agent_id")
    p_list.add_argument("--skip", type=int, default=0)
    p_list.add_argument("--limit", type=int, default=20)
    p_list.set_defaults(func=cmd_list_conversations)

    p_sum = sub.add_parser("summarize", help="Summarize a resolved or closed conversation")
    p_sum.add_argument("conversation_id")
    p_sum.set_defaults(func=cmd_summarize)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
