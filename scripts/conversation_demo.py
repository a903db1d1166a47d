"""Walk a conversation through its lifecycle against a running server.

Create the accounts first, for example::

    support-desk create-user alice@example.com --full-name Alice
    support-desk create-user bob@example.com --full-name Bob --role agent
    support-desk create-user root@example.com --role admin

and pass the tokens printed by ``support-desk issue-token``.
"""
from __future__ import annotations

import argparse
import json

import requests

API_URL = "http://localhost:8000"


def _call(method: str, path: str, token: str, payload: dict | None = None) -> dict:
    response = requests.request(
        method,
        f"{API_URL}{path}",
        json=payload,
        headers={"Authorization": f"Bearer {token}"},
        timeout=30,
    )
    response.raise_for_status()
    return response.json()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--customer-token", required=True)
    parser.add_argument("--agent-token", required=True)
    parser.add_argument("--admin-token", required=True)
    args = parser.parse_args()

    agent = _call("GET", "/v1/auth/me", args.agent_token)
    conv = _call(
        "POST",
        "/v1/conversations",
        args.customer_token,
        {"subject": "Billing", "initial_message_text": "Need help"},
    )
    print(f"created {conv['id']} status={conv['status']}")

    conv = _call("POST", f"/v1/admin/conversations/{conv['id']}/assign", args.admin_token, {"agent_id": agent["id"]})
    print(f"assigned to {agent['email']} status={conv['status']}")

    for status in ("resolved", "closed"):
        conv = _call("PATCH", f"/v1/conversations/{conv['id']}/status", args.agent_token, {"new_status": status})
        print(f"status={conv['status']}")

    print(json.dumps(conv, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
