from __future__ import annotations

import argparse
import secrets
from pathlib import Path
from typing import List


REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_ENV = REPO_ROOT / ".env"


def _load_env_lines(env_path: Path) -> List[str]:
    if env_path.exists():
        return env_path.read_text(encoding="utf-8").splitlines()
    return []


def _upsert_env(lines: List[str], key: str, value: str) -> List[str]:
    for idx, line in enumerate(lines):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in line:
            continue
        if line.split("=", 1)[0].strip() == key:
            lines[idx] = f"{key}={value}"
            return lines
    if lines and lines[-1].strip():
        lines.append("")
    lines.append(f"{key}={value}")
    return lines


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or rotate JWT_SECRET in .env")
    parser.add_argument("--secret", default=None, help="Explicit secret. Generated when omitted.")
    parser.add_argument("--bytes", type=int, default=32, help="Entropy for the generated secret (default: 32).")
    parser.add_argument("--env-path", type=Path, default=DEFAULT_ENV, help="Path to the .env file.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    secret = args.secret or secrets.token_urlsafe(args.bytes)
    env_path: Path = args.env_path
    env_path.parent.mkdir(parents=True, exist_ok=True)
    lines = _upsert_env(_load_env_lines(env_path), "JWT_SECRET", secret)
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    print(f"[INFO] JWT_SECRET written to {env_path}")
    print("[INFO] Existing access tokens are invalid from now on; issue new ones with `support-desk issue-token`.")


if __name__ == "__main__":
    main()
