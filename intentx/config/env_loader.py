"""Environment loading and validation.

Goals:
- Load `.env` at runtime when present (everything has a safe default).
- Fail fast with clear guidance when contract settlement is enabled
  but its chain settings are incomplete.
- Never print secrets.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class EnvStatus:
    env_path: str
    loaded: bool


CONTRACT_SETTLEMENT_VARS = [
    "INTENTX_RPC_URL",
    "INTENTX_EXECUTOR_PRIVATE_KEY",
    "INTENTX_CONTRACT_ADDRESS",
]


def load_env_or_exit(env_path: str = ".env") -> EnvStatus:
    """Load `.env` (if any) and validate settlement configuration.

    This should be called at process start (CLI entrypoint, API startup).
    """
    loaded = False
    if os.path.exists(env_path):
        loaded = load_dotenv(dotenv_path=env_path, override=False)

    mode = os.environ.get("INTENTX_SETTLEMENT_MODE", "none").lower()
    if mode == "contract":
        missing = [k for k in CONTRACT_SETTLEMENT_VARS if not os.environ.get(k)]
        if missing:
            _print_contract_incomplete(missing, env_path=env_path)
            raise SystemExit(2)

    return EnvStatus(env_path=env_path, loaded=loaded)


def _print_contract_incomplete(missing: list[str], *, env_path: str) -> None:
    sys.stderr.write("\nERROR: INTENTX_SETTLEMENT_MODE=contract needs chain settings.\n")
    sys.stderr.write(f"File: {env_path}\n")
    sys.stderr.write("Missing:\n")
    for k in missing:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write(
        "\nFix: set the missing keys, or use INTENTX_SETTLEMENT_MODE=simulated "
        "for local demos.\n\n"
    )
