"""
Account validator -- asks an external program whether an account is live.

The program is called with the account name as its only argument:

    0     active
    1     inactive
    2-4   the validator itself failed (three distinct failure modes)
    other unexpected; treated as a failure

Whether a failure blocks access is a policy decision, controlled by
``deny_on_failure``.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .errors import ConfigError

logger = logging.getLogger("skarchive.accounts")

FAILURE_CODES = (2, 3, 4)


class AccountStatus(str, Enum):
    """Outcome of one account validation."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"


class AccountCheck(BaseModel):
    """Result of validating one account."""

    account: str
    status: AccountStatus
    exit_code: Optional[int] = None
    allowed: bool
    detail: str = ""


def check_account(
    command: str,
    account: str,
    deny_on_failure: bool = True,
    timeout: Optional[float] = None,
) -> AccountCheck:
    """Run the validator program for ``account``.

    Args:
        command: Validator program, optionally with leading arguments.
        account: Account name, passed as the final argument.
        deny_on_failure: Block access when the validator fails.
        timeout: Seconds before the validator counts as failed.

    Returns:
        AccountCheck with the status and the access decision.

    Raises:
        ConfigError: If ``command`` is empty or cannot be parsed.
    """
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise ConfigError(f"cannot parse account validator command: {exc}") from exc
    if not argv:
        raise ConfigError("no account validator command configured")

    failure_allowed = not deny_on_failure
    try:
        result = subprocess.run(
            argv + [account],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.error("account validator for %s did not run: %s", account, exc)
        return AccountCheck(
            account=account, status=AccountStatus.FAILED,
            allowed=failure_allowed, detail=str(exc),
        )

    code = result.returncode
    if code == 0:
        return AccountCheck(account=account, status=AccountStatus.ACTIVE, exit_code=0, allowed=True)
    if code == 1:
        return AccountCheck(account=account, status=AccountStatus.INACTIVE, exit_code=1, allowed=False)

    if code in FAILURE_CODES:
        detail = f"validator failure mode {code}"
    else:
        detail = f"unexpected validator exit code {code}"
    stderr = result.stderr.strip()
    if stderr:
        detail = f"{detail}: {stderr}"
    logger.warning("account %s: %s (%s)", account, detail, "denied" if deny_on_failure else "allowed")
    return AccountCheck(
        account=account, status=AccountStatus.FAILED, exit_code=code,
        allowed=failure_allowed, detail=detail,
    )
