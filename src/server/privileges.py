"""Privilege drop for the master process.

A network-facing master must never keep serving as root: when started as
root it switches to the configured user and group before any listener
is bound, and failing to do so is fatal (exit 39).
"""

import grp
import logging
import os
import pwd

from common import EXIT_CHUSER_FAILURE, SetupFailure

logger = logging.getLogger(__name__)


def is_root() -> bool:
    """Check whether the process runs with root privileges."""
    return os.geteuid() == 0


def change_user(user: str, group: str):
    """Switch the process to user and group.

    Supplementary groups are reset to the user's groups. The group is set
    before the user, while the process can still do so.

    Raises:
        SetupFailure: With exit code 39 if any step fails
    """
    try:
        pw = pwd.getpwnam(user)
        gid = grp.getgrnam(group).gr_gid if group else pw.pw_gid
        groups = [g.gr_gid for g in grp.getgrall() if user in g.gr_mem]
        if gid not in groups:
            groups.append(gid)

        os.setgroups(groups)
        os.setgid(gid)
        os.setuid(pw.pw_uid)
    except (KeyError, OSError) as e:
        raise SetupFailure(
            f"Could not change user to {user}: {e}",
            exit_code=EXIT_CHUSER_FAILURE,
            code="E304",
        ) from e

    if os.geteuid() == 0 and pw.pw_uid != 0:
        raise SetupFailure(
            f"Could not change user to {user}: still running as root",
            exit_code=EXIT_CHUSER_FAILURE,
            code="E304",
        )
    logger.info("Changed user to %s (uid %d, gid %d)", user, pw.pw_uid, gid)
