"""
Process replacement for Bluecap.

Escalation and sandbox launch both replace the running process rather than
supervising a child: the new program inherits the terminal and the exit
status, and nothing in this process runs afterwards. Functions here are
typed NoReturn so no caller can accidentally put cleanup code after them.
"""

import logging
import os
import shlex
import sys
from collections.abc import Callable, Sequence
from typing import NoReturn

from bluecap.errors import ProcessLaunchError

logger = logging.getLogger(__name__)

# Signature shared by replace_process and the fakes used in tests
ExecFunction = Callable[[str, Sequence[str]], NoReturn]


def replace_process(program: str, args: Sequence[str]) -> NoReturn:
    """
    Replace the current process with program.

    Args:
        program: Program to run, looked up in PATH
        args: Arguments, not including argv[0]

    Raises:
        ProcessLaunchError: If execvp itself fails (the only way this returns)
    """
    argv = [program, *args]
    logger.debug("Going to execvp: %s", shlex.join(argv))
    # Buffered output would be lost with the old process image
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        os.execvp(program, argv)
    except OSError as e:
        raise ProcessLaunchError(program=program, underlying_error=e.strerror or str(e)) from e
