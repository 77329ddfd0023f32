#!/usr/bin/env python3
"""CLI entry point for the confmaster master.

Usage: confmaster [options]    (see --help)

Exit codes:
    0   success, clean shutdown, cancelled startup
    1   invalid option, removed flag, setup failure, --configprint miss
    30  catalog compile failure
    39  could not drop root privileges
"""

import logging
import sys

from common import EXIT_FAILURE, EXIT_OK, CompileFailure, MasterError
from master import MasterApplication
from options import InvalidOption

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    """Run the master.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    app = MasterApplication()
    try:
        result = app.run(argv)
    except InvalidOption as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'confmaster --help' for usage.", file=sys.stderr)
        return EXIT_FAILURE
    except CompileFailure as e:
        print(e.message, file=sys.stderr)
        return e.exit_code
    except MasterError as e:
        logger.error("%s", e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        return e.exit_code

    if isinstance(result, int):
        return result
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
