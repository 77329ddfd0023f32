"""Common errors and exit statuses for the master service."""

from importlib.metadata import PackageNotFoundError, version

# Process exit statuses
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_COMPILE_FAILURE = 30
EXIT_CHUSER_FAILURE = 39


class MasterError(Exception):
    """Base exception for fatal master errors.

    Carries the process exit status the entry point should use.
    """

    exit_code = EXIT_FAILURE

    def __init__(self, code: str, message: str, exit_code: int | None = None):
        self.code = code
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        super().__init__(f"{code}: {message}")


class SetupFailure(MasterError):
    """Setup step failed (authority, terminus, identity, privileges).

    Always fatal: the service must not start serving.
    """

    def __init__(self, message: str, exit_code: int = EXIT_FAILURE, code: str = "E300"):
        super().__init__(code, message, exit_code)


class CompileFailure(MasterError):
    """Catalog could not be compiled in compile-once mode."""

    exit_code = EXIT_COMPILE_FAILURE

    def __init__(self, message: str):
        super().__init__("E400", message)


def get_version() -> str:
    """Return the installed package version ('dev' when run from a checkout)."""
    try:
        return version("confmaster")
    except PackageNotFoundError:
        return "dev"
