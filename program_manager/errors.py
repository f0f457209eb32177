"""
Error types raised by the program manager core.

Every error carries the HTTP status the API layer answers with, so the
FastAPI app needs a single exception handler for the whole hierarchy.
"""


class ProgramManagerError(Exception):
    """Base class for all program manager errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NotFound(ProgramManagerError):
    status_code = 404

    def __init__(self, program_id: str):
        super().__init__(f"program not found: {program_id}")
        self.program_id = program_id


class DuplicateName(ProgramManagerError):
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"program with name '{name}' already exists")
        self.name = name


class DuplicateId(ProgramManagerError):
    status_code = 409

    def __init__(self, program_id: str):
        super().__init__(f"program with id '{program_id}' already exists")
        self.program_id = program_id


class ValidationFailed(ProgramManagerError):
    """A program record failed a field check (name length, port range)."""

    status_code = 400


class InvalidCommand(ValidationFailed):
    """The command validator refused a command string."""


class InvalidWorkingDir(ValidationFailed):
    """The command validator refused a working directory."""


class BadWorkingDir(InvalidWorkingDir):
    """The working directory vanished between validation and launch."""


class AlreadyRunning(ProgramManagerError):
    status_code = 409

    def __init__(self, program_id: str, pid: int):
        super().__init__(f"program {program_id} is already running (pid {pid})")
        self.program_id = program_id
        self.pid = pid


class NotRunning(ProgramManagerError):
    status_code = 409

    def __init__(self, program_id: str):
        super().__init__(f"program {program_id} is not running")
        self.program_id = program_id


class StartFailed(ProgramManagerError):
    """The child could not be spawned or died within the grace period."""

    def __init__(self, message: str, exit_code: int = None, reason: str = ""):
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.exit_code = exit_code
        self.reason = reason


class EmptyCommand(StartFailed):
    status_code = 400

    def __init__(self):
        super().__init__("empty command")


class StopTimeout(ProgramManagerError):
    def __init__(self, pid: int):
        super().__init__(f"process {pid} did not terminate after kill signal")
        self.pid = pid


class CorruptCatalog(ProgramManagerError):
    pass


class StorageIO(ProgramManagerError):
    pass


class ProbeFailed(ProgramManagerError):
    """OS introspection failed; reconciliation treats the pid as gone."""
