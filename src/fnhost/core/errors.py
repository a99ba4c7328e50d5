"""fnhost · Error taxonomy.

Every failure the host reports is a FnHostError. ``error_code`` is the
stable machine-readable key printed by the CLI, ``details`` carries the
context (diagnostics, package manager output, offending values).

Where each error surfaces:

- ValidationError: rejected before anything is stored or armed
  (extension, function name, env entries, cron expression).
- CompilationError: an upload is rolled back. During execution it becomes
  an exit-1 result and the source stays in place.
- DependencyInstallError: recorded in the upload report, never fatal.
- ExecutionError: raised inside the engine only and turned into an
  ExecutionResult before ``execute()`` returns.
- PersistenceError: unreadable or unwritable store and schedule files.
"""

from __future__ import annotations


class FnHostError(Exception):
    """Failure reported by the host, as opposed to an error inside user code."""

    def __init__(
        self,
        message: str,
        error_code: str = "FNHOST_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Serializable form for CLI output and upload reports."""
        data: dict = {"error": str(self), "code": self.error_code}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(FnHostError):
    """Bad input shape, disallowed extension or malformed cron expression."""

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class CompilationError(FnHostError):
    """The TypeScript toolchain rejected a source file."""

    def __init__(
        self,
        message: str,
        error_code: str = "COMPILATION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)

    @property
    def diagnostics(self) -> str:
        return str(self.details.get("diagnostics", ""))


class DependencyInstallError(FnHostError):
    """Package manager failed and no dependency directory was produced."""

    def __init__(
        self,
        message: str,
        error_code: str = "DEPENDENCY_INSTALL_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class ExecutionError(FnHostError):
    """Host-side invocation failure (missing artifact, spawn failure, bad entry point).

    Never escapes ExecutionEngine.execute(); it is converted into an
    ExecutionResult there.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "EXECUTION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class PersistenceError(FnHostError):
    """Disk read/write failure for artifacts, env files or the schedule list."""

    def __init__(
        self,
        message: str,
        error_code: str = "PERSISTENCE_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
