"""fnhost core module."""

from fnhost.core.errors import (  # noqa: F401
    CompilationError,
    DependencyInstallError,
    ExecutionError,
    FnHostError,
    PersistenceError,
    ValidationError,
)
