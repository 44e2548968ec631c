"""Error taxonomy with stable, machine-readable error codes."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Sequence


class ErrorCode(str, Enum):
    CONFIGURATION = "E_CONFIGURATION"
    UNREACHABLE_REPOSITORY = "E_UNREACHABLE_REPOSITORY"
    REPOSITORY = "E_REPOSITORY"
    EXTERNAL_TOOL = "E_EXTERNAL_TOOL"
    CLEANUP = "E_CLEANUP"
    CAPACITY = "E_CAPACITY"


class ImagesmithError(Exception):
    """Base error class that carries code, optional hint, and context."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        for k, v in self.context.items():
            if v:
                parts.append(f"  {k}: {v}")
        return "\n".join(parts)


class ConfigurationError(ImagesmithError):
    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIGURATION, hint=hint, context=context)


class UnreachableRepository(ImagesmithError):
    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.UNREACHABLE_REPOSITORY, hint=hint, context=context
        )


class RepositoryError(ImagesmithError):
    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.REPOSITORY, hint=hint, context=context)


class ExternalToolFailure(ImagesmithError):
    """A command exited non-zero or timed out.

    ``output`` holds the combined stdout/stderr the command produced, so
    callers can look for tool-specific messages.
    """

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        returncode: Optional[int] = None,
        output: str = "",
        hint: Optional[str] = None,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        super().__init__(
            message,
            code=ErrorCode.EXTERNAL_TOOL,
            hint=hint,
            context={
                "command": " ".join(self.argv),
                "returncode": "" if returncode is None else str(returncode),
                "output": output[-2000:],
            },
        )


class ResourceCleanupFailure(ImagesmithError):
    def __init__(
        self,
        message: str,
        *,
        resource: str,
        hint: Optional[str] = None,
    ) -> None:
        self.resource = resource
        super().__init__(message, code=ErrorCode.CLEANUP, hint=hint, context={"resource": resource})


class CapacityError(ImagesmithError):
    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CAPACITY, hint=hint, context=context)


__all__ = [
    "CapacityError",
    "ConfigurationError",
    "ErrorCode",
    "ExternalToolFailure",
    "ImagesmithError",
    "RepositoryError",
    "ResourceCleanupFailure",
    "UnreachableRepository",
]
