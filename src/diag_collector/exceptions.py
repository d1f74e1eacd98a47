from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class CollectorError(Exception):
    message: str
    code: str = "collector_error"
    context: dict[str, Any] = field(default_factory=dict)

    def __init__(self, message: str, *, code: str | None = None, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.context = dict(context or {})

    def __str__(self) -> str:
        return self.message

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "error_context": self.context,
        }


class HostResolutionError(CollectorError):
    """A host selector could not be resolved, or resolved to no hosts."""

    code = "host_resolution_error"

    def __init__(self, message: str, *, selector: str, role: str) -> None:
        super().__init__(message, context={"selector": selector, "role": role})


class WorkerPoolError(CollectorError):
    """The worker pool was driven in an order that indicates a caller bug."""

    code = "worker_pool_misuse"


class ArchiveError(CollectorError):
    code = "archive_error"


class PathTraversalError(ArchiveError):
    """An archive entry resolves outside of its extraction root."""

    code = "path_traversal"

    def __init__(self, message: str, *, entry: str, destination: str) -> None:
        super().__init__(message, context={"entry": entry, "destination": destination})


class CredentialsMissingError(CollectorError):
    code = "credentials_missing"


class DependencyMissingError(CollectorError):
    code = "missing_dependency"

    def __init__(self, message: str, *, dependency: str, install: str | None = None) -> None:
        context = {"dependency": dependency}
        if install:
            context["install"] = install
        super().__init__(message, context=context)


class ConfigValidationError(CollectorError):
    code = "config_validation_error"


class YamlParseError(CollectorError):
    code = "yaml_parse_error"


class CancelledError(CollectorError):
    """Raised by blocking remote calls that observe a cancelled token."""

    code = "cancelled"


class RemoteCommandError(CollectorError):
    """A command run through a collector backend exited unsuccessfully."""

    code = "remote_command_failed"

    def __init__(self, message: str, *, host: str, args: list[str], output: str = "", returncode: int | None = None) -> None:
        super().__init__(
            message,
            context={"host": host, "args": list(args), "output": output, "returncode": returncode},
        )
        self.output = output
        self.returncode = returncode


class GCLogResolutionError(CollectorError):
    """The GC log location of a host's server process could not be determined."""

    code = "gc_log_unresolved"


class FindError(CollectorError):
    """File discovery on a host was rejected or failed."""

    code = "find_failed"
