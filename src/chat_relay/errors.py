class RelayError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(RelayError):
    status_code = 401


class NotFound(RelayError):
    status_code = 404


class AccessDenied(RelayError):
    status_code = 403


class ValidationError(RelayError):
    status_code = 400


class ToolNotFound(RelayError):
    status_code = 400

    def __init__(self, tool_name: str, available: list[str]) -> None:
        super().__init__(
            f'Frontend tool "{tool_name}" not found. Available tools: {", ".join(available)}'
        )
        self.tool_name = tool_name
        self.available = available


class NoActiveFlow(RelayError):
    status_code = 409
    code = "NO_ACTIVE_FLOW"


class ToolExecutionFailed(RelayError):
    pass


class StructuredParseFailure(RelayError):
    pass


class PersistenceFailure(RelayError):
    pass


class DuplicateToolResult(ValidationError):
    status_code = 409
