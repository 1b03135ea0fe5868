from typing import Any, Dict, Union


class MedGraphMatchError(Exception):
    """Base class for errors raised by medgraph_match."""


class GraphOperationError(MedGraphMatchError):
    """Exception for graph queries that could not be completed."""

    def __init__(self, exception: Union[str, Dict]) -> None:
        if isinstance(exception, dict):
            self.message = exception["message"] if "message" in exception else "unknown"
            self.details = exception["details"] if "details" in exception else "unknown"
        else:
            self.message = exception
            self.details = "unknown"
        super().__init__(self.message)

    def get_message(self) -> str:
        return self.message

    def get_details(self) -> Any:
        return self.details


class NotFoundError(MedGraphMatchError):
    """A case, doctor or facility requested by the caller does not exist."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class PartialFailure(MedGraphMatchError):
    """A single row or candidate failed; the surrounding batch carries on."""

    def __init__(self, key: str, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"{key}: {cause}")


class AgtypeDecodeError(ValueError):
    """Raised when agtype text cannot be decoded into a vertex or edge."""
