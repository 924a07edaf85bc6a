from llama_lifecycle.shared.errors import (
    ClientError,
    FormatError,
    HealthTimeout,
    InfeasiblePlacement,
    SchemaError,
    SpawnError,
    TerminationTimeout,
)


class ErrorUtils:
    @staticmethod
    def format_error_response(message: str, error_type: str) -> dict:
        """
        Formats a consistent error response dictionary.

        Args:
            message: The error message to include in the response.
            error_type: The type of error (e.g., "spawn_error", "health_timeout").

        Returns:
            A dictionary with the error details.
        """
        return {
            "error": {
                "message": message,
                "type": error_type
            }
        }

    @staticmethod
    def classify(error: Exception) -> tuple[int, str]:
        """Map a lifecycle exception to an HTTP status code and error type."""
        if isinstance(error, (FormatError, SchemaError)):
            return 400, "invalid_model"
        if isinstance(error, KeyError):
            return 404, "unknown_server"
        if isinstance(error, InfeasiblePlacement):
            return 409, "infeasible_placement"
        if isinstance(error, SpawnError):
            return 502, "spawn_error"
        if isinstance(error, ClientError):
            return 502, "transport_error"
        if isinstance(error, HealthTimeout):
            return 504, "health_timeout"
        if isinstance(error, TerminationTimeout):
            return 500, "termination_timeout"
        return 500, "internal_error"
