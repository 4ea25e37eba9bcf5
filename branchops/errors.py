class ReportingError(Exception):
    kind = "reporting_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidParameterError(ReportingError):
    kind = "invalid_parameter"
    status_code = 400


class Unauthorized(ReportingError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(ReportingError):
    kind = "forbidden"
    status_code = 403


class NotFound(ReportingError):
    kind = "not_found"
    status_code = 404


class InvalidStateTransition(ReportingError):
    kind = "invalid_state_transition"
    status_code = 400

    def __init__(self, action: str, status: str) -> None:
        super().__init__(f"cannot {action} settlement with status {status}")
        self.action = action
        self.status = status


class DataUnavailable(ReportingError):
    kind = "data_unavailable"
    status_code = 500


class QueryTimeout(DataUnavailable):
    kind = "timeout"
