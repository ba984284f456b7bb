from drupalup.core.process import ProcessResult, tail


class DrupalUpError(Exception):
    """Base exception for all site update and rollback failures."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result

    def error_lines(self) -> list[str]:
        """Lines to record in a site's error list."""
        return [self.message]


class ConfigurationError(DrupalUpError):
    def __init__(self, message: str = "Invalid configuration.", details: dict | None = None):
        super().__init__(code="invalid_configuration", message=message, details=details)


class SiteValidationError(DrupalUpError):
    def __init__(self, message: str = "Invalid site definition.", details: dict | None = None):
        super().__init__(code="invalid_site", message=message, details=details)


class StateInconsistencyError(DrupalUpError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(code="state_inconsistency", message=message, details=details)


class ToolInvocationError(DrupalUpError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        code: str,
        message: str,
        result: ProcessResult | None = None,
        details: dict | None = None,
        tail_lines: int = 10,
    ):
        self.result = result
        self.tail_lines = tail_lines
        details = dict(details or {})
        if result is not None:
            details.setdefault("command", " ".join(result.args))
            details.setdefault("returncode", result.returncode)
            details.setdefault("timed_out", result.timed_out)
        super().__init__(code=code, message=message, details=details)

    def output_tail(self) -> list[str]:
        if self.result is None:
            return []
        return tail(self.result.stderr or self.result.stdout, self.tail_lines)

    def error_lines(self) -> list[str]:
        return [self.message, *self.output_tail()]


class RepositoryError(ToolInvocationError):
    """Version control failures. ``lines`` carries per-file detail when present."""

    def __init__(
        self,
        code: str,
        message: str,
        result: ProcessResult | None = None,
        lines: list[str] | None = None,
    ):
        self.lines = lines or []
        super().__init__(code=code, message=message, result=result)

    def error_lines(self) -> list[str]:
        if self.lines:
            return [self.message, *self.lines]
        return super().error_lines()


class DatabaseError(ToolInvocationError):
    pass


class DependencyUpdateError(ToolInvocationError):
    pass


class RollbackError(ToolInvocationError):
    """A rollback step failed. ``code`` names the step."""
