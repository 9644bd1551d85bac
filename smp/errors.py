class SMPError(Exception):
    """Base class for pipeline errors."""


class ConfigError(SMPError):
    """Invalid or unreadable configuration."""


class MissingInputError(SMPError):
    """A required input (database, index, read pair) is absent."""


class ParseError(SMPError):
    def __init__(self, path, reason):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot parse {self.path}: {reason}")


class ToolError(SMPError):
    """An external tool exited non-zero (or could not be started)."""

    def __init__(self, result):
        self.result = result
        super().__init__(
            f"{result.program} failed (exit {result.returncode}); see {result.log_file}"
        )

    @property
    def returncode(self):
        return self.result.returncode
