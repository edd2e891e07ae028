from __future__ import annotations


class OrchestratorError(Exception):
    def __init__(self, code: str, message: str, *, exit_status: int = 1):
        super().__init__(message)
        self.code = code
        self.message = message
        self.exit_status = exit_status

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigError(OrchestratorError):
    def __init__(self, message: str = "The workflow definition is invalid"):
        super().__init__(code="CONFIG_ERROR", message=message, exit_status=2)


class ProvisioningError(OrchestratorError):
    def __init__(self, message: str = "Overlay disk could not be provisioned"):
        super().__init__(code="PROVISIONING_ERROR", message=message)


class BootTimeoutError(OrchestratorError):
    def __init__(self, message: str = "VM did not become ready in time"):
        super().__init__(code="BOOT_TIMEOUT", message=message)


class CommandExecutionError(OrchestratorError):
    def __init__(self, message: str = "External command execution failed"):
        super().__init__(code="COMMAND_FAILED", message=message)


class ConnectionLost(OrchestratorError):
    def __init__(self, message: str = "Remote shell connection lost"):
        super().__init__(code="CONNECTION_LOST", message=message)


class StepFailure(OrchestratorError):
    """A fatal step outcome; aborts the remaining steps of one system."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        exit_code: int | None = None,
        disconnected: bool = False,
    ):
        super().__init__(code=code, message=message)
        self.exit_code = exit_code
        self.disconnected = disconnected


class DisconnectedUnexpected(StepFailure):
    def __init__(self, message: str = "Connection to the guest dropped unexpectedly", *, disconnected: bool = True):
        super().__init__("DISCONNECTED_UNEXPECTED", message, disconnected=disconnected)


class ScriptFailure(StepFailure):
    def __init__(self, exit_code: int, *, disconnected: bool = False):
        super().__init__(
            "SCRIPT_FAILURE",
            f"Script exited with status {exit_code}",
            exit_code=exit_code,
            disconnected=disconnected,
        )


class ExitCodeUnavailable(StepFailure):
    def __init__(self, message: str = "Exit status was not recorded on the guest"):
        super().__init__("EXIT_CODE_UNAVAILABLE", message, disconnected=True)


class ScriptTimeout(StepFailure):
    def __init__(self, timeout_seconds: float):
        super().__init__("SCRIPT_TIMEOUT", f"Script did not finish within {timeout_seconds:g}s")
