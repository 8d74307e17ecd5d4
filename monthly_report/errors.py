class ReportPipelineError(Exception):
    pass


class SourceUnavailable(ReportPipelineError):
    """The ledger query could not be executed or paged."""


class TransformError(ReportPipelineError):
    pass


class PersistFailure(ReportPipelineError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"could not persist artifact '{name}': {reason}")
        self.name = name
        self.reason = reason


class SendFailure(ReportPipelineError):
    def __init__(self, recipient: str, reason: str) -> None:
        super().__init__(f"could not send report to '{recipient}': {reason}")
        self.recipient = recipient
        self.reason = reason


class RetryExhaustedError(RuntimeError):
    pass
