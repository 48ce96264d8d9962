class BatchError(Exception):
    """Base class for every error the batch engine raises."""


class ValidationError(BatchError):
    """Malformed job input, rejected before anything is persisted."""


class NotFoundError(BatchError):
    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident} not found")


class InvalidStateError(BatchError):
    def __init__(self, job_id: str, operation: str, status):
        self.job_id = job_id
        self.operation = operation
        self.status = status
        value = getattr(status, "value", status)
        super().__init__(f"Cannot {operation} job {job_id} while it is {value}")


class ProcessingError(BatchError):
    """Raised by item processors; the retry wrapper turns it into a failed result."""


class PersistenceError(BatchError):
    """The job store is unreachable or rejected a write."""
