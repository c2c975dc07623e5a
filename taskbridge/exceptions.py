class SyncError(Exception):
    """Base class for errors raised by the sync jobs."""


class ConfigError(SyncError):
    """A required setting or tracked-context document is missing."""


class InvalidRecordError(SyncError):
    """A remote payload could not be turned into a canonical record."""


class AuthenticationError(SyncError):
    """A remote session could not be (re-)established."""


class InvariantError(SyncError):
    """Programming error inside the sync core. Never caught."""


class DuplicateTemporaryIdError(InvariantError):
    def __init__(self, temp_id: str):
        self.temp_id = temp_id
        super().__init__(f"Temporary id {temp_id} is already queued")


class MissingParentError(InvariantError):
    def __init__(self, remote_id: str, parent_remote_id: str):
        self.remote_id = remote_id
        self.parent_remote_id = parent_remote_id
        super().__init__(
            f"Entity {remote_id} references parent {parent_remote_id}, "
            f"which has no target id and was not created in this pass"
        )


class PartialFlushError(SyncError):
    """
    A flush broke off after some commands were already applied.

    `result` holds the outcome of the applied commands. The engine attaches
    `outcome` once it has folded that result into the snapshot.
    """

    def __init__(self, result, cause: Exception):
        self.result = result
        self.cause = cause
        self.outcome = None
        super().__init__(f"Flush interrupted after {len(result.commands)} applied commands: {cause}")
