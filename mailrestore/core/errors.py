from __future__ import annotations


class RestoreError(Exception):
    """Base error for mailrestore."""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        # Every fatal path tells the operator what to check next.
        self.remediation = remediation


class ConfigurationError(RestoreError):
    """Malformed backup manifest or missing live configuration."""


class StagingError(RestoreError):
    """Staged instance could not be materialized or never became ready."""

    def __init__(self, message: str, *, remediation: str | None = None, log_tail: str = "") -> None:
        super().__init__(message, remediation=remediation)
        self.log_tail = log_tail


class ScopeNotFoundError(RestoreError):
    """Requested domain or mailbox is absent from the backup or the live server."""

    def __init__(
        self,
        message: str,
        *,
        remediation: str | None = None,
        alternatives: list[str] | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.alternatives = list(alternatives or [])


class ScopeLockedError(RestoreError):
    """Another live restore holds the lock for this scope."""


class ExtractionError(RestoreError):
    """Scope query against the staged instance failed."""


class LiveConflictError(RestoreError):
    """Primary entity already exists live and overwrite was not requested."""


class ApplyError(RestoreError):
    """Restore transaction failed; live state is unchanged."""


class ValidationError(RestoreError):
    """Restored primary entity is missing after the transaction committed."""

    def __init__(
        self,
        message: str,
        *,
        remediation: str | None = None,
        rollback_command: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.rollback_command = rollback_command


class SecretMismatchError(RestoreError):
    """Operator declined to proceed past a mail_crypt key mismatch."""


class RestoreCancelled(RestoreError):
    """Operator cancelled at a confirmation gate before any live change."""


class RuntimeUnavailableError(RestoreError):
    """Container runtime call failed."""


class RestoreWarning(UserWarning):
    """Non-fatal condition reported in the restore summary."""


class FixupWarning(RestoreWarning):
    """Post-apply consistency fixup failed."""


class SecretWarning(RestoreWarning):
    """Secret material could not be read, backed up or verified."""


class SecretMismatchWarning(SecretWarning):
    """Backup and live mail_crypt public keys differ."""


class FileTreeWarning(RestoreWarning):
    """Mail file restore or reindex step did not complete cleanly."""
