"""Error taxonomy shared by the file services"""


class FileVaultError(Exception):
    """Base error carrying a stable kind and a human readable message"""

    kind = "file_vault_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(FileVaultError):
    """Raised when input is malformed or a required field is missing"""

    kind = "validation_error"


class NotFoundError(FileVaultError):
    """Raised when a record or its physical bytes are missing"""

    kind = "not_found"


class AuthorizationError(FileVaultError):
    """Raised when the access policy denies an operation"""

    kind = "authorization_error"


class CompressionError(FileVaultError):
    """Raised when a transcode or archive write fails"""

    kind = "compression_error"


class StorageError(FileVaultError):
    """Raised when an upload cannot be moved into its storage folder"""

    kind = "storage_error"
