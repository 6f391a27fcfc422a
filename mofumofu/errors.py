"""
Error taxonomy shared by the controllers and the HTTP layer.

Every error carries a user-facing message and the HTTP status the API
answers with, so route handlers can turn any of them into the usual
{"ok": False, "error": ...} envelope.
"""


class MofumofuError(Exception):
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class PermissionDenied(MofumofuError):
    """Location (or another device capability) was refused."""
    status_code = 403
    default_message = "Location permission is required."


class MissingPrecondition(MofumofuError):
    status_code = 400
    default_message = "Action is not possible right now."


class NotFound(MofumofuError):
    status_code = 404
    default_message = "Not found."


class Unauthorized(MofumofuError):
    status_code = 401
    default_message = "Invalid credentials."


class Forbidden(MofumofuError):
    status_code = 403
    default_message = "Forbidden."


class Conflict(MofumofuError):
    status_code = 409
    default_message = "Already exists."


class RemoteWriteError(MofumofuError):
    """A backing store or relay call failed. Primary paths surface it, caches swallow it."""
    status_code = 500
    default_message = "Could not save your changes. Please try again."


class RemoteReadError(MofumofuError):
    status_code = 503
    default_message = "Could not load data. Please try again."


class TransactionFailed(MofumofuError):
    status_code = 409
    default_message = "The request could not be completed. Please try again."


class DecodeError(MofumofuError):
    status_code = 500
    default_message = "Stored document is malformed."

    def __init__(self, kind, doc_id, reason):
        self.kind = kind
        self.doc_id = doc_id
        self.reason = reason
        super().__init__(f"Malformed {kind} document {doc_id}: {reason}")


class UploadFailed(MofumofuError):
    status_code = 500
    default_message = "Image upload failed."
