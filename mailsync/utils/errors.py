"""
Centralized error hierarchy for the mail sync engine.

Every layer raises one of these types; library exceptions are translated at
the boundary where they occur and chained with ``raise ... from``.
"""
from typing import Optional


class MailSyncError(Exception):
    """Base exception class for all mail sync errors."""
    pass


class NotFoundError(MailSyncError):
    """Raised when an account, folder or message does not exist."""
    pass


class ConflictError(MailSyncError):
    """Raised when an insert collides with an existing unique key."""
    pass


class StoreError(MailSyncError):
    """Raised when the backing database fails unexpectedly."""
    pass


class DecryptionError(MailSyncError):
    """Raised when a stored credential cannot be decrypted."""
    pass


class AuthError(MailSyncError):
    """Base class for credential problems."""
    pass


class AuthExpiredError(AuthError):
    """Raised when the remote rejects the current access credential."""
    pass


class AuthFailedError(AuthError):
    """Raised when credentials cannot be recovered. Terminal for a sync run."""
    pass


class TokenRefreshError(AuthFailedError):
    """Raised when the OAuth token endpoint refuses a refresh."""
    pass


class RemoteUnavailableError(MailSyncError):
    """Raised on network failures, timeouts and server-side errors."""
    pass


class ParseFailureError(MailSyncError):
    """Raised when a remote payload cannot be turned into a message."""
    pass


class SyncError(MailSyncError):
    """Raised when a sync pass cannot complete.

    ``cause`` holds the first fatal error seen during the pass.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SyncCancelledError(SyncError):
    """Raised when a sync pass is cancelled between messages."""
    pass


class SendError(MailSyncError):
    """Raised when an outgoing message cannot be submitted."""
    pass


class InvalidQueryError(MailSyncError):
    """Raised when a search expression cannot be compiled."""
    pass


def human_friendly_message(exc: BaseException) -> str:
    """
    Convert an exception into a short message suitable for end users.

    Args:
        exc: The exception to convert.

    Returns:
        A user-facing message string.
    """
    detail = str(exc) or ""

    if isinstance(exc, TokenRefreshError):
        return (
            "Your account session has expired. Please sign in again.\n\n"
            "The stored refresh token was rejected by the provider."
        )
    if isinstance(exc, AuthFailedError):
        return (
            "Could not sign in to your email account. Please check your "
            "credentials or remove and re-add the account."
        )
    if isinstance(exc, AuthError):
        return "Your sign-in has expired. Please try again."
    if isinstance(exc, NotFoundError):
        return f"Not found: {detail}" if detail else "The requested item could not be found."
    if isinstance(exc, ConflictError):
        return f"Already exists: {detail}" if detail else "That item already exists."
    if isinstance(exc, RemoteUnavailableError):
        return (
            "Could not reach the email server. Please check your internet "
            "connection and try again."
        )
    if isinstance(exc, ParseFailureError):
        return "A message from the server could not be read and was skipped."
    if isinstance(exc, SyncCancelledError):
        return "Synchronization was cancelled. Messages already downloaded were kept."
    if isinstance(exc, SyncError):
        return (
            "An error occurred while synchronizing your email. "
            "Some messages may not have been updated."
        )
    if isinstance(exc, InvalidQueryError):
        return f"Invalid search: {detail}"
    if isinstance(exc, SendError):
        return "Failed to send your email. Please check the recipients and try again."
    if isinstance(exc, DecryptionError):
        return (
            "Could not decrypt stored credentials. The encryption key may have "
            "changed; you may need to re-add your accounts."
        )
    if isinstance(exc, StoreError):
        return "The local mail database reported an error."
    if isinstance(exc, MailSyncError):
        return f"An error occurred: {detail}" if detail else "An unexpected error occurred."

    if isinstance(exc, ConnectionError):
        return "Could not connect to the server. Please check your internet connection."
    if isinstance(exc, TimeoutError):
        return "The operation timed out. Please try again."
    if isinstance(exc, ValueError):
        return f"Invalid input: {detail}"
    return f"An error occurred: {detail or 'Unknown error'}"
