"""
Access-token refresh for OAuth accounts.
"""
import logging
from typing import Dict, Optional

from mailsync.auth.oauth import OAuthProvider, default_providers
from mailsync.models import Account, AuthType
from mailsync.utils.errors import AuthFailedError, TokenRefreshError


logger = logging.getLogger(__name__)


class TokenRefresher:
    """
    Exchanges an account's refresh token for a new access token.

    Each call makes exactly one attempt. Callers decide whether to retry
    the operation that triggered the refresh; the refresher never loops.
    The new credential is written back only through ``store.update_account``.
    """

    def __init__(self, store, providers: Optional[Dict[str, OAuthProvider]] = None):
        self.store = store
        self._providers = providers

    @property
    def providers(self) -> Dict[str, OAuthProvider]:
        if self._providers is None:
            self._providers = default_providers()
        return self._providers

    def refresh(self, account: Account) -> Account:
        """
        Refresh the access token for ``account`` and persist it.

        Returns:
            The updated account; ``access_token`` holds the new credential.

        Raises:
            AuthFailedError: If the account cannot be refreshed or the
                provider rejects the refresh token.
        """
        if account.auth_type is AuthType.PASSWORD:
            raise AuthFailedError(f"Account {account.email_address} uses a password; nothing to refresh")
        if not account.refresh_token:
            raise AuthFailedError(f"Account {account.email_address} has no refresh token")

        provider = self.providers.get((account.service or "").lower())
        if provider is None:
            raise AuthFailedError(f"No OAuth provider registered for service '{account.service}'")

        logger.info("Refreshing access token for %s", account.email_address)
        try:
            bundle = provider.refresh_tokens(account.refresh_token)
        except TokenRefreshError:
            logger.warning("Token refresh rejected for %s", account.email_address)
            raise

        account.access_token = bundle.access_token
        if bundle.refresh_token:
            account.refresh_token = bundle.refresh_token
        return self.store.update_account(account)
