"""
Google OAuth2 authentication and credential management.

Provides the credentials used by the Drive snapshot store and the identity of the signed-in user.
The sync engine only ever asks :class:`AuthManager` for credentials that are already valid; the
interactive browser flow is exposed for front-ends and never started by the engine itself.
"""

import logging
import threading
from typing import Dict, Union, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow

from ..status import status

DEFAULT_SCOPES = [
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/userinfo.email',
    'openid',
]


class AuthExpiredError(Exception):
    """Raised when credentials have expired and require interactive refresh."""
    pass


class AuthManager:
    """Manages OAuth2 credentials with thread-safe refresh."""

    def __init__(self):
        self._lock = threading.Lock()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None

    def get_valid_credentials(self) -> google.oauth2.credentials.Credentials:
        """
        Return valid credentials without any UI.

        Raises:
            AuthExpiredError: if no credentials exist or a full interactive flow is required.
            status.AuthenticationException: if an auto-refresh fails.
            status.CredsInvalidException: if stored credentials are corrupt.
        """
        from ..settings import lib
        with self._lock:
            if self._creds is None:
                if not lib.settings.creds_path.exists():
                    raise AuthExpiredError(
                        'No credentials found; interactive authentication required')
                try:
                    self._creds = google.oauth2.credentials.Credentials.from_authorized_user_file(
                        str(lib.settings.creds_path))
                except (ValueError, KeyError) as ex:
                    # A corrupt file is removed so the next sign-in starts clean
                    lib.settings.creds_path.unlink(missing_ok=True)
                    raise status.CredsInvalidException('Failed to load credentials') from ex

            if self._creds.expired:
                if self._creds.refresh_token:
                    try:
                        self._creds.refresh(
                            google.auth.transport.requests.Request())
                        save_creds(self._creds)
                    except google.auth.exceptions.GoogleAuthError as ex:
                        raise status.AuthenticationException(
                            'Failed to auto-refresh credentials') from ex
                else:
                    raise AuthExpiredError(
                        'Credentials expired; interactive authentication required')

            return self._creds

    def current_user_email(self) -> Optional[str]:
        """Email address of the signed-in user, as recorded in the ``user`` settings section."""
        from ..settings import lib
        return lib.settings.get_section('user').get('email') or None

    def current_user_id(self) -> str:
        """Identifier of the signed-in user.

        Falls back to the email address when no explicit id is configured.

        Raises:
            status.AuthenticationException: If neither an id nor an email is configured.
        """
        from ..settings import lib
        config = lib.settings.get_section('user')
        user_id = config.get('id') or config.get('email')
        if not user_id:
            raise status.AuthenticationException('No user is signed in.')
        return user_id

    def set_identity(self, user_id: str, email: str) -> None:
        """Record the signed-in user in the settings."""
        from ..settings import lib
        lib.settings.set_section('user', {'id': user_id, 'email': email})

    def refresh_credentials_interactive(self) -> google.oauth2.credentials.Credentials:
        """Run the interactive OAuth flow and cache the resulting credentials."""
        with self._lock:
            creds = authenticate()
            self._creds = creds
            return creds

    def clear(self) -> None:
        """Drop cached credentials so the next call reloads them from disk."""
        with self._lock:
            self._creds = None


auth_manager = AuthManager()


def save_creds(creds: Union[google.oauth2.credentials.Credentials, Dict]) -> None:
    """
    Save OAuth2 credentials to the configured token file.

    Args:
        creds (Union[google.oauth2.credentials.Credentials, Dict]): Credentials or dict to save.
    """
    from ..settings import lib
    with open(lib.settings.creds_path, 'w', encoding='utf-8') as token_file:
        data = creds.to_json()
        token_file.write(data)

    logging.debug(f'Credentials saved to {lib.settings.creds_path}.')


def authenticate() -> google.oauth2.credentials.Credentials:
    """
    Run the installed-app OAuth flow to obtain credentials.

    Opens the system browser and blocks until the local redirect server receives the answer.

    Returns:
        google.oauth2.credentials.Credentials: The authenticated credentials.

    Raises:
        status.ClientSecretNotFoundException: If the client secret file is not found.
        status.ClientSecretInvalidException: If the client secret is incomplete.
        status.AuthenticationException: If authentication fails or is cancelled.
        status.CredsInvalidException: If credentials returned are invalid.
    """
    from ..settings import lib

    if not lib.settings.client_secret_path.exists():
        raise status.ClientSecretNotFoundException
    lib.settings.validate_client_secret()
    client_config = lib.settings.get_section('client_secret')

    logging.debug('Starting OAuth flow...')
    flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=DEFAULT_SCOPES)
    try:
        creds = flow.run_local_server(port=0)
    except Exception as ex:
        raise status.AuthenticationException(f'OAuth flow failed: {ex}') from ex

    if not creds:
        raise status.AuthenticationException('Authentication was cancelled or no credentials obtained.')
    if not creds.valid:
        raise status.CredsInvalidException('Invalid credentials returned from OAuth flow.')

    logging.debug('Saving credentials...')
    save_creds(creds)
    return creds


def sign_out() -> None:
    """
    Delete stored credentials to sign out the user.
    """
    from ..settings import lib
    auth_manager.clear()
    if lib.settings.creds_path.exists():
        logging.debug(f'Deleting {lib.settings.creds_path}...')
        lib.settings.creds_path.unlink()
        logging.debug('Successfully signed out.')
    else:
        logging.debug('No credentials file found. No action taken.')
