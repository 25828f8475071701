"""
Google OAuth2 authentication and the signed-in user session.

The :class:`AuthManager` is the authentication gate of the sync engine: it tells
callers whether a user is signed in and which user identity scopes the remote
rows. It also owns the OAuth2 credentials used by the Google Sheets backend.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from googleapiclient.discovery import build

from . import models
from ..status import status

DEFAULT_SCOPES = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/userinfo.email',
    'openid',
]


class AuthExpiredError(Exception):
    """Raised when credentials have expired and require interactive refresh."""
    pass


class AuthManager:
    """Manages the user session and OAuth2 credentials with thread-safe refresh."""

    def __init__(self):
        self._lock = threading.Lock()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None
        self._session: Optional[Dict[str, Any]] = None

    def is_logged_in(self) -> bool:
        """Returns True if a user session exists."""
        return self.current_user_id() is not None

    def current_user_id(self) -> Optional[str]:
        """Returns the identity of the signed-in user, or None."""
        session = self.session()
        if not session:
            return None
        return session.get('user_id') or None

    def session(self) -> Optional[Dict[str, Any]]:
        """Returns the stored session, loading it from disk on first use."""
        if self._session is None:
            self._session = load_session()
        return self._session

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
                except (ValueError, json.JSONDecodeError) as ex:
                    lib.settings.creds_path.unlink(missing_ok=True)
                    raise status.CredsInvalidException('Failed to load credentials') from ex

            if self._creds.expired:
                if self._creds.refresh_token:
                    try:
                        self._creds.refresh(google.auth.transport.requests.Request())
                        save_creds(self._creds)
                    except google.auth.exceptions.RefreshError as ex:
                        raise status.AuthenticationException(
                            'Failed to auto-refresh credentials') from ex
                else:
                    raise AuthExpiredError(
                        'Credentials expired; interactive authentication required')

            return self._creds

    def sign_in(self) -> str:
        """Run the interactive OAuth flow and start a session for the authorized account.

        Returns:
            str: The signed-in user's identity.

        Raises:
            status.ClientSecretInvalidException: If the client secret is incomplete.
            status.AuthenticationException: If the flow fails or is cancelled.
        """
        from .signals import signals

        with self._lock:
            creds = authenticate()
            save_creds(creds)
            self._creds = creds

            user_info = fetch_user_info(creds)
            session = {
                'user_id': str(user_info['id']),
                'email': user_info.get('email', ''),
                'signed_in_at': models.now_ms(),
            }
            save_session(session)
            self._session = session

        logging.info(f'Signed in as {session["email"] or session["user_id"]}.')
        signals.authenticationChanged.emit(True)
        return session['user_id']

    def sign_out(self) -> None:
        """Delete the stored credentials and session."""
        from ..settings import lib
        from .signals import signals

        with self._lock:
            for path in (lib.settings.creds_path, lib.settings.session_path):
                if path.exists():
                    logging.debug(f'Deleting {path}...')
                    path.unlink()
            self._creds = None
            self._session = {}

        logging.debug('Successfully signed out.')
        signals.authenticationChanged.emit(False)


def load_session() -> Dict[str, Any]:
    """Read the persisted session, returning an empty dict when there is none."""
    from ..settings import lib
    if not lib.settings.session_path.exists():
        return {}
    try:
        with lib.settings.session_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except (ValueError, json.JSONDecodeError) as ex:
        logging.error(f'Failed to read session, ignoring it: {ex}')
        return {}
    if not isinstance(data, dict):
        logging.error('Session file is malformed, ignoring it.')
        return {}
    return data


def save_session(session: Dict[str, Any]) -> None:
    from ..settings import lib
    with lib.settings.session_path.open('w', encoding='utf-8') as f:
        json.dump(session, f, indent=4)
    logging.debug(f'Session saved to {lib.settings.session_path}.')


def save_creds(creds: google.oauth2.credentials.Credentials) -> None:
    """
    Save OAuth2 credentials to the configured token file.

    Args:
        creds (google.oauth2.credentials.Credentials): Credentials to save.
    """
    from ..settings import lib
    with open(lib.settings.creds_path, 'w', encoding='utf-8') as token_file:
        token_file.write(creds.to_json())

    logging.debug(f'Credentials saved to {lib.settings.creds_path}.')


def fetch_user_info(creds: google.oauth2.credentials.Credentials) -> Dict[str, Any]:
    """Fetch the Google account behind the credentials.

    Raises:
        status.AuthenticationException: If the account has no identity.
    """
    with build('oauth2', 'v2', credentials=creds, cache_discovery=False) as service:
        user_info = service.userinfo().get().execute()
    if not user_info.get('id'):
        raise status.AuthenticationException('The authorized account has no user id.')
    return user_info


def authenticate() -> google.oauth2.credentials.Credentials:
    """
    Run the installed-app OAuth flow to obtain credentials.

    Cached credentials with the expected scopes are reused and refreshed when possible.

    Returns:
        google.oauth2.credentials.Credentials: The authenticated credentials.

    Raises:
        status.ClientSecretNotFoundException: If the client secret file is not found.
        status.AuthenticationException: If authentication fails or is cancelled.
        status.CredsInvalidException: If credentials returned are invalid.
    """
    from ..settings import lib

    scopes = DEFAULT_SCOPES
    creds = None

    if lib.settings.creds_path.exists():
        try:
            creds = google.oauth2.credentials.Credentials.from_authorized_user_file(
                str(lib.settings.creds_path))
        except (ValueError, json.JSONDecodeError) as ex:
            logging.error(f'Failed to load credentials, will attempt to re-authenticate: {ex}')
            lib.settings.creds_path.unlink()
            creds = None

    if creds and not set(scopes).issubset(set(creds.scopes or [])):
        logging.debug('Cached credentials have mismatched scopes; clearing.')
        creds = None

    if creds and not creds.expired:
        logging.debug('Using valid cached credentials.')
        return creds

    if creds and creds.expired and creds.refresh_token:
        logging.debug('Cached credentials expired; attempting refresh.')
        try:
            creds.refresh(google.auth.transport.requests.Request())
            logging.debug('Successfully refreshed credentials.')
            return creds
        except google.auth.exceptions.RefreshError as ex:
            logging.error(f'Refresh failed: {ex}; will perform new flow.')

    if not lib.settings.client_secret_path.exists():
        raise status.ClientSecretNotFoundException
    lib.settings.validate_client_secret()
    client_config = lib.settings.get_section('client_secret')

    logging.debug('Starting OAuth flow...')
    flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=scopes)
    try:
        creds = flow.run_local_server(port=0, timeout_seconds=120)
    except Exception as ex:
        raise status.AuthenticationException(f'OAuth flow failed: {ex}') from ex

    if not creds:
        raise status.AuthenticationException('Authentication was cancelled or no credentials obtained.')

    if not creds.valid:
        raise status.CredsInvalidException('Invalid credentials returned from OAuth flow.')

    return creds


auth_manager = AuthManager()
