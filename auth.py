import logging
import threading

import requests
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests_oauthlib import OAuth2Session

from config import GOOGLE_AUTH_URL, GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, GOOGLE_SCOPES
from errors import BackendError, UnauthorizedError

logger = logging.getLogger(__name__)


class Identity:
    def __init__(self, uid, email, display_name=None):
        self.uid = uid
        self.email = email
        self.display_name = display_name or (email.split('@')[0] if email else 'User')

    def to_dict(self):
        return {'uid': self.uid, 'email': self.email, 'display_name': self.display_name}

    @classmethod
    def from_dict(cls, data):
        return cls(data.get('uid'), data.get('email'), data.get('display_name'))

    def __eq__(self, other):
        return isinstance(other, Identity) and self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash((self.uid, self.email))

    def __repr__(self):
        return f"Identity(uid={self.uid!r}, email={self.email!r})"


class IdentityProvider:
    """Google sign-in restricted to a single authorized email address.

    Interested parties call ``subscribe(on_change)``: the callback receives the
    current identity (or None) once right away and then every change. The
    returned handle removes the subscription.
    """

    def __init__(self, client_id, client_secret, authorized_email, redirect_uri=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorized_email = authorized_email
        self.redirect_uri = redirect_uri
        self._current = None
        self._listeners = []
        self._lock = threading.RLock()

    @property
    def current(self):
        return self._current

    def is_authorized(self, identity):
        if identity is None or not identity.email or not self.authorized_email:
            return False
        return identity.email.strip().lower() == self.authorized_email.strip().lower()

    def authorization_url(self, redirect_uri=None):
        """Start the interactive flow. Returns ``(url, state)``; keep the state for the callback."""
        google = OAuth2Session(self.client_id, scope=GOOGLE_SCOPES, redirect_uri=redirect_uri or self.redirect_uri)
        return google.authorization_url(GOOGLE_AUTH_URL, prompt='select_account')

    def sign_in_interactive(self, authorization_response, state, redirect_uri=None):
        """Finish the OAuth flow from the callback URL and accept the resulting identity."""
        google = OAuth2Session(self.client_id, state=state, redirect_uri=redirect_uri or self.redirect_uri)
        try:
            google.fetch_token(
                GOOGLE_TOKEN_URL,
                client_secret=self.client_secret,
                authorization_response=authorization_response,
            )
            response = google.get(GOOGLE_USERINFO_URL)
            response.raise_for_status()
            user_info = response.json()
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            logger.error(f"Google sign-in failed: {e}", exc_info=True)
            raise BackendError("Failed to sign in with Google", code='identity_provider') from e
        return self.accept(user_info)

    def accept(self, user_info):
        identity = Identity(
            uid=user_info.get('id') or user_info.get('sub'),
            email=user_info.get('email'),
            display_name=user_info.get('name'),
        )
        if not identity.uid or not self.is_authorized(identity):
            logger.warning(f"Rejected sign-in from {identity.email}")
            self.sign_out()
            raise UnauthorizedError(
                "Access denied. Only authorized users can access this application.",
                code='unauthorized_identity',
            )
        self._set_current(identity)
        logger.info(f"Signed in {identity.email}")
        return identity

    def sign_out(self):
        self._set_current(None)

    def subscribe(self, on_change):
        with self._lock:
            self._listeners.append(on_change)
            self._notify(on_change, self._current)

        def unsubscribe():
            with self._lock:
                if on_change in self._listeners:
                    self._listeners.remove(on_change)
        return unsubscribe

    def _set_current(self, identity):
        with self._lock:
            if identity == self._current:
                return
            self._current = identity
            for listener in list(self._listeners):
                self._notify(listener, identity)

    def _notify(self, listener, identity):
        try:
            listener(identity)
        except Exception as e:
            logger.error(f"Identity listener {listener!r} failed: {e}", exc_info=True)
