"""Authenticated session state and login/logout transitions."""

from typing import Callable, List, Optional

import structlog

from ..backends.base import AuthProvider
from ..domain.errors import AuthError, AuthFailure, StoreError
from ..domain.models import Credentials, ProfileDraft
from .profiles import ProfileDirectory

logger = structlog.get_logger()

SessionListener = Callable[[Optional[str]], None]


class SessionSubscription:
    """Cancellable registration of a session listener."""

    def __init__(self, store: "SessionStore", listener: SessionListener) -> None:
        self._store = store
        self.listener = listener

    def cancel(self) -> None:
        self._store._remove_listener(self)


class SessionStore:
    """Holds the currently authenticated user and notifies on changes."""

    def __init__(self, auth: AuthProvider, profiles: ProfileDirectory) -> None:
        self._auth = auth
        self._profiles = profiles
        self._current: Optional[str] = None
        self._subscriptions: List[SessionSubscription] = []

    def current_user(self) -> Optional[str]:
        return self._current

    def subscribe(self, listener: SessionListener) -> SessionSubscription:
        subscription = SessionSubscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    def _remove_listener(self, subscription: SessionSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    async def login(self, credentials: Credentials) -> str:
        """Sign in, recreating the directory entry if an earlier registration lost it."""
        try:
            uid = await self._auth.sign_in(
                credentials.email, credentials.password.get_secret_value()
            )
        except AuthError as e:
            logger.warning("login_failed", email=credentials.email, reason=e.reason.value)
            raise
        await self._provision_profile(uid, credentials.email, existing_ok=True)
        logger.info("login_succeeded", uid=uid)
        self._transition(uid)
        return uid

    async def register(
        self, credentials: Credentials, profile: Optional[ProfileDraft] = None
    ) -> str:
        """Create an account and its directory entry, then start the session."""
        try:
            uid = await self._auth.create_account(
                credentials.email, credentials.password.get_secret_value()
            )
        except AuthError as e:
            logger.warning("registration_failed", email=credentials.email, reason=e.reason.value)
            raise

        await self._provision_profile(uid, credentials.email, existing_ok=False)
        if profile is not None and profile.avatar:
            try:
                await self._profiles.upload_avatar(uid, profile.avatar)
            except StoreError as e:
                logger.warning("avatar_upload_failed", uid=uid, error=str(e))

        logger.info("registration_succeeded", uid=uid)
        self._transition(uid)
        return uid

    async def _provision_profile(self, uid: str, email: str, existing_ok: bool) -> None:
        """Make sure ``uid`` has a directory entry.

        On a store failure the provider session is signed out so the account
        can log in again later, and the failure is reported as a network
        failure.
        """
        try:
            if existing_ok and await self._profiles.find(uid) is not None:
                return
            await self._profiles.create(uid, email)
        except StoreError as e:
            logger.warning("profile_provisioning_failed", uid=uid, error=str(e))
            try:
                await self._auth.sign_out()
            except AuthError as sign_out_error:
                logger.warning("provider_sign_out_failed", error=str(sign_out_error))
            raise AuthError(AuthFailure.NETWORK_FAILURE, "profile could not be stored") from e

    async def logout(self) -> None:
        try:
            await self._auth.sign_out()
        except AuthError as e:
            logger.warning("provider_sign_out_failed", error=str(e))
        logger.info("logout", uid=self._current)
        self._transition(None)

    def restore(self) -> Optional[str]:
        """Adopt a session the auth provider already holds."""
        uid = self._auth.current_user_id()
        if uid is not None and uid != self._current:
            logger.info("session_restored", uid=uid)
            self._transition(uid)
        return uid

    def _transition(self, uid: Optional[str]) -> None:
        if uid == self._current:
            return
        self._current = uid
        for subscription in list(self._subscriptions):
            try:
                subscription.listener(uid)
            except Exception as e:
                logger.error("session_listener_failed", error=str(e))
