from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from jobportal.core.errors import AuthError
from jobportal.schemas.auth import AuthEvent, Session, SessionState, User
from jobportal.services.supabase import AuthAPI, Subscription

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionState], None]


class SessionManager:
    """Single owner of the current authentication state.

    Holds exactly one subscription to the auth service's session-change stream
    between ``start`` and ``close``. Use it as an async context manager so the
    subscription is released however the owning scope exits.
    """

    def __init__(self, auth: AuthAPI) -> None:
        self._auth = auth
        self._state = SessionState(loading=True)
        self._subscription: Subscription | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> User | None:
        return self._state.user

    @property
    def session(self) -> Session | None:
        return self._state.session

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def start(self) -> SessionState:
        if self._subscription is None:
            self._subscription = self._auth.on_auth_state_change(self._handle_auth_event)
        await self.resolve()
        return self._state

    async def resolve(self) -> SessionState:
        try:
            session = await self._auth.get_session()
        except (AuthError, httpx.HTTPError) as exc:
            logger.warning("session resolution failed; treating as signed out error=%s", exc)
            session = None
        self._apply(session, loading=False)
        return self._state

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def sign_in(self, email: str, password: str) -> Session:
        try:
            session = await self._auth.sign_in_with_password(email, password)
        except AuthError:
            logger.info("sign-in rejected email=%s", email)
            raise
        logger.info("sign-in succeeded user_id=%s", session.user.id)
        return session

    async def sign_out(self) -> None:
        user = self._state.user
        await self._auth.sign_out()
        logger.info("signed out user_id=%s", user.id if user else None)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _handle_auth_event(self, event: AuthEvent, session: Session | None) -> None:
        logger.debug("auth event=%s user_id=%s", event.value, session.user.id if session else None)
        self._apply(session, loading=self._state.loading)

    def _apply(self, session: Session | None, *, loading: bool) -> None:
        self._state = SessionState(
            user=session.user if session is not None else None,
            session=session,
            loading=loading,
        )
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("session state listener failed loading=%s", loading)
